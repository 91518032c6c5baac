"""Streaming reverse proxy for the Coze workflow API.

Relays ``stream_run`` Server-Sent-Events to browser clients, adding
keep-alive pings and reporting every failure as an ``event: error`` frame.
"""

__version__ = "0.1.0"
