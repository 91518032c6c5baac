"""Proxy error hierarchy.

Every error renders the JSON payload of the ``event: error`` frame sent to
the client, since headers are already committed by the time most of them
occur.
"""

from __future__ import annotations

NO_BODY = "no body"


class ProxyError(Exception):
    """Base error for all proxy operations."""

    def payload(self) -> dict:
        return {"message": str(self)}


class ConfigurationError(ProxyError):
    """A server-side credential or target identifier is missing."""

    def __init__(self, missing: str, message: str | None = None) -> None:
        self.missing = missing
        super().__init__(message or f"{missing} is not configured on the server (.env)")


class ValidationError(ProxyError):
    """A required caller-supplied field is missing or malformed."""


class UpstreamStatusError(ProxyError):
    """Upstream answered with a non-success HTTP status."""

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        super().__init__(f"upstream responded with HTTP {status}")

    def payload(self) -> dict:
        return {"status": self.status, "body": self.body or NO_BODY}


class UpstreamBodyMissing(ProxyError):
    """Upstream answered with success but without a usable body."""

    def __init__(self, status: int) -> None:
        self.status = status
        super().__init__(f"upstream responded with HTTP {status} and no body")

    def payload(self) -> dict:
        return {"status": self.status, "body": NO_BODY}


class TransportError(ProxyError):
    """Establishing or reading the upstream connection failed."""

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "stream failed")
