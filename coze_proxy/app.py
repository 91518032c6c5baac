from __future__ import annotations

import logging
import sys
import threading
import time

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from coze_proxy.config import Settings
from coze_proxy.errors import ProxyError
from coze_proxy.relay import error_response, relay_response
from coze_proxy.upstream import build_home_request, build_run_request

logger = logging.getLogger("coze-proxy")

RUN_ROUTE = "/api/coze/run-workflow/stream"
HOME_ROUTE = "/api/coze/home/stream"

# ----------------------
# CORS
# ----------------------
LOCAL_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:3001",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:3001",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
LOCAL_ORIGIN_PATTERN = r"^http://(localhost|127\.0\.0\.1):\d+$"

INDEX_HTML = f"""
<h3>Coze stream proxy is running</h3>
<p>Health check: <a href="/health">/health</a></p>
<p>Run workflow: POST <code>{RUN_ROUTE}</code></p>
<p>Home page workflow: POST <code>{HOME_ROUTE}</code></p>
"""


# ----------------------
# Helpers
# ----------------------
def json_body() -> dict:
    """Inbound JSON object, or {} for a missing or non-object body."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def install_excepthooks() -> None:
    """Log uncaught failures from any thread instead of letting them go to stderr."""

    def log_uncaught(exc_type, exc, tb):
        logger.critical("UNCAUGHT EXCEPTION", exc_info=(exc_type, exc, tb))

    def log_thread_uncaught(args):
        if args.exc_type is SystemExit:
            return
        thread_name = args.thread.name if args.thread else "?"
        logger.critical(
            "UNCAUGHT EXCEPTION in thread %s",
            thread_name,
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
        )

    sys.excepthook = log_uncaught
    threading.excepthook = log_thread_uncaught


# ----------------------
# App Setup
# ----------------------
def create_app(settings: Settings | None = None, http=None) -> Flask:
    """Build the proxy application.

    ``http`` replaces the ``requests`` module as upstream client; anything
    with a compatible ``request()`` works.
    """
    settings = settings or Settings.from_env()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length
    app.config["RATELIMIT_ENABLED"] = bool(settings.rate_limit)

    CORS(
        app,
        origins=[*LOCAL_ORIGINS, LOCAL_ORIGIN_PATTERN, *settings.cors_origins],
        methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept"],
        supports_credentials=False,
    )

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        storage_uri="memory://",
    )
    if settings.rate_limit:
        relay_limit = limiter.limit(settings.rate_limit)
    else:
        def relay_limit(view):
            return view

    session_options = {
        "http": http,
        "keepalive_interval": settings.keepalive_interval,
        "connect_timeout": settings.connect_timeout,
    }

    # ----------------------
    # Endpoints
    # ----------------------
    @app.get("/")
    def index():
        return INDEX_HTML

    @app.get("/health")
    def health_check():
        return jsonify({"ok": True, "timestamp": int(time.time() * 1000)}), 200

    @app.post(RUN_ROUTE)
    @relay_limit
    def run_workflow_stream():
        try:
            descriptor = build_run_request(json_body(), settings)
        except ProxyError as e:
            logger.warning("[COZE STREAM] rejected: %s", e)
            return error_response(e)
        return relay_response(descriptor, tag="COZE STREAM", **session_options)

    @app.post(HOME_ROUTE)
    @relay_limit
    def home_stream():
        try:
            descriptor = build_home_request(json_body(), settings)
        except ProxyError as e:
            logger.warning("[COZE STREAM HOME] rejected: %s", e)
            return error_response(e)
        return relay_response(descriptor, tag="COZE STREAM HOME", **session_options)

    # ----------------------
    # Error handlers
    # ----------------------
    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": f"rate limit exceeded ({e.description})"}), 429

    @app.errorhandler(Exception)
    def unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception("Unhandled error: %s", e)
        return jsonify({"error": "Internal server error"}), 500

    return app


def configure() -> Settings:
    """Process setup: .env, logging, excepthooks. Returns the loaded settings."""
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    install_excepthooks()
    logger.info("ENV CHECK => %s", settings.describe())
    return settings


def serve(app: Flask, settings: Settings) -> None:
    logger.info("Coze stream proxy listening on http://localhost:%s", settings.port)
    app.run(host="0.0.0.0", port=settings.port, threaded=True)


def run() -> None:
    """Console entry point."""
    settings = configure()
    serve(create_app(settings), settings)
