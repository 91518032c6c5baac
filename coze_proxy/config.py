"""Proxy configuration.

Settings are read once at process start from the environment (after
``load_dotenv()`` has merged any ``.env`` file) and frozen thereafter.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from coze_proxy.errors import ConfigurationError

DEFAULT_BASE_URL = "https://api.coze.cn"
DEFAULT_RATE_LIMIT = "60 per minute"
DEFAULT_MAX_CONTENT_LENGTH = 20 * 1024 * 1024


def mask(value: str | None) -> str:
    """Show only the first four characters of an identifier."""
    return value[:4] + "***" if value else ""


@dataclass(frozen=True, slots=True)
class Settings:
    """Configuration for the proxy.

    Attributes:
        port: Bind port for the development server.
        base_url: Upstream API root, without trailing slash.
        token: Bearer credential for the upstream API.
        workflow_id: Target workflow of the run-workflow route.
        home_workflow_id: Default target workflow of the home route.
        default_bot_id: Bot binding used when the caller sends none.
        default_app_id: App binding used when the caller sends none.
        default_workflow_version: Version tag used when the caller sends none.
        cors_origins: Extra allowed browser origins.
        rate_limit: flask-limiter limit for relay routes; empty disables.
        keepalive_interval: Seconds between ``: ping`` frames.
        connect_timeout: Upstream connect timeout in seconds.
        max_content_length: Largest accepted request body in bytes.
        log_level: Root logging level name.

    """

    port: int = 3000
    base_url: str = DEFAULT_BASE_URL
    token: str | None = None
    workflow_id: str | None = None
    home_workflow_id: str | None = None
    default_bot_id: str | None = None
    default_app_id: str | None = None
    default_workflow_version: str | None = None
    cors_origins: tuple[str, ...] = field(default_factory=tuple)
    rate_limit: str = DEFAULT_RATE_LIMIT
    keepalive_interval: float = 1.0
    connect_timeout: float = 10.0
    max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables. Empty values count as unset."""
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(name, "").strip()
            return value or None

        origins = tuple(o.strip() for o in (get("CORS_ORIGINS") or "").split(",") if o.strip())
        rate_limit = env.get("RATE_LIMIT")

        return cls(
            port=_number(get, "PORT", int, 3000),
            base_url=get("COZE_BASE_URL") or DEFAULT_BASE_URL,
            token=get("COZE_TOKEN"),
            workflow_id=get("COZE_WORKFLOW_ID"),
            home_workflow_id=get("COZE_WORKFLOW_ID_HOME"),
            default_bot_id=get("DEFAULT_BOT_ID"),
            default_app_id=get("DEFAULT_APP_ID"),
            default_workflow_version=get("DEFAULT_WORKFLOW_VERSION"),
            cors_origins=origins,
            rate_limit=DEFAULT_RATE_LIMIT if rate_limit is None else rate_limit.strip(),
            keepalive_interval=_number(get, "KEEPALIVE_INTERVAL", float, 1.0),
            connect_timeout=_number(get, "UPSTREAM_CONNECT_TIMEOUT", float, 10.0),
            max_content_length=_number(get, "MAX_CONTENT_LENGTH", int, DEFAULT_MAX_CONTENT_LENGTH),
            log_level=(get("LOG_LEVEL") or "INFO").upper(),
        )

    def describe(self) -> dict[str, object]:
        """Masked summary for the startup env check."""
        return {
            "PORT": self.port,
            "COZE_BASE_URL": self.base_url,
            "COZE_WORKFLOW_ID": mask(self.workflow_id),
            "COZE_WORKFLOW_ID_HOME": mask(self.home_workflow_id),
            "COZE_TOKEN": "SET" if self.token else "MISSING",
        }


def _number(get, name, kind, default):
    raw = get(name)
    if raw is None:
        return default
    try:
        value = kind(raw)
    except ValueError:
        raise ConfigurationError(name, f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(name, f"{name} must be positive, got {raw!r}")
    return value
