"""Upstream request construction.

Turns an inbound JSON body plus the server settings into the descriptor of a
``stream_run`` call. Pure data transformation: nothing here touches the
network.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from coze_proxy.config import Settings, mask
from coze_proxy.errors import ConfigurationError, ValidationError

logger = logging.getLogger("coze-proxy.upstream")

STREAM_RUN_PATH = "/v1/workflow/stream_run"

# Optional binding fields: request key -> Settings attribute holding the default.
BINDINGS = (
    ("bot_id", "default_bot_id"),
    ("app_id", "default_app_id"),
    ("workflow_version", "default_workflow_version"),
)


@dataclass(frozen=True, slots=True)
class RequestDescriptor:
    """Immutable description of one upstream call."""

    method: str
    url: str
    headers: Mapping[str, str]
    body: bytes

    def json(self) -> dict[str, Any]:
        return json.loads(self.body)


def build_upstream_request(
    settings: Settings,
    workflow_id: str,
    parameters: dict[str, Any],
    body: Mapping[str, Any],
) -> RequestDescriptor:
    """Build the ``stream_run`` descriptor for ``workflow_id``.

    Optional bindings take the caller's value when truthy, else the
    configured default, and are left out when neither exists.
    """
    payload: dict[str, Any] = {"workflow_id": workflow_id, "parameters": parameters}
    for key, default_attr in BINDINGS:
        value = body.get(key) or getattr(settings, default_attr)
        if value:
            payload[key] = value

    return RequestDescriptor(
        method="POST",
        url=f"{settings.base_url}{STREAM_RUN_PATH}",
        headers={
            "Authorization": f"Bearer {settings.token}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        },
        body=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
    )


def build_run_request(body: Mapping[str, Any], settings: Settings) -> RequestDescriptor:
    """Descriptor for the run-workflow route: ``input`` and/or ``parameters``."""
    parameters = _caller_parameters(body)
    input_value = body.get("input")
    if not input_value and not parameters:
        raise ValidationError("input or parameters is required; provide at least one")
    if not settings.token:
        raise ConfigurationError("COZE_TOKEN")
    if not settings.workflow_id:
        raise ConfigurationError("COZE_WORKFLOW_ID")

    descriptor = build_upstream_request(
        settings,
        settings.workflow_id,
        _merge("input", input_value, parameters),
        body,
    )
    payload = descriptor.json()
    logger.info(
        "[COZE STREAM] -> base=%s workflow_id=%s token=%s with_bot=%s with_app=%s",
        settings.base_url,
        mask(settings.workflow_id),
        mask(settings.token),
        "bot_id" in payload,
        "app_id" in payload,
    )
    return descriptor


def build_home_request(body: Mapping[str, Any], settings: Settings) -> RequestDescriptor:
    """Descriptor for the home route: ``home_url`` against an overridable workflow."""
    parameters = _caller_parameters(body)
    if not settings.token:
        raise ConfigurationError("COZE_TOKEN")

    workflow_id = body.get("workflow_id") or settings.home_workflow_id
    if not workflow_id:
        raise ConfigurationError(
            "COZE_WORKFLOW_ID_HOME",
            "workflow_id was not provided and COZE_WORKFLOW_ID_HOME is not configured",
        )

    home_url = body.get("home_url")
    logger.info(
        "[COZE STREAM HOME] -> base=%s workflow_id=%s token=%s has_home_url=%s",
        settings.base_url,
        mask(str(workflow_id)),
        mask(settings.token),
        bool(home_url or parameters.get("home_url")),
    )
    return build_upstream_request(
        settings,
        workflow_id,
        _merge("home_url", home_url, parameters),
        body,
    )


def _caller_parameters(body: Mapping[str, Any]) -> dict[str, Any]:
    parameters = body.get("parameters")
    if parameters is None:
        return {}
    if not isinstance(parameters, dict):
        raise ValidationError("parameters must be a JSON object")
    return parameters


def _merge(key: str, value: Any, parameters: dict[str, Any]) -> dict[str, Any]:
    # Caller parameters win on collision; an absent lead value is dropped.
    merged: dict[str, Any] = {} if value is None else {key: value}
    merged.update(parameters)
    return merged
