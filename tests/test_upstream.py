"""Tests for upstream request construction."""

from __future__ import annotations

import dataclasses

import pytest

from coze_proxy.config import Settings, mask
from coze_proxy.errors import ConfigurationError, ValidationError
from coze_proxy.upstream import (
    build_home_request,
    build_run_request,
    build_upstream_request,
)


class TestBuildUpstreamRequest:
    def test_url_headers_and_method(self, settings: Settings) -> None:
        descriptor = build_upstream_request(settings, "wf", {"input": "x"}, {})

        assert descriptor.method == "POST"
        assert descriptor.url == "https://upstream.test/v1/workflow/stream_run"
        assert descriptor.headers == {
            "Authorization": "Bearer pat_secret_token",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        assert descriptor.json() == {"workflow_id": "wf", "parameters": {"input": "x"}}

    def test_bindings_omitted_when_unset(self, settings: Settings) -> None:
        payload = build_upstream_request(settings, "wf", {}, {}).json()
        assert "bot_id" not in payload
        assert "app_id" not in payload
        assert "workflow_version" not in payload

    def test_defaults_fill_missing_bindings(self, settings: Settings) -> None:
        configured = dataclasses.replace(
            settings,
            default_bot_id="bot-default",
            default_app_id="app-default",
            default_workflow_version="v1",
        )
        payload = build_upstream_request(configured, "wf", {}, {"bot_id": "bot-caller"}).json()

        assert payload["bot_id"] == "bot-caller"
        assert payload["app_id"] == "app-default"
        assert payload["workflow_version"] == "v1"

    def test_body_keeps_non_ascii(self, settings: Settings) -> None:
        descriptor = build_upstream_request(settings, "wf", {"input": "你好"}, {})
        assert "你好".encode("utf-8") in descriptor.body


class TestBuildRunRequest:
    def test_input_only(self, settings: Settings) -> None:
        payload = build_run_request({"input": "https://example.com"}, settings).json()
        assert payload["workflow_id"] == "wf-run-0001"
        assert payload["parameters"] == {"input": "https://example.com"}

    def test_parameters_only_drops_absent_input(self, settings: Settings) -> None:
        payload = build_run_request({"parameters": {"topic": "cats"}}, settings).json()
        assert payload["parameters"] == {"topic": "cats"}

    def test_caller_parameters_win_on_collision(self, settings: Settings) -> None:
        body = {"input": "outer", "parameters": {"input": "inner", "n": 2}}
        payload = build_run_request(body, settings).json()
        assert payload["parameters"] == {"input": "inner", "n": 2}

    @pytest.mark.parametrize("body", [{}, {"input": ""}, {"parameters": {}}, {"input": None, "parameters": {}}])
    def test_missing_input_and_parameters(self, settings: Settings, body: dict) -> None:
        with pytest.raises(ValidationError, match="input or parameters"):
            build_run_request(body, settings)

    def test_parameters_must_be_object(self, settings: Settings) -> None:
        with pytest.raises(ValidationError, match="JSON object"):
            build_run_request({"input": "x", "parameters": ["a"]}, settings)

    def test_validation_checked_before_configuration(self) -> None:
        with pytest.raises(ValidationError):
            build_run_request({}, Settings())

    def test_missing_token(self, settings: Settings) -> None:
        with pytest.raises(ConfigurationError, match="COZE_TOKEN") as excinfo:
            build_run_request({"input": "x"}, dataclasses.replace(settings, token=None))
        assert excinfo.value.missing == "COZE_TOKEN"

    def test_missing_workflow_id(self, settings: Settings) -> None:
        with pytest.raises(ConfigurationError, match="COZE_WORKFLOW_ID"):
            build_run_request({"input": "x"}, dataclasses.replace(settings, workflow_id=None))


class TestBuildHomeRequest:
    def test_configured_default_workflow(self, settings: Settings) -> None:
        payload = build_home_request({"home_url": "https://example.com"}, settings).json()
        assert payload["workflow_id"] == "wf-home-0002"
        assert payload["parameters"] == {"home_url": "https://example.com"}

    def test_request_workflow_id_overrides_default(self, settings: Settings) -> None:
        payload = build_home_request({"workflow_id": "wf-override"}, settings).json()
        assert payload["workflow_id"] == "wf-override"
        assert payload["parameters"] == {}

    def test_no_workflow_anywhere(self, settings: Settings) -> None:
        configured = dataclasses.replace(settings, home_workflow_id=None)
        with pytest.raises(ConfigurationError, match="workflow_id was not provided"):
            build_home_request({"home_url": "https://example.com"}, configured)

    def test_missing_token_reported_first(self, settings: Settings) -> None:
        configured = dataclasses.replace(settings, token=None, home_workflow_id=None)
        with pytest.raises(ConfigurationError, match="COZE_TOKEN"):
            build_home_request({}, configured)

    def test_home_url_inside_parameters(self, settings: Settings) -> None:
        body = {"parameters": {"home_url": "https://a.example"}, "app_id": "app-1"}
        payload = build_home_request(body, settings).json()
        assert payload["parameters"] == {"home_url": "https://a.example"}
        assert payload["app_id"] == "app-1"


class TestMask:
    def test_mask(self) -> None:
        assert mask("pat_secret_token") == "pat_***"
        assert mask("") == ""
        assert mask(None) == ""
