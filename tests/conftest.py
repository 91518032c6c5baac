"""Shared fixtures and upstream fakes for the proxy tests."""

from __future__ import annotations

import threading
import time
from collections.abc import Iterable
from typing import Any

import pytest

from coze_proxy.config import Settings


class FakeUpstreamResponse:
    """Stand-in for a streaming ``requests.Response``.

    ``gate`` blocks the body after the first ``gate_after`` chunks until it is
    set; ``error`` is raised once the chunks run out.
    """

    def __init__(
        self,
        status_code: int = 200,
        chunks: Iterable[bytes] = (),
        *,
        headers: dict[str, str] | None = None,
        text: str = "",
        text_error: Exception | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
        gate: threading.Event | None = None,
        gate_after: int = 0,
    ) -> None:
        self.status_code = status_code
        self.chunks = list(chunks)
        self.headers = headers or {"Content-Type": "text/event-stream"}
        self._text = text
        self.text_error = text_error
        self.error = error
        self.delay = delay
        self.gate = gate
        self.gate_after = gate_after
        self.close_calls = 0
        self.chunks_read = 0

    @property
    def text(self) -> str:
        if self.text_error is not None:
            raise self.text_error
        return self._text

    def iter_content(self, chunk_size: int | None = None):
        for index, chunk in enumerate(self.chunks):
            if self.gate is not None and index == self.gate_after:
                self.gate.wait(5)
            if self.delay:
                time.sleep(self.delay)
            self.chunks_read += 1
            yield chunk
        if self.gate is not None and self.gate_after >= len(self.chunks):
            self.gate.wait(5)
        if self.error is not None:
            raise self.error

    def close(self) -> None:
        self.close_calls += 1


class FakeHttp:
    """Records upstream calls and answers them with a canned response or failure."""

    def __init__(self, response: FakeUpstreamResponse | None = None, error: Exception | None = None) -> None:
        self.response = response or FakeUpstreamResponse()
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeUpstreamResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def settings() -> Settings:
    return Settings(
        base_url="https://upstream.test/",
        token="pat_secret_token",
        workflow_id="wf-run-0001",
        home_workflow_id="wf-home-0002",
        keepalive_interval=5.0,
    )
