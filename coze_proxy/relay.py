"""SSE relay engine.

One ``RelaySession`` pairs one upstream streaming call with one downstream
streaming response. The downstream side is a generator handed to Flask; the
upstream side runs on a pump thread that feeds opaque chunks through a
bounded queue, so a slow client stops further upstream reads.

Frames written downstream, in order::

    : connected          always first
    : ping               every keep-alive period, between chunks
    <upstream chunks>    forwarded byte for byte
    event: error         at most one, then the stream ends
"""

from __future__ import annotations

import enum
import json
import logging
import queue
import threading
import time
from collections.abc import Iterator
from typing import Any

import requests
from flask import Response

from coze_proxy.errors import (
    ProxyError,
    TransportError,
    UpstreamBodyMissing,
    UpstreamStatusError,
)
from coze_proxy.upstream import RequestDescriptor

logger = logging.getLogger("coze-proxy.relay")

CONNECTED_FRAME = b": connected\n\n"
PING_FRAME = b": ping\n\n"

SSE_CONTENT_TYPE = "text/event-stream; charset=utf-8"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Upstream headers worth logging when a call is rejected.
DIAGNOSTIC_HEADERS = ("www-authenticate", "x-request-id", "content-type")

_DATA = "data"
_ERROR = "error"
_END = "end"


def error_frame(payload: dict[str, Any]) -> bytes:
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: error\ndata: {data}\n\n".encode("utf-8")


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


class KeepAliveTimer:
    """Fixed-period deadline timer driven by the downstream generator.

    Ticks are scheduled from the start time, not from the last chunk, so a
    busy stream still gets its pings. Cancelling twice is a no-op.
    """

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._deadline: float | None = None
        self.cancelled = False

    def start(self) -> None:
        self._deadline = time.monotonic() + self.interval

    def due(self) -> bool:
        if self.cancelled or self._deadline is None:
            return False
        return time.monotonic() >= self._deadline

    def remaining(self) -> float:
        if self._deadline is None:
            return self.interval
        return max(0.0, self._deadline - time.monotonic())

    def tick(self) -> None:
        if self._deadline is None:
            self.start()
            return
        self._deadline += self.interval
        # Skip ticks missed while the client was slow to drain.
        now = time.monotonic()
        if self._deadline <= now:
            self._deadline = now + self.interval

    def cancel(self) -> None:
        self.cancelled = True


class RelaySession:
    """Lifecycle of one upstream call relayed to one client.

    ``close()`` is the only terminal action and runs at most once, whichever
    of client disconnect, upstream completion, upstream failure or an
    explicit shutdown gets there first.
    """

    def __init__(
        self,
        descriptor: RequestDescriptor,
        *,
        http: Any = None,
        keepalive_interval: float = 1.0,
        connect_timeout: float = 10.0,
        queue_size: int = 1,
        tag: str = "COZE STREAM",
    ) -> None:
        self.descriptor = descriptor
        self.tag = tag
        self.state = SessionState.CONNECTING
        self.closed_reason: str | None = None
        self.keepalive = KeepAliveTimer(keepalive_interval)

        self._http = http if http is not None else requests
        self._connect_timeout = connect_timeout
        self._queue: queue.Queue[tuple[str, Any]] = queue.Queue(maxsize=queue_size)
        self._ended = threading.Event()
        self._close_lock = threading.Lock()
        self._started = False
        self._upstream: Any = None
        self._pump: threading.Thread | None = None

    @property
    def closed(self) -> bool:
        return self._ended.is_set()

    # ------------------------------------------------------------------
    # Downstream
    # ------------------------------------------------------------------

    def frames(self) -> Iterator[bytes]:
        """Downstream channel. Ends exactly when the session closes."""
        if self._started:
            raise RuntimeError(f"relay session {self.tag!r} is single-use")
        self._started = True

        reason = "upstream finished"
        try:
            self.keepalive.start()
            self._pump = threading.Thread(
                target=self._run_upstream,
                name=f"relay-pump[{self.tag}]",
                daemon=True,
            )
            self._pump.start()
            yield CONNECTED_FRAME

            while not self.closed:
                if self.keepalive.due():
                    # Decided under the close lock: a ping is never handed
                    # downstream once close() has started.
                    with self._close_lock:
                        if self._ended.is_set():
                            break
                        self.keepalive.tick()
                    logger.debug("[%s] ping", self.tag)
                    yield PING_FRAME
                    continue
                try:
                    kind, item = self._queue.get(timeout=self.keepalive.remaining())
                except queue.Empty:
                    continue
                if self.closed:
                    break
                if kind == _DATA:
                    yield item
                elif kind == _ERROR:
                    reason = "upstream error"
                    yield error_frame(item.payload())
                    break
                else:
                    break
        except GeneratorExit:
            reason = "client disconnected"
            raise
        finally:
            self.close(reason)

    def close(self, reason: str) -> bool:
        """Tear the session down. Returns False if it was already closed."""
        with self._close_lock:
            if self._ended.is_set():
                return False
            self._ended.set()
            self.state = SessionState.CLOSED
            self.closed_reason = reason

        self.keepalive.cancel()
        upstream = self._upstream
        if upstream is not None:
            _close_quietly(upstream)
        logger.info("[%s] closed: %s", self.tag, reason)
        return True

    # ------------------------------------------------------------------
    # Upstream (pump thread)
    # ------------------------------------------------------------------

    def _run_upstream(self) -> None:
        descriptor = self.descriptor
        try:
            response = self._http.request(
                descriptor.method,
                descriptor.url,
                headers=dict(descriptor.headers),
                data=descriptor.body,
                stream=True,
                timeout=(self._connect_timeout, None),
            )
        except requests.RequestException as exc:
            logger.error("[%s] proxy failed: %s", self.tag, exc)
            self._offer(_ERROR, TransportError(str(exc)))
            return
        except Exception as exc:
            logger.exception("[%s] proxy failed", self.tag)
            self._offer(_ERROR, TransportError(str(exc)))
            return

        self._upstream = response
        if self.closed:
            # Closed while the call was in flight; close() saw no response yet.
            _close_quietly(response)
            return

        try:
            self._relay_body(response)
        except Exception as exc:
            if self.closed:
                logger.debug("[%s] relay aborted after close: %s", self.tag, exc)
            else:
                logger.exception("[%s] relay failed", self.tag)
                self._offer(_ERROR, TransportError(str(exc)))
        finally:
            _close_quietly(response)

    def _relay_body(self, response: Any) -> None:
        status = response.status_code
        if not 200 <= status < 300:
            text = _read_text(response)
            logger.error(
                "[%s] upstream error %s %s body=%r",
                self.tag,
                status,
                {name: response.headers.get(name) for name in DIAGNOSTIC_HEADERS},
                text,
            )
            self._offer(_ERROR, UpstreamStatusError(status, text))
            return
        if status == 204 or response.headers.get("Content-Length") == "0":
            logger.error("[%s] upstream %s without body", self.tag, status)
            self._offer(_ERROR, UpstreamBodyMissing(status))
            return

        with self._close_lock:
            if not self._ended.is_set():
                self.state = SessionState.STREAMING
        try:
            for chunk in response.iter_content(chunk_size=None):
                if not chunk:
                    continue
                if not self._offer(_DATA, chunk):
                    return
        except Exception as exc:
            if self.closed:
                logger.debug("[%s] read aborted after close: %s", self.tag, exc)
                return
            logger.error("[%s] stream error: %s", self.tag, exc)
            self._offer(_ERROR, TransportError(str(exc)))
            return
        self._offer(_END, None)

    def _offer(self, kind: str, item: Any) -> bool:
        """Hand an item to the downstream generator; False once the session closed."""
        while not self.closed:
            try:
                self._queue.put((kind, item), timeout=self.keepalive.interval)
                return True
            except queue.Full:
                continue
        return False


def relay_response(descriptor: RequestDescriptor, **session_options: Any) -> Response:
    """Stream ``descriptor``'s upstream response to the client."""
    session = RelaySession(descriptor, **session_options)
    return Response(
        session.frames(),
        status=200,
        content_type=SSE_CONTENT_TYPE,
        headers=SSE_HEADERS,
    )


def error_response(exc: ProxyError) -> Response:
    """A complete event stream holding a single error frame."""
    return Response(
        error_frame(exc.payload()),
        status=200,
        content_type=SSE_CONTENT_TYPE,
        headers=SSE_HEADERS,
    )


def _read_text(response: Any) -> str:
    try:
        return response.text or ""
    except (requests.RequestException, OSError, ValueError):
        return ""


def _close_quietly(response: Any) -> None:
    try:
        response.close()
    except Exception:
        logger.debug("upstream close failed", exc_info=True)
