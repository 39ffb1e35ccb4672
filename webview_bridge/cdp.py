"""Chrome DevTools Protocol transport.

- CdpConnection: raw CDP WebSocket (websocket-client), request/response + events
- CdpContextExecutor: injection primitive on top of Runtime.evaluate
- CdpSignalPump: background Page.* event reader -> lifecycle signals
"""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket

from .channel import DocumentHandle, ExecutionError, NotReadyError
from .lifecycle import ContentLoaded, InPageNavigation, LifecycleSignal, NavigationCommitted

logger = logging.getLogger("webview.bridge.cdp")

# Runtime.evaluate failures that mean "no usable context yet", not "fragment threw".
_NOT_READY_MARKERS = (
    "cannot find context",
    "execution context was destroyed",
    "inspected target navigated or closed",
    "target closed",
    "no target with given id",
)


class CdpError(Exception):
    pass


class CdpConnection:
    """Low-level CDP WebSocket connection."""

    def __init__(self, ws_url: str, timeout: float = 5.0):
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            raise CdpError(f"connect failed: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        self._lock = threading.Lock()
        self._event_sink: Callable[[dict[str, Any]], None] | None = None

    def set_event_sink(self, sink: Callable[[dict[str, Any]], None] | None) -> None:
        """Attach a best-effort sink called for every CDP event seen while waiting."""
        self._event_sink = sink

    def _push_event(self, event: dict[str, Any]) -> None:
        sink = self._event_sink
        if sink is not None:
            with suppress(Exception):
                sink(event)

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a CDP command and wait for its response.

        The socket is shared between host threads, so one command is in flight
        per connection at a time.
        """
        with self._lock:
            msg_id = self._next_id
            self._next_id += 1
            msg: dict[str, Any] = {"id": msg_id, "method": method}
            if params:
                msg["params"] = params
            try:
                self.ws.settimeout(min(2.0, max(0.5, float(self.timeout))))
                self.ws.send(json.dumps(msg))
            except Exception as exc:  # noqa: BLE001
                raise CdpError(str(exc)) from exc
            return self._recv_until(msg_id)

    def _recv_until(self, expected_id: int) -> dict[str, Any]:
        deadline = time.time() + self.timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise CdpError("CDP response timed out")
            try:
                self.ws.settimeout(min(0.5, remaining))
                raw = self.ws.recv()
            except websocket.WebSocketTimeoutException:
                continue
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, TimeoutError) or "timed out" in str(exc).lower():
                    continue
                raise CdpError(str(exc)) from exc

            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(data, dict):
                continue

            if isinstance(data.get("method"), str) and "id" not in data:
                self._push_event(data)
                continue

            if data.get("id") == expected_id:
                if "error" in data:
                    err = data["error"]
                    message = err.get("message") if isinstance(err, dict) else None
                    raise CdpError(str(message or err))
                result = data.get("result")
                return result if isinstance(result, dict) else {}

    def recv_event(self, timeout: float = 0.5) -> dict[str, Any] | None:
        """Read one event (None on timeout). Used by the signal pump only."""
        try:
            self.ws.settimeout(timeout)
            raw = self.ws.recv()
        except websocket.WebSocketTimeoutException:
            return None
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, TimeoutError) or "timed out" in str(exc).lower():
                return None
            raise CdpError(str(exc)) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if isinstance(data, dict) and isinstance(data.get("method"), str) and "id" not in data:
            return data
        return None

    def close(self) -> None:
        # Raw socket shutdown: websocket-client close() can block on its handshake.
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(Exception):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(Exception):
                sock.close()


def _remote_value(obj: Any) -> Any:
    """Map a CDP RemoteObject (returnByValue) to a Python value."""
    if not isinstance(obj, dict):
        return None
    typ = obj.get("type")
    if typ == "undefined" or obj.get("subtype") == "null":
        return None
    if "value" in obj:
        return obj.get("value")
    if "unserializableValue" in obj:
        return obj.get("unserializableValue")
    return obj.get("description")


def _exception_text(details: dict[str, Any]) -> str:
    exc = details.get("exception")
    if isinstance(exc, dict):
        desc = exc.get("description") or exc.get("value")
        if desc:
            return str(desc).splitlines()[0]
    return str(details.get("text") or "Uncaught exception")


class CdpContextExecutor:
    """`execute_in_context` over Runtime.evaluate (returnByValue + awaitPromise)."""

    def __init__(self, conn: CdpConnection) -> None:
        self.conn = conn

    def _evaluate(self, code: str) -> dict[str, Any]:
        try:
            return self.conn.send(
                "Runtime.evaluate",
                {"expression": code, "returnByValue": True, "awaitPromise": True},
            )
        except CdpError as exc:
            msg = str(exc).lower()
            if any(marker in msg for marker in _NOT_READY_MARKERS):
                raise NotReadyError(str(exc)) from exc
            raise

    def execute_in_context(self, handle: DocumentHandle, code: str) -> Any:  # noqa: ARG002
        res = self._evaluate(code)
        details = res.get("exceptionDetails")
        if isinstance(details, dict):
            raise ExecutionError(_exception_text(details))
        return _remote_value(res.get("result"))

    def ready_state(self) -> str | None:
        """Current `document.readyState` (None if no context yet)."""
        try:
            res = self._evaluate("document.readyState")
        except (CdpError, NotReadyError):
            return None
        value = _remote_value(res.get("result"))
        return value if isinstance(value, str) else None

    def location(self) -> str | None:
        try:
            res = self._evaluate("location.href")
        except (CdpError, NotReadyError):
            return None
        value = _remote_value(res.get("result"))
        return value if isinstance(value, str) else None


class CdpSignalPump:
    """Background Page.* event reader feeding lifecycle signals.

    Owns its own connection (CDP delivers events to every attached client).
    Best-effort: reconnects with back-off and never raises into the host.
    """

    def __init__(
        self,
        *,
        ws_url: str,
        on_signal: Callable[[LifecycleSignal], None],
        timeout: float = 5.0,
        name: str = "webview-bridge-signals",
    ) -> None:
        self.ws_url = ws_url
        self.timeout = timeout
        self._on_signal = on_signal
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._conn: CdpConnection | None = None
        self._main_frame_id: str | None = None
        self._main_url = ""

    def start(self) -> None:
        if self._thread.is_alive():
            return
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        conn = self._conn
        if conn is not None:
            conn.close()

    def translate(self, event: dict[str, Any]) -> LifecycleSignal | None:
        """Map one CDP event to a lifecycle signal (None for everything else)."""
        method = event.get("method")
        params = event.get("params")
        if not isinstance(params, dict):
            params = {}

        if method == "Page.frameNavigated":
            frame = params.get("frame")
            if not isinstance(frame, dict):
                return None
            url = str(frame.get("url") or "") + str(frame.get("urlFragment") or "")
            is_main = not frame.get("parentId")
            if is_main:
                self._main_frame_id = str(frame.get("id") or "") or self._main_frame_id
                self._main_url = url
            return NavigationCommitted(url=url, is_main_frame=is_main)

        if method == "Page.domContentEventFired":
            # Only emitted for the main frame.
            return ContentLoaded(url=self._main_url, is_main_frame=True)

        if method == "Page.navigatedWithinDocument":
            frame_id = str(params.get("frameId") or "")
            url = str(params.get("url") or "")
            is_main = self._main_frame_id is None or frame_id == self._main_frame_id
            return InPageNavigation(url=url, is_main_frame=is_main)

        return None

    def _run(self) -> None:
        backoff = 0.2
        while not self._stop.is_set():
            conn: CdpConnection | None = None
            try:
                conn = CdpConnection(self.ws_url, timeout=self.timeout)
                self._conn = conn
                conn.set_event_sink(self._dispatch)
                conn.send("Page.enable")
                backoff = 0.2
                while not self._stop.is_set():
                    event = conn.recv_event(timeout=0.5)
                    if event is not None:
                        self._dispatch(event)
            except Exception as exc:  # noqa: BLE001
                logger.debug("signal_pump_disconnected err=%s", exc)
            finally:
                if conn is not None:
                    conn.close()
                self._conn = None

            if self._stop.is_set():
                break
            time.sleep(backoff)
            backoff = min(backoff * 1.5, 2.0)

    def _dispatch(self, event: dict[str, Any]) -> None:
        signal = self.translate(event)
        if signal is None:
            return
        try:
            self._on_signal(signal)
        except Exception:  # noqa: BLE001
            logger.exception("signal_dispatch_failed")


__all__ = ["CdpConnection", "CdpContextExecutor", "CdpError", "CdpSignalPump"]
