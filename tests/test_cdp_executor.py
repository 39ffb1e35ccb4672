from __future__ import annotations

from typing import Any

import pytest

from webview_bridge.cdp import CdpContextExecutor, CdpError, CdpSignalPump
from webview_bridge.channel import DocumentHandle, ExecutionError, InjectionChannel, NotReadyError
from webview_bridge.codec import execute_fragment
from webview_bridge.lifecycle import ContentLoaded, InPageNavigation, NavigationCommitted
from webview_bridge.result import ErrorKind

HANDLE = DocumentHandle(id="t1", url="https://app.test/", content_loaded=True)


def test_execute_uses_await_promise_and_return_by_value() -> None:
    calls: list[tuple[str, dict[str, Any] | None]] = []

    class DummyConn:
        def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
            calls.append((method, params))
            return {"result": {"type": "object", "value": {"ok": True, "data": 7}}}

    res = InjectionChannel(CdpContextExecutor(DummyConn())).execute(HANDLE, execute_fragment("3 + 4"))
    assert res.ok is True and res.data == 7

    assert len(calls) == 1
    method, params = calls[0]
    assert method == "Runtime.evaluate"
    assert (params or {}).get("awaitPromise") is True
    assert (params or {}).get("returnByValue") is True


def test_exception_details_become_execution_error() -> None:
    class DummyConn:
        def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:  # noqa: ARG002
            return {
                "result": {"type": "object", "subtype": "error"},
                "exceptionDetails": {"text": "Uncaught", "exception": {"description": "EvalError: Refused\n    at x"}},
            }

    with pytest.raises(ExecutionError, match="EvalError: Refused"):
        CdpContextExecutor(DummyConn()).execute_in_context(HANDLE, "1")


def test_missing_context_is_not_ready() -> None:
    class DummyConn:
        def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:  # noqa: ARG002
            raise CdpError("Cannot find context with specified id")

    with pytest.raises(NotReadyError):
        CdpContextExecutor(DummyConn()).execute_in_context(HANDLE, "1")

    res = InjectionChannel(CdpContextExecutor(DummyConn())).execute(HANDLE, execute_fragment("1"))
    assert res.error_kind is ErrorKind.NOT_READY


def test_other_transport_errors_are_execution_failures() -> None:
    class DummyConn:
        def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:  # noqa: ARG002
            raise CdpError("CDP response timed out")

    res = InjectionChannel(CdpContextExecutor(DummyConn())).execute(HANDLE, execute_fragment("1"))
    assert res.error_kind is ErrorKind.EXECUTION_FAILED


def test_ready_state_and_location_fail_soft() -> None:
    class DummyConn:
        def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
            expr = (params or {}).get("expression")
            if expr == "document.readyState":
                return {"result": {"type": "string", "value": "complete"}}
            raise CdpError("Cannot find context with specified id")

    ex = CdpContextExecutor(DummyConn())
    assert ex.ready_state() == "complete"
    assert ex.location() is None


def test_signal_pump_translates_page_events() -> None:
    pump = CdpSignalPump(ws_url="ws://127.0.0.1:9222/devtools/page/t1", on_signal=lambda _s: None)

    main = pump.translate(
        {"method": "Page.frameNavigated", "params": {"frame": {"id": "F1", "url": "https://app.test/a", "urlFragment": "#x"}}}
    )
    assert main == NavigationCommitted(url="https://app.test/a#x", is_main_frame=True)

    child = pump.translate(
        {"method": "Page.frameNavigated", "params": {"frame": {"id": "F2", "parentId": "F1", "url": "https://ads.test/"}}}
    )
    assert child == NavigationCommitted(url="https://ads.test/", is_main_frame=False)

    assert pump.translate({"method": "Page.domContentEventFired", "params": {"timestamp": 1.0}}) == ContentLoaded(
        url="https://app.test/a#x"
    )

    same = pump.translate({"method": "Page.navigatedWithinDocument", "params": {"frameId": "F1", "url": "https://app.test/a#y"}})
    assert same == InPageNavigation(url="https://app.test/a#y", is_main_frame=True)
    other = pump.translate({"method": "Page.navigatedWithinDocument", "params": {"frameId": "F2", "url": "https://ads.test/#z"}})
    assert other is not None and other.is_main_frame is False

    assert pump.translate({"method": "Network.requestWillBeSent", "params": {}}) is None
