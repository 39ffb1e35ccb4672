from __future__ import annotations

from typing import Any

from webview_bridge.channel import DocumentHandle, InjectionChannel
from webview_bridge.probes import ProbeOutcome, clear_caches, probe_fragment, probe_resource, service_workers
from webview_bridge.registry import InstrumentationSession
from webview_bridge.result import ErrorKind
from webview_bridge.storage import inspect_storage, is_sensitive_key


class DummyExecutor:
    def __init__(self, reply: Any) -> None:
        self.reply = reply
        self.codes: list[str] = []

    def execute_in_context(self, handle: DocumentHandle, code: str) -> Any:  # noqa: ARG002
        self.codes.append(code)
        return self.reply


def _run(reply: Any) -> tuple[InjectionChannel, InstrumentationSession, DummyExecutor]:
    ex = DummyExecutor(reply)
    session = InstrumentationSession(handle=DocumentHandle(id="d1", url="https://app.test/", content_loaded=True))
    return InjectionChannel(ex), session, ex


def test_sensitive_keys() -> None:
    assert is_sensitive_key("authToken")
    assert is_sensitive_key("SESSION_ID")
    assert is_sensitive_key("x-api-key")
    assert not is_sensitive_key("theme")
    assert not is_sensitive_key("")


def test_inspect_storage_redacts_and_reports_unsupported_areas() -> None:
    reply = {
        "ok": True,
        "data": {
            "origin": "https://app.test",
            "areas": {
                "local": {
                    "supported": True,
                    "total": 3,
                    "bytes": 40,
                    "items": [
                        {"key": "authToken", "size": 20, "preview": "eyJhbGciOi", "chars": 20},
                        {"key": "theme", "size": 4, "preview": "dark", "chars": 4},
                    ],
                },
                "session": {"supported": False},
            },
        },
    }
    channel, session, _ = _run(reply)
    res = inspect_storage(channel, session)
    assert res.ok
    local = res.data["local"]
    assert local["truncated"] is True
    token, theme = local["items"]
    assert token == {"key": "authToken", "size": 20, "chars": 20, "sensitive": True}
    assert theme["preview"] == "dark"
    assert res.data["session"] == {"supported": False, "error": "Unsupported: storage area is not available"}


def test_probe_outcomes() -> None:
    channel, session, ex = _run({"ok": True, "data": {"outcome": "too_small", "width": 64, "height": 64, "url": "https://cdn.test/og.png"}})
    res = probe_resource(channel, session, " https://cdn.test/og.png ")
    assert res.ok
    assert res.data.outcome is ProbeOutcome.TOO_SMALL
    assert res.data.outcome.passed is False
    assert res.data.to_dict()["width"] == 64
    assert '"https://cdn.test/og.png"' in ex.codes[0]

    channel, session, _ = _run({"ok": True, "data": {"outcome": "timed_out_assumed_ok", "url": "https://cdn.test/slow.png"}})
    res = probe_resource(channel, session, "https://cdn.test/slow.png")
    assert res.data.outcome is ProbeOutcome.TIMED_OUT_ASSUMED_OK
    assert res.data.outcome.passed is True
    assert res.data.to_dict() == {"url": "https://cdn.test/slow.png", "outcome": "timed_out_assumed_ok", "passed": True}


def test_probe_rejects_empty_url_and_odd_replies() -> None:
    channel, session, ex = _run({"ok": True, "data": {"outcome": "exploded"}})
    assert probe_resource(channel, session, "  ").error_kind is ErrorKind.PARSE_ERROR
    assert ex.codes == []
    assert probe_resource(channel, session, "/a.png").error_kind is ErrorKind.EXECUTION_FAILED


def test_probe_fragment_clamps_timeout() -> None:
    src = probe_fragment("/a.png", timeout_ms=5, min_size=-1).source
    assert "), 100);" in src
    assert "const minSize = 0;" in src


def test_missing_page_apis_are_unsupported() -> None:
    reply = {"ok": False, "errorKind": "Unsupported", "error": "Service workers are not available in this context"}
    channel, session, _ = _run(reply)
    assert service_workers(channel, session).error_kind is ErrorKind.UNSUPPORTED

    channel, session, _ = _run({"ok": True, "data": {"cleared": 2}})
    assert clear_caches(channel, session).data == {"cleared": 2}
