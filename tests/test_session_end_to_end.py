from __future__ import annotations

import json

from webview_bridge.channel import DocumentHandle, NotReadyError
from webview_bridge.lifecycle import ContentLoaded, InPageNavigation, LifecycleState, NavigationCommitted
from webview_bridge.result import ErrorKind
from webview_bridge.session import BridgeSession


def _session(page, config) -> BridgeSession:
    return BridgeSession(page, DocumentHandle(id="page-1", url=page.url), config=config)


def test_install_drain_navigate_keeps_history(page, config) -> None:
    s = _session(page, config)
    s.start(collect=False)
    assert s.generation == 0
    assert s.lifecycle_state is LifecycleState.UNINSTALLED

    s.post(ContentLoaded(page.url))
    assert s.lifecycle_state is LifecycleState.ARMED
    assert s.generation == 0
    assert s.installed_capabilities == {"throttle", "telemetry"}

    page.push_request("https://api.test/items", method="GET", status=200)
    assert s.drain().data == {"added": 1, "armed": True}
    assert [r.url for r in s.requests()] == ["https://api.test/items"]

    page.navigate("https://app.test/checkout")
    s.post(NavigationCommitted("https://app.test/checkout"))
    assert s.generation == 1
    assert s.installed_capabilities == set()
    assert [r.url for r in s.requests()] == ["https://api.test/items"]

    # Not loaded yet: one-shot operations report NotReady, drain stays quiet.
    assert s.query("SHOW DATABASES").error_kind is ErrorKind.NOT_READY
    assert s.drain().error_kind is ErrorKind.NOT_READY

    s.post(ContentLoaded("https://app.test/checkout"))
    assert s.installed_capabilities == {"throttle", "telemetry"}
    assert page.installed == {"throttle": 1, "telemetry": 1}
    s.close()


def test_history_persists_across_sessions(page, config) -> None:
    s = _session(page, config)
    s.start(collect=False)
    s.post(ContentLoaded(page.url))
    page.push_request("https://api.test/a")
    page.push_console("warn", "slow response")
    s.drain()
    s.close()

    again = _session(page, config)
    again.start(collect=False)
    assert [r.url for r in again.requests()] == ["https://api.test/a"]
    assert [c.level for c in again.console()] == ["warn"]

    again.clear_history()
    assert again.requests() == []
    assert not config.history_path("page-1").exists()


def test_execute_and_export(page, config, tmp_path) -> None:
    s = BridgeSession(page, DocumentHandle(id="page-1", url=page.url), config=config)
    s.post(ContentLoaded(page.url))
    page.eval_results["document.title"] = "Checkout"

    assert s.execute("document.title").data == "Checkout"
    res = s.execute("throw new Error('x')")
    assert res.error_kind is ErrorKind.EXECUTION_FAILED
    assert s.execute("").error_kind is ErrorKind.PARSE_ERROR

    page.push_request("https://api.test/b")
    s.drain()
    res = s.export_har(tmp_path / "out")
    assert res.ok and res.data["entries"] == 1
    har = json.loads(open(res.data["path"], encoding="utf-8").read())
    assert har["log"]["entries"][0]["request"]["url"] == "https://api.test/b"

    default = s.export_har()
    assert default.ok
    assert default.data["path"].startswith(str(config.export_dir))


def test_in_page_navigation_and_queries(page, config) -> None:
    s = _session(page, config)
    s.post(ContentLoaded(page.url))
    page.url = "https://app.test/#cart"
    s.post(InPageNavigation("https://app.test/#cart"))
    assert s.generation == 0
    assert s.handle.url == "https://app.test/#cart"

    page.databases = {"shop": {"items": ["a"]}}
    assert s.query("SELECT * FROM shop.items").data["count"] == 1
    assert s.query("DROP TABLE shop").error_kind is ErrorKind.UNSUPPORTED
    assert [h.status for h in s.query_history()] == ["error", "success"]

    assert s.probe_resource("https://cdn.test/og.png").data.outcome.passed is True
    assert s.inspect_storage().data["local"]["supported"] is False


def test_sessions_share_nothing(make_page, config) -> None:
    a_page, b_page = make_page("https://a.test/"), make_page("https://b.test/")
    a = BridgeSession(a_page, DocumentHandle(id="a", url=a_page.url), config=config)
    b = BridgeSession(b_page, DocumentHandle(id="b", url=b_page.url), config=config)
    a.post(ContentLoaded(a_page.url))
    a.apply_profile("3g")

    assert b.installed_capabilities == set()
    assert b.throttle.profile.id == "online"
    assert b_page.calls == []


def test_lost_context_is_not_ready(page, config) -> None:
    s = _session(page, config)
    s.post(ContentLoaded(page.url))
    page.fail_with = NotReadyError("Cannot find context with specified id")

    assert s.execute("1").error_kind is ErrorKind.NOT_READY
    assert s.apply_profile("4g").error_kind is ErrorKind.NOT_READY
    assert s.drain().error_kind is ErrorKind.NOT_READY


def test_replay_reissues_recorded_request(page, config) -> None:
    s = _session(page, config)
    s.start(collect=False)
    s.post(ContentLoaded(page.url))
    rid = page.push_request("https://api.test/orders", method="POST", body='{"sku":"A-1"}')
    get_id = page.push_request("https://api.test/orders?page=2", method="GET", body="ignored")
    s.drain()

    page.replay_responses["https://api.test/orders"] = (201, "x" * 12_000)
    res = s.replay(rid)
    assert res.ok
    assert res.data["status"] == 201
    assert len(res.data["body"]) == 10_000
    assert res.data["truncated"] is True
    assert page.replayed[-1] == {
        "url": "https://api.test/orders",
        "method": "POST",
        "headers": {"accept": "*/*"},
        "body": '{"sku":"A-1"}',
    }

    # GET never carries a body.
    assert s.replay(get_id).ok
    assert page.replayed[-1]["body"] is None

    missing = s.replay("f-999")
    assert missing.error_kind is ErrorKind.PARSE_ERROR
    assert "f-999" in missing.error
    assert page.calls.count("replay") == 2
    s.close()


def test_replay_needs_a_loaded_document(page, config) -> None:
    s = _session(page, config)
    s.start(collect=False)
    s.post(ContentLoaded(page.url))
    rid = page.push_request("https://api.test/a")
    s.drain()

    page.navigate("https://app.test/next")
    s.post(NavigationCommitted("https://app.test/next"))
    assert s.replay(rid).error_kind is ErrorKind.NOT_READY
    s.close()
