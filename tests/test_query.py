from __future__ import annotations

import pytest

from webview_bridge.channel import DocumentHandle, InjectionChannel
from webview_bridge.codec import Verb
from webview_bridge.query import (
    ACCEPTED_FORMS,
    ClearStore,
    ListDatabases,
    ListStores,
    QueryHistory,
    QueryHistoryEntry,
    SelectAll,
    StorageQueryInterpreter,
    compile_query,
    parse,
)
from webview_bridge.registry import InstrumentationSession
from webview_bridge.result import BridgeError, ErrorKind


def test_parse_accepted_forms() -> None:
    assert parse("SELECT * FROM mydb.items") == SelectAll("mydb", "items")
    assert parse("show databases") == ListDatabases()
    assert parse("  Show Stores From app-cache ; ") == ListStores("app-cache")
    assert parse("CLEAR FROM mydb.items") == ClearStore("mydb", "items")


def test_unknown_verb_is_unsupported_with_help() -> None:
    with pytest.raises(BridgeError) as exc:
        parse("DROP TABLE x")
    assert exc.value.kind is ErrorKind.UNSUPPORTED
    for form in ACCEPTED_FORMS:
        assert form in exc.value.message


@pytest.mark.parametrize(
    "text",
    [
        "",
        "SELECT name FROM mydb.items",
        "SELECT * FROM mydb",
        'SELECT * FROM my"db.items',
        "SHOW STORES",
        "CLEAR FROM mydb.items WHERE 1",
        "SHOW DATABASES\nDROP",
        "SELECT * FROM \u017fhop.items",
        "SHOW STORES FROM \u212adb",
        "CLEAR FROM mydb.\u0131tems",
    ],
)
def test_malformed_known_verbs_are_parse_errors(text: str) -> None:
    with pytest.raises(BridgeError) as exc:
        parse(text)
    assert exc.value.kind is ErrorKind.PARSE_ERROR
    assert "Accepted forms" in exc.value.message


def test_compile_embeds_identifiers_as_literals() -> None:
    frag = compile_query(SelectAll("mydb", "items"), limit=50)
    assert frag.verb is Verb.SELECT
    assert 'const dbName = "mydb";' in frag.source
    assert 'const storeName = "items";' in frag.source
    assert "const limit = 50;" in frag.source

    assert compile_query(ListDatabases()).verb is Verb.SHOW_DATABASES
    assert '"readwrite"' in compile_query(ClearStore("a", "b")).source


def _interpreter(page, **kw) -> StorageQueryInterpreter:
    session = InstrumentationSession(handle=DocumentHandle(id="d1", url=page.url, content_loaded=True))
    return StorageQueryInterpreter(InjectionChannel(page), session, **kw)


def test_select_is_capped_and_history_recorded(page) -> None:
    page.databases = {"shop": {"items": list(range(80))}}
    q = _interpreter(page)

    res = q.run("SELECT * FROM shop.items")
    assert res.ok
    assert res.data["count"] == 50
    assert res.data["total"] == 80
    assert res.data["truncated"] is True

    res = q.run("SELECT * FROM nope.items")
    assert res.error_kind is ErrorKind.EXECUTION_FAILED
    assert "Database not found" in (res.error or "")

    res = q.run("DROP TABLE x")
    assert res.error_kind is ErrorKind.UNSUPPORTED

    history = q.history.entries()
    assert [h.status for h in history] == ["error", "error", "success"]
    assert history[-1].rows == 50
    assert history[0].query == "DROP TABLE x"


def test_clear_and_listings(page) -> None:
    page.databases = {"shop": {"items": [1, 2], "carts": []}}
    q = _interpreter(page)

    assert q.run("SHOW DATABASES").data["databases"] == [{"name": "shop", "version": 1}]
    assert q.run("SHOW STORES FROM shop").data["stores"] == ["carts", "items"]
    assert q.run("CLEAR FROM shop.items").ok
    assert page.databases["shop"]["items"] == []


def test_history_is_bounded() -> None:
    h = QueryHistory(cap=3)
    for i in range(5):
        h.record(QueryHistoryEntry(id=str(i), query=f"q{i}", status="success", duration_ms=1, at=i))
    assert [e.id for e in h.entries()] == ["4", "3", "2"]
    assert h.entries(limit=1)[0].to_dict()["query"] == "q4"


def test_database_listing_unsupported_in_context(page) -> None:
    page.databases = {"shop": {"items": [1]}}
    page.idb_databases_supported = False
    q = _interpreter(page)

    res = q.run("SHOW DATABASES")
    assert res.error_kind is ErrorKind.UNSUPPORTED
    assert res.data is None
    assert "not supported" in (res.error or "")
    assert q.history.entries()[0].rows is None

    # Store-level verbs do not depend on the listing API.
    assert q.run("SHOW STORES FROM shop").ok
