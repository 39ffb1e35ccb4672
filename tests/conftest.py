from __future__ import annotations

import json
import re
from collections import Counter
from typing import Any

import pytest

from webview_bridge.channel import DocumentHandle, ExecutionError
from webview_bridge.config import BridgeConfig


def _literal(pattern: str, code: str) -> Any:
    m = re.search(pattern, code)
    assert m is not None, f"pattern not found in fragment: {pattern}"
    return json.loads(m.group(1))


class FakePage:
    """In-memory stand-in for one document's script context.

    Recognizes the fragments the bridge generates by their page-side code
    and mimics what the real document would answer.
    """

    def __init__(self, url: str = "https://app.test/") -> None:
        self.url = url
        self.installed: dict[str, int] = {}
        self.wraps: Counter[str] = Counter()
        self.pending: dict[str, list[dict[str, Any]]] = {"network": [], "console": []}
        self.throttle: dict[str, Any] = {"profile": None, "blockedHosts": []}
        self.databases: dict[str, dict[str, list[Any]]] = {}
        self.eval_results: dict[str, Any] = {}
        self.calls: list[str] = []
        self.fail_with: Exception | None = None
        self.idb_databases_supported = True
        self.replay_responses: dict[str, tuple[int, str]] = {}
        self.replayed: list[dict[str, Any]] = []
        self._seq = 0

    # ── test helpers ────────────────────────────────────────────────────
    def navigate(self, url: str) -> None:
        """A real navigation: the new document has none of the old state."""
        self.url = url
        self.installed = {}
        self.pending = {"network": [], "console": []}
        self.throttle = {"profile": None, "blockedHosts": []}

    def push_request(
        self,
        url: str,
        *,
        method: str = "GET",
        status: int = 200,
        duration_ms: int = 12,
        body: str | None = None,
        response_body: str | None = None,
    ) -> str:
        self._seq += 1
        rid = f"f-{self._seq}"
        self.pending["network"].append(
            {
                "id": rid,
                "url": url,
                "method": method,
                "status": status,
                "startedAt": 1_700_000_000_000 + self._seq,
                "durationMs": duration_ms,
                "requestHeaders": {"accept": "*/*"},
                "responseHeaders": {"content-type": "application/json"},
                "mimeType": "application/json",
                "size": 42,
            }
        )
        if body is not None:
            self.pending["network"][-1]["requestBody"] = body
        if response_body is not None:
            self.pending["network"][-1]["responseBody"] = response_body
        return rid

    def push_console(self, level: str, text: str) -> str:
        self._seq += 1
        cid = f"c-{self._seq}"
        self.pending["console"].append({"id": cid, "level": level, "text": text, "at": 1_700_000_000_000 + self._seq})
        return cid

    # ── ContextExecutor ─────────────────────────────────────────────────
    def execute_in_context(self, handle: DocumentHandle, code: str) -> Any:  # noqa: ARG002
        if self.fail_with is not None:
            raise self.fail_with
        kind, reply = self._answer(code)
        self.calls.append(kind)
        return reply

    def _answer(self, code: str) -> tuple[str, Any]:
        if "root.installed[name] = {" in code:
            name = _literal(r'const name = ("[^"]+");', code)
            generation = int(_literal(r"generation: (\d+), version", code))
            if name in self.installed:
                return "install", {"ok": True, "data": {"capability": name, "already": True, "generation": self.installed[name]}}
            self.installed[name] = generation
            self.wraps[name] += 1
            return "install", {"ok": True, "data": {"capability": name, "already": False, "generation": generation}}

        if "{ profile: " in code or "{ blockedHosts: " in code:
            if "throttle" not in self.installed:
                return "throttle", {"ok": False, "errorKind": "NotReady", "error": "throttle capability is not installed"}
            if "{ profile: " in code:
                self.throttle["profile"] = _literal(r"\{ profile: (\{.*\}) \}\);", code)
                return "throttle", {"ok": True, "data": {"profile": self.throttle["profile"]["id"]}}
            self.throttle["blockedHosts"] = _literal(r"\{ blockedHosts: (\[.*\]) \}\);", code)
            return "block", {"ok": True, "data": {"blockedHosts": len(self.throttle["blockedHosts"])}}

        if "const batch = root.pending" in code:
            if not self.installed:
                return "drain", {"ok": True, "data": {"armed": False, "network": [], "console": []}}
            batch, self.pending = self.pending, {"network": [], "console": []}
            return "drain", {"ok": True, "data": {"armed": True, **batch}}

        if "const replayInit = " in code:
            call = {
                "url": _literal(r'const replayUrl = ("(?:[^"\\]|\\.)*");', code),
                "method": _literal(r'method: ("[A-Z]+"), headers', code),
                "headers": _literal(r"headers: (\{.*?\}) \};", code),
                "body": _literal(r"const replayBody = (.*);\n", code),
            }
            self.replayed.append(call)
            max_body = int(_literal(r"const max = (\d+);", code))
            status, text = self.replay_responses.get(call["url"], (200, ""))
            data = {"status": status, "statusText": "OK", "durationMs": 3, "body": text[:max_body], "truncated": len(text) > max_body}
            return "replay", {"ok": True, "data": data}

        if "const code = " in code:
            src = _literal(r"const code = (\".*\");\n", code)
            if src.startswith("throw"):
                raise ExecutionError("Uncaught Error: " + src)
            return "execute", {"ok": True, "data": self.eval_results.get(src)}

        if "new Image()" in code:
            url = _literal(r"new URL\((\".*?\"), globalThis", code)
            return "probe", {"ok": True, "data": {"outcome": "timed_out_assumed_ok", "url": url}}

        if "indexedDB.databases()" in code:
            if not self.idb_databases_supported:
                return "query", {"ok": False, "errorKind": "Unsupported", "error": "indexedDB.databases() is not supported in this context"}
            dbs = [{"name": n, "version": 1} for n in sorted(self.databases)]
            return "query", {"ok": True, "data": {"databases": dbs, "count": len(dbs)}}
        if "const dbName = " in code:
            db = _literal(r'const dbName = ("[^"]*");', code)
            if db not in self.databases:
                return "query", {"ok": False, "errorKind": "ExecutionFailed", "error": f"Database not found: {db}"}
            if "const storeName = " not in code:
                stores = sorted(self.databases[db])
                return "query", {"ok": True, "data": {"database": db, "stores": stores, "count": len(stores)}}
            store = _literal(r'const storeName = ("[^"]*");', code)
            if '"readwrite"' in code:
                self.databases[db][store] = []
                return "query", {"ok": True, "data": {"database": db, "store": store, "cleared": True}}
            limit = int(_literal(r"const limit = (\d+);", code))
            rows = self.databases[db].get(store, [])
            records = [{"key": i, "value": v} for i, v in enumerate(rows[:limit])]
            return "query", {
                "ok": True,
                "data": {"records": records, "count": len(records), "total": len(rows), "truncated": len(rows) > limit},
            }

        if '["local", "session"]' in code:
            return "storage", {"ok": True, "data": {"origin": "https://app.test", "areas": {"local": {"supported": False}, "session": {"supported": False}}}}

        if "String(globalThis.location.href)" in code:
            return "location", {"ok": True, "data": self.url}

        raise AssertionError(f"unexpected fragment:\n{code}")


@pytest.fixture
def page() -> FakePage:
    return FakePage()


@pytest.fixture
def config(tmp_path) -> BridgeConfig:
    return BridgeConfig(data_dir=str(tmp_path / "data"), drain_interval=0.1)


@pytest.fixture
def make_page():
    return FakePage
