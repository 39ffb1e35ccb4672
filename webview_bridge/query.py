"""Storage query interpreter: a four-verb language over the document's IndexedDB.

    SHOW DATABASES
    SHOW STORES FROM <db>
    SELECT * FROM <db>.<store>
    CLEAR FROM <db>.<store>

Keywords are case-insensitive; identifiers are restricted to
`[A-Za-z0-9_-]+` before they are embedded (as encoded literals) in the
generated fragment. Every query opens and closes its own connection.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Union

from .channel import InjectionChannel
from .codec import Command, Fragment, Verb, build_fragment
from .registry import InstrumentationSession
from .result import BridgeError, ErrorKind, Result

logger = logging.getLogger("webview.bridge.query")

ACCEPTED_FORMS = (
    "SHOW DATABASES",
    "SHOW STORES FROM <db>",
    "SELECT * FROM <db>.<store>",
    "CLEAR FROM <db>.<store>",
)
HELP_TEXT = "Accepted forms: " + ", ".join(ACCEPTED_FORMS)

DEFAULT_SELECT_LIMIT = 50
DEFAULT_HISTORY_SIZE = 100

_IDENT = r"[A-Za-z0-9_-]+"
_SHOW_DATABASES_RE = re.compile(r"^SHOW\s+DATABASES$", re.IGNORECASE | re.ASCII)
_SHOW_STORES_RE = re.compile(rf"^SHOW\s+STORES\s+FROM\s+({_IDENT})$", re.IGNORECASE | re.ASCII)
_SELECT_RE = re.compile(rf"^SELECT\s+\*\s+FROM\s+({_IDENT})\.({_IDENT})$", re.IGNORECASE | re.ASCII)
_CLEAR_RE = re.compile(rf"^CLEAR\s+FROM\s+({_IDENT})\.({_IDENT})$", re.IGNORECASE | re.ASCII)
_KNOWN_VERBS = {"SHOW", "SELECT", "CLEAR"}


@dataclass(slots=True, frozen=True)
class ListDatabases:
    pass


@dataclass(slots=True, frozen=True)
class ListStores:
    db: str


@dataclass(slots=True, frozen=True)
class SelectAll:
    db: str
    store: str


@dataclass(slots=True, frozen=True)
class ClearStore:
    db: str
    store: str


ParsedQuery = Union[ListDatabases, ListStores, SelectAll, ClearStore]


def parse(text: str) -> ParsedQuery:
    """Parse one query line.

    Raises BridgeError(UNSUPPORTED) for an unknown verb and
    BridgeError(PARSE_ERROR) for a known verb with malformed arguments; both
    messages carry the accepted forms.
    """
    line = str(text or "").strip().rstrip(";").strip()
    if not line:
        raise BridgeError(ErrorKind.PARSE_ERROR, f"Empty query. {HELP_TEXT}")
    if "\n" in line:
        raise BridgeError(ErrorKind.PARSE_ERROR, f"One query per line. {HELP_TEXT}")

    if _SHOW_DATABASES_RE.match(line):
        return ListDatabases()
    if m := _SHOW_STORES_RE.match(line):
        return ListStores(db=m.group(1))
    if m := _SELECT_RE.match(line):
        return SelectAll(db=m.group(1), store=m.group(2))
    if m := _CLEAR_RE.match(line):
        return ClearStore(db=m.group(1), store=m.group(2))

    verb = line.split(None, 1)[0].upper()
    if verb in _KNOWN_VERBS:
        raise BridgeError(ErrorKind.PARSE_ERROR, f"Malformed {verb} query: {line!r}. {HELP_TEXT}")
    raise BridgeError(ErrorKind.UNSUPPORTED, f"Unsupported command. {HELP_TEXT}")


_PRELUDE = """
if (typeof indexedDB === "undefined" || !indexedDB) {
  return { ok: false, errorKind: "Unsupported", error: "IndexedDB is not available in this context" };
}
const openDb = (name) => new Promise((resolve, reject) => {
  let missing = false;
  const req = indexedDB.open(name);
  req.onupgradeneeded = () => {
    missing = true;
    try { req.transaction.abort(); } catch (_e) {}
  };
  req.onsuccess = () => resolve(req.result);
  req.onerror = () => reject(missing ? new Error("Database not found: " + name) : (req.error || new Error("Cannot open database: " + name)));
  req.onblocked = () => reject(new Error("Database open blocked: " + name));
});
const plain = (v) => {
  try { return v === undefined ? null : JSON.parse(JSON.stringify(v)); } catch (_e) { return String(v); }
};
"""

_LIST_DATABASES_BODY = """
if (typeof indexedDB === "undefined" || !indexedDB || typeof indexedDB.databases !== "function") {
  return { ok: false, errorKind: "Unsupported", error: "indexedDB.databases() is not supported in this context" };
}
const dbs = await indexedDB.databases();
const databases = dbs.map((d) => ({ name: d.name, version: d.version }));
return { ok: true, data: { databases, count: databases.length, message: "Found " + databases.length + " database(s)" } };
"""

_LIST_STORES_BODY = (
    _PRELUDE
    + """
const dbName = {{db}};
const db = await openDb(dbName);
try {
  const stores = Array.from(db.objectStoreNames);
  return { ok: true, data: { database: dbName, stores, count: stores.length, message: "Found " + stores.length + " store(s)" } };
} finally {
  db.close();
}
"""
)

_SELECT_BODY = (
    _PRELUDE
    + """
const dbName = {{db}};
const storeName = {{store}};
const limit = {{limit}};
const db = await openDb(dbName);
try {
  if (!db.objectStoreNames.contains(storeName)) throw new Error("Object store not found: " + dbName + "." + storeName);
  const tx = db.transaction(storeName, "readonly");
  const store = tx.objectStore(storeName);
  const total = await new Promise((resolve) => {
    const req = store.count();
    req.onsuccess = () => resolve(req.result);
    req.onerror = () => resolve(null);
  });
  const records = [];
  await new Promise((resolve, reject) => {
    const req = store.openCursor();
    req.onsuccess = () => {
      const cursor = req.result;
      if (!cursor || records.length >= limit) { resolve(); return; }
      records.push({ key: plain(cursor.key), value: plain(cursor.value) });
      cursor.continue();
    };
    req.onerror = () => reject(req.error);
  });
  return {
    ok: true,
    data: { database: dbName, store: storeName, records, count: records.length, total, truncated: total != null && total > records.length, message: "Retrieved " + records.length + " record(s)" },
  };
} finally {
  db.close();
}
"""
)

_CLEAR_BODY = (
    _PRELUDE
    + """
const dbName = {{db}};
const storeName = {{store}};
const db = await openDb(dbName);
try {
  if (!db.objectStoreNames.contains(storeName)) throw new Error("Object store not found: " + dbName + "." + storeName);
  const tx = db.transaction(storeName, "readwrite");
  tx.objectStore(storeName).clear();
  await new Promise((resolve, reject) => {
    tx.oncomplete = () => resolve();
    tx.onerror = () => reject(tx.error || new Error("clear failed"));
    tx.onabort = () => reject(tx.error || new Error("clear aborted"));
  });
  return { ok: true, data: { database: dbName, store: storeName, cleared: true, message: "Store cleared successfully" } };
} finally {
  db.close();
}
"""
)


def compile_query(query: ParsedQuery, *, limit: int = DEFAULT_SELECT_LIMIT) -> Fragment:
    if isinstance(query, ListDatabases):
        return build_fragment(Command(Verb.SHOW_DATABASES), _LIST_DATABASES_BODY)
    if isinstance(query, ListStores):
        return build_fragment(Command(Verb.SHOW_STORES, target=query.db, parameters={"db": query.db}), _LIST_STORES_BODY)
    if isinstance(query, SelectAll):
        return build_fragment(
            Command(
                Verb.SELECT,
                target=f"{query.db}.{query.store}",
                parameters={"db": query.db, "store": query.store, "limit": max(1, int(limit))},
            ),
            _SELECT_BODY,
        )
    if isinstance(query, ClearStore):
        return build_fragment(
            Command(Verb.CLEAR, target=f"{query.db}.{query.store}", parameters={"db": query.db, "store": query.store}),
            _CLEAR_BODY,
        )
    raise TypeError(f"not a parsed query: {query!r}")


@dataclass(slots=True)
class QueryHistoryEntry:
    id: str
    query: str
    status: str
    duration_ms: int
    at: int
    rows: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "query": self.query,
            "status": self.status,
            "durationMs": self.duration_ms,
            "at": self.at,
        }
        if self.rows is not None:
            out["rows"] = self.rows
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class QueryHistory:
    cap: int = DEFAULT_HISTORY_SIZE
    _entries: list[QueryHistoryEntry] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, entry: QueryHistoryEntry) -> None:
        with self._lock:
            self._entries = ([entry] + self._entries)[: self.cap]

    def entries(self, limit: int | None = None) -> list[QueryHistoryEntry]:
        with self._lock:
            items = list(self._entries)
        return items if limit is None else items[: max(0, int(limit))]


def _row_count(data: Any) -> int | None:
    if not isinstance(data, dict):
        return None
    for key in ("records", "stores", "databases"):
        if isinstance(data.get(key), list):
            return len(data[key])
    return None


class StorageQueryInterpreter:
    def __init__(
        self,
        channel: InjectionChannel,
        session: InstrumentationSession,
        *,
        limit: int = DEFAULT_SELECT_LIMIT,
        history: QueryHistory | None = None,
    ) -> None:
        self.channel = channel
        self.session = session
        self.limit = limit
        self.history = history if history is not None else QueryHistory()

    def run(self, text: str) -> Result:
        started = time.monotonic()
        try:
            fragment = compile_query(parse(text), limit=self.limit)
        except BridgeError as exc:
            res = exc.to_result()
        else:
            res = self.channel.execute(self.session.handle, fragment)

        entry = QueryHistoryEntry(
            id=uuid.uuid4().hex,
            query=str(text or "").strip(),
            status="success" if res.ok else "error",
            duration_ms=int((time.monotonic() - started) * 1000),
            at=int(time.time() * 1000),
            rows=_row_count(res.data) if res.ok else None,
            error=None if res.ok else res.error,
        )
        self.history.record(entry)
        logger.info("query status=%s ms=%d query=%s", entry.status, entry.duration_ms, entry.query)
        return res


__all__ = [
    "ACCEPTED_FORMS",
    "HELP_TEXT",
    "ClearStore",
    "ListDatabases",
    "ListStores",
    "ParsedQuery",
    "QueryHistory",
    "QueryHistoryEntry",
    "SelectAll",
    "StorageQueryInterpreter",
    "compile_query",
    "parse",
]
