"""Telemetry: page-side observers + host-side bounded history.

Page side (capability `telemetry`): wraps `fetch`, `XMLHttpRequest` and
`console.*`, appending records to `__webviewBridge.pending`. Pending lists are
bounded too; a page nobody drains must not grow without limit.

Host side: `TelemetryCollector` drains pending records on a fixed interval and
merges them newest-first into capped ring buffers (100 requests / 500 console
lines by default) that are persisted after every mutation.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .channel import InjectionChannel
from .codec import Command, Fragment, Verb, build_fragment
from .history_persist import HistoryStore
from .registry import Capability, InstrumentationSession
from .result import Result

logger = logging.getLogger("webview.bridge.telemetry")

DEFAULT_MAX_REQUESTS = 100
DEFAULT_MAX_CONSOLE = 500


def _int(value: Any, default: int = 0) -> int:
    try:
        if value is None or isinstance(value, bool):
            return default
        return int(value)
    except Exception:
        return default


def _str_dict(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


@dataclass(slots=True)
class NetworkRequestRecord:
    id: str
    url: str
    method: str = "GET"
    status: int = 0
    started_at: int = 0
    duration_ms: int = 0
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    size: int = -1
    mime_type: str = ""
    error: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NetworkRequestRecord:
        body = raw.get("requestBody")
        resp_body = raw.get("responseBody")
        err = raw.get("error")
        return cls(
            id=str(raw.get("id") or ""),
            url=str(raw.get("url") or ""),
            method=str(raw.get("method") or "GET").upper(),
            status=_int(raw.get("status")),
            started_at=_int(raw.get("startedAt")),
            duration_ms=max(0, _int(raw.get("durationMs"))),
            request_headers=_str_dict(raw.get("requestHeaders")),
            request_body=body if isinstance(body, str) else None,
            response_headers=_str_dict(raw.get("responseHeaders")),
            response_body=resp_body if isinstance(resp_body, str) else None,
            size=_int(raw.get("size"), -1),
            mime_type=str(raw.get("mimeType") or ""),
            error=str(err) if err else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "method": self.method,
            "status": self.status,
            "startedAt": self.started_at,
            "durationMs": self.duration_ms,
            "requestHeaders": dict(self.request_headers),
            "responseHeaders": dict(self.response_headers),
            "size": self.size,
            "mimeType": self.mime_type,
        }
        if self.request_body is not None:
            out["requestBody"] = self.request_body
        if self.response_body is not None:
            out["responseBody"] = self.response_body
        if self.error:
            out["error"] = self.error
        return out


@dataclass(slots=True)
class ConsoleRecord:
    id: str
    level: str
    text: str
    at: int = 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ConsoleRecord:
        level = str(raw.get("level") or "log").lower()
        if level == "warning":
            level = "warn"
        return cls(id=str(raw.get("id") or ""), level=level, text=str(raw.get("text") or ""), at=_int(raw.get("at")))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "level": self.level, "text": self.text, "at": self.at}


T = TypeVar("T", NetworkRequestRecord, ConsoleRecord)


class RingBuffer(Generic[T]):
    """Newest-first FIFO capped at `cap`; the oldest records are evicted."""

    def __init__(self, cap: int) -> None:
        if cap < 1:
            raise ValueError("cap must be >= 1")
        self.cap = cap
        self._items: list[T] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def prepend(self, batch: Iterable[T]) -> int:
        """Put `batch` (newest-first) in front; returns how many were new."""
        with self._lock:
            seen = {it.id for it in self._items if it.id}
            fresh: list[T] = []
            for it in batch:
                if it.id and it.id in seen:
                    continue
                if it.id:
                    seen.add(it.id)
                fresh.append(it)
            if fresh:
                self._items = (fresh + self._items)[: self.cap]
            return len(fresh)

    def snapshot(self, limit: int | None = None) -> list[T]:
        with self._lock:
            items = list(self._items)
        if limit is not None:
            items = items[: max(0, int(limit))]
        return items

    def clear(self) -> None:
        with self._lock:
            self._items = []


# Runs inside the registry install guard (`g`, `root` in scope).
TELEMETRY_SOURCE = r"""
const MAX_PENDING = 1000;
const MAX_STR = 5000;
const MAX_BODY = 10000;
if (!root.pending) root.pending = { network: [], console: [] };
root.seq = root.seq || 0;
const nextId = (prefix) => prefix + Date.now().toString(36) + "-" + (++root.seq);
const clip = (s, max) => (s.length > max ? s.slice(0, max) + "… <truncated len=" + s.length + ">" : s);
const safeToString = (v) => {
  try {
    if (v == null) return String(v);
    if (typeof v === "string") return clip(v, MAX_STR);
    if (v instanceof Error) return clip(v.stack || v.message || String(v), MAX_STR);
    if (typeof v === "object") return clip(JSON.stringify(v), MAX_STR);
    return String(v);
  } catch (_e) {
    try { return clip(String(v), MAX_STR); } catch (_e2) { return "<unserializable>"; }
  }
};
const push = (kind, entry) => {
  try {
    const arr = root.pending[kind] || (root.pending[kind] = []);
    arr.push(entry);
    if (arr.length > MAX_PENDING) arr.splice(0, arr.length - MAX_PENDING);
  } catch (_e) {}
};
const headersOf = (h) => {
  const out = {};
  try {
    if (!h) return out;
    if (typeof h.forEach === "function") { h.forEach((v, k) => { out[String(k)] = String(v); }); return out; }
    if (Array.isArray(h)) { h.forEach((p) => { if (p && p.length > 1) out[String(p[0])] = String(p[1]); }); return out; }
    Object.keys(h).forEach((k) => { out[k] = String(h[k]); });
  } catch (_e) {}
  return out;
};
const bodyOf = (b) => (typeof b === "string" ? clip(b, MAX_BODY) : null);
const now = () => (g.performance && g.performance.now ? g.performance.now() : Date.now());

const origFetch = g.fetch;
if (typeof origFetch === "function") {
  g.fetch = function (input, init) {
    const t0 = now();
    const rec = { id: nextId("f"), url: "", method: "GET", status: 0, startedAt: Date.now(), durationMs: 0 };
    try {
      rec.url = String(input && input.url ? input.url : input);
      rec.method = String((init && init.method) || (input && input.method) || "GET").toUpperCase();
      rec.requestHeaders = headersOf((init && init.headers) || (input && input.headers));
      rec.requestBody = bodyOf(init && init.body);
    } catch (_e) {}
    return origFetch.apply(this, arguments).then(
      (resp) => {
        try {
          rec.durationMs = Math.round(now() - t0);
          rec.status = resp.status;
          rec.responseHeaders = headersOf(resp.headers);
          rec.mimeType = (resp.headers && resp.headers.get("content-type")) || "";
          const len = resp.headers && resp.headers.get("content-length");
          rec.size = len ? Number(len) : -1;
        } catch (_e) {}
        // Body is read off a clone so the caller still owns the stream.
        let clone = null;
        try { clone = resp.clone(); } catch (_e) {}
        if (clone && typeof clone.text === "function") {
          clone.text().then(
            (text) => { rec.responseBody = clip(text, MAX_BODY); push("network", rec); },
            () => { push("network", rec); },
          );
        } else {
          push("network", rec);
        }
        return resp;
      },
      (err) => {
        rec.durationMs = Math.round(now() - t0);
        rec.error = safeToString(err && err.message ? err.message : err);
        push("network", rec);
        throw err;
      },
    );
  };
}

const xhrProto = g.XMLHttpRequest && g.XMLHttpRequest.prototype;
if (xhrProto) {
  const origOpen = xhrProto.open;
  const origSetHeader = xhrProto.setRequestHeader;
  const origSend = xhrProto.send;
  xhrProto.open = function (method, url) {
    try { this.__wbRec = { id: nextId("x"), url: String(url), method: String(method || "GET").toUpperCase(), status: 0, requestHeaders: {} }; } catch (_e) {}
    return origOpen.apply(this, arguments);
  };
  xhrProto.setRequestHeader = function (name, value) {
    try { if (this.__wbRec) this.__wbRec.requestHeaders[String(name)] = String(value); } catch (_e) {}
    return origSetHeader.apply(this, arguments);
  };
  xhrProto.send = function (body) {
    const xhr = this;
    const rec = xhr.__wbRec;
    if (rec) {
      const t0 = now();
      rec.startedAt = Date.now();
      rec.requestBody = bodyOf(body);
      xhr.addEventListener("loadend", () => {
        try {
          rec.durationMs = Math.round(now() - t0);
          rec.status = xhr.status;
          rec.mimeType = xhr.getResponseHeader("content-type") || "";
          const raw = xhr.getAllResponseHeaders() || "";
          const hdrs = {};
          raw.trim().split(/[\r\n]+/).forEach((line) => {
            const i = line.indexOf(":");
            if (i > 0) hdrs[line.slice(0, i).trim()] = line.slice(i + 1).trim();
          });
          rec.responseHeaders = hdrs;
          const len = xhr.getResponseHeader("content-length");
          rec.size = len ? Number(len) : -1;
          if (xhr.responseType === "" || xhr.responseType === "text") {
            rec.responseBody = clip(String(xhr.responseText || ""), MAX_BODY);
          }
          if (xhr.status === 0) rec.error = "network error";
        } catch (_e) {}
        push("network", rec);
      });
    }
    return origSend.apply(this, arguments);
  };
}

["log", "info", "warn", "error", "debug"].forEach((level) => {
  const c = g.console;
  if (!c || typeof c[level] !== "function") return;
  const orig = c[level];
  c[level] = function () {
    try {
      const text = Array.prototype.slice.call(arguments, 0, 16).map(safeToString).join(" ");
      push("console", { id: nextId("c"), level, text: clip(text, MAX_STR), at: Date.now() });
    } catch (_e) {}
    return orig.apply(this, arguments);
  };
});

if (typeof g.addEventListener === "function") {
  g.addEventListener("error", (ev) => {
    try {
      const msg = ev && ev.message ? ev.message : "Uncaught error";
      push("console", { id: nextId("c"), level: "error", text: safeToString(msg), at: Date.now() });
    } catch (_e) {}
  });
  g.addEventListener("unhandledrejection", (ev) => {
    try {
      push("console", { id: nextId("c"), level: "error", text: "Unhandled rejection: " + safeToString(ev && ev.reason), at: Date.now() });
    } catch (_e) {}
  });
}
"""

TELEMETRY_CAPABILITY = Capability(name="telemetry", body=TELEMETRY_SOURCE, version="1")

# One swap statement: read-and-clear is atomic in the single-threaded page.
_DRAIN_BODY = """
const root = globalThis.__webviewBridge;
if (!root || !root.pending) {
  return { ok: true, data: { armed: false, network: [], console: [] } };
}
const batch = root.pending; root.pending = { network: [], console: [] };
return { ok: true, data: { armed: true, network: batch.network || [], console: batch.console || [] } };
"""


def drain_fragment() -> Fragment:
    return build_fragment(Command(Verb.DRAIN, target="telemetry"), _DRAIN_BODY)

REPLAY_MAX_BODY = 10000

# Re-issued through the page's own fetch, so the replay is itself recorded.
_REPLAY_BODY = """
const replayUrl = {{url}};
const replayInit = { method: {{method}}, headers: {{headers}} };
const replayBody = {{body}};
if (replayBody !== null) replayInit.body = replayBody;
const t0 = Date.now();
const resp = await fetch(replayUrl, replayInit);
const text = await resp.text();
const max = {{max_body}};
return {
  ok: true,
  data: {
    status: resp.status,
    statusText: resp.statusText,
    durationMs: Date.now() - t0,
    body: text.length > max ? text.slice(0, max) : text,
    truncated: text.length > max,
  },
};
"""


def replay_fragment(record: NetworkRequestRecord, *, max_body: int = REPLAY_MAX_BODY) -> Fragment:
    method = record.method.upper() or "GET"
    body = record.request_body if method not in ("GET", "HEAD") else None
    return build_fragment(
        Command(
            Verb.REPLAY,
            target=record.id,
            parameters={
                "url": record.url,
                "method": method,
                "headers": dict(record.request_headers),
                "body": body,
                "max_body": max(0, int(max_body)),
            },
        ),
        _REPLAY_BODY,
    )


class TelemetryCollector:
    """Periodic DRAIN -> bounded, persisted host history.

    Drain failures are logged at DEBUG and retried on the next tick; they are
    never surfaced to callers of `requests()` / `console()`.
    """

    def __init__(
        self,
        channel: InjectionChannel,
        session: InstrumentationSession,
        *,
        interval: float = 2.0,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        max_console: int = DEFAULT_MAX_CONSOLE,
        store: HistoryStore | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.channel = channel
        self.session = session
        self.interval = max(0.05, float(interval))
        self.request_buffer: RingBuffer[NetworkRequestRecord] = RingBuffer(max_requests)
        self.console_buffer: RingBuffer[ConsoleRecord] = RingBuffer(max_console)
        self.store = store
        self._on_change = on_change
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._loaded = False

    # ── persistence ─────────────────────────────────────────────────────
    def load(self) -> None:
        """Restore the last snapshot; must run before live collection."""
        self._loaded = True
        if self.store is None:
            return
        snap = self.store.load()
        requests = [NetworkRequestRecord.from_dict(it) for it in snap.get("requests", [])]
        console = [ConsoleRecord.from_dict(it) for it in snap.get("console", [])]
        self.request_buffer.prepend(requests)
        self.console_buffer.prepend(console)
        logger.info("history_loaded requests=%d console=%d", len(self.request_buffer), len(self.console_buffer))

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(
                requests=[r.to_dict() for r in self.request_buffer.snapshot()],
                console=[c.to_dict() for c in self.console_buffer.snapshot()],
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("history_save_failed err=%s", exc)

    # ── collection ──────────────────────────────────────────────────────
    def ingest(self, batch: dict[str, Any]) -> int:
        """Merge one drained batch (oldest-first page order) into the buffers."""
        network = batch.get("network") if isinstance(batch.get("network"), list) else []
        console = batch.get("console") if isinstance(batch.get("console"), list) else []
        requests = [NetworkRequestRecord.from_dict(it) for it in reversed(network) if isinstance(it, dict)]
        lines = [ConsoleRecord.from_dict(it) for it in reversed(console) if isinstance(it, dict)]
        added = self.request_buffer.prepend(requests) + self.console_buffer.prepend(lines)
        if added:
            self._persist()
            if self._on_change is not None:
                self._on_change()
        return added

    def tick(self) -> Result:
        """One DRAIN round-trip."""
        res = self.channel.execute(self.session.handle, drain_fragment())
        if not res.ok:
            logger.debug("drain_failed kind=%s err=%s", res.error_kind, res.error)
            return res
        data = res.data if isinstance(res.data, dict) else {}
        return Result.success({"added": self.ingest(data), "armed": bool(data.get("armed"))})

    def start(self) -> None:
        if not self._loaded:
            self.load()
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="webview-bridge-telemetry", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:  # noqa: BLE001
                logger.debug("drain_tick_crashed", exc_info=True)

    # ── exposure ────────────────────────────────────────────────────────
    def requests(self, limit: int | None = None) -> list[NetworkRequestRecord]:
        return self.request_buffer.snapshot(limit)

    def console(self, limit: int | None = None) -> list[ConsoleRecord]:
        return self.console_buffer.snapshot(limit)

    def clear(self) -> None:
        self.request_buffer.clear()
        self.console_buffer.clear()
        if self.store is not None:
            self.store.delete()


__all__ = [
    "DEFAULT_MAX_CONSOLE",
    "DEFAULT_MAX_REQUESTS",
    "REPLAY_MAX_BODY",
    "TELEMETRY_CAPABILITY",
    "ConsoleRecord",
    "NetworkRequestRecord",
    "RingBuffer",
    "TelemetryCollector",
    "drain_fragment",
    "replay_fragment",
]
