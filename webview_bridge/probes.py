"""Bounded page-side probes: resource loads, service workers, cache storage.

Every probe resolves on its own (internal timeouts); an in-flight fragment
cannot be cancelled from the host.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .channel import InjectionChannel
from .codec import Command, Fragment, Verb, build_fragment
from .registry import InstrumentationSession
from .result import BridgeError, ErrorKind, Result

DEFAULT_PROBE_TIMEOUT_MS = 3000
DEFAULT_MIN_SIZE = 200


class ProbeOutcome(str, Enum):
    LOADED = "loaded"
    TOO_SMALL = "too_small"
    FAILED = "failed"
    # The resource neither loaded nor failed before the deadline. Reported
    # separately from LOADED; callers decide whether to treat it as a pass.
    TIMED_OUT_ASSUMED_OK = "timed_out_assumed_ok"

    @property
    def passed(self) -> bool:
        return self in (ProbeOutcome.LOADED, ProbeOutcome.TIMED_OUT_ASSUMED_OK)


@dataclass(slots=True, frozen=True)
class ProbeResult:
    url: str
    outcome: ProbeOutcome
    width: int | None = None
    height: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"url": self.url, "outcome": self.outcome.value, "passed": self.outcome.passed}
        if self.width is not None:
            out["width"] = self.width
        if self.height is not None:
            out["height"] = self.height
        if self.error:
            out["error"] = self.error
        return out


_PROBE_BODY = """
if (typeof Image === "undefined") {
  return { ok: false, errorKind: "Unsupported", error: "Image loading is not available in this context" };
}
const src = new URL({{url}}, globalThis.location.href).toString();
const minSize = {{min_size}};
const outcome = await new Promise((resolve) => {
  const img = new Image();
  const timer = setTimeout(() => resolve({ outcome: "timed_out_assumed_ok" }), {{timeout_ms}});
  img.onload = () => {
    clearTimeout(timer);
    const w = img.naturalWidth || img.width;
    const h = img.naturalHeight || img.height;
    if (w >= minSize && h >= minSize) resolve({ outcome: "loaded", width: w, height: h });
    else resolve({ outcome: "too_small", width: w, height: h, error: "Image too small: " + w + "x" + h + " (min " + minSize + "x" + minSize + ")" });
  };
  img.onerror = () => {
    clearTimeout(timer);
    resolve({ outcome: "failed", error: "Failed to load image" });
  };
  img.src = src;
});
outcome.url = src;
return { ok: true, data: outcome };
"""

_SERVICE_WORKERS_BODY = """
if (!globalThis.navigator || !("serviceWorker" in navigator)) {
  return { ok: false, errorKind: "Unsupported", error: "Service workers are not available in this context" };
}
const regs = await navigator.serviceWorker.getRegistrations();
return {
  ok: true,
  data: regs.map((reg) => ({
    scope: reg.scope,
    scriptUrl: reg.active ? reg.active.scriptURL : null,
    state: reg.active ? reg.active.state : "none",
  })),
};
"""

_CLEAR_CACHES_BODY = """
if (typeof caches === "undefined") {
  return { ok: false, errorKind: "Unsupported", error: "Cache Storage is not available in this context" };
}
const names = await caches.keys();
await Promise.all(names.map((name) => caches.delete(name)));
return { ok: true, data: { cleared: names.length } };
"""


def probe_fragment(url: str, *, timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS, min_size: int = DEFAULT_MIN_SIZE) -> Fragment:
    return build_fragment(
        Command(
            Verb.PROBE,
            target=url,
            parameters={"url": url, "timeout_ms": max(100, int(timeout_ms)), "min_size": max(0, int(min_size))},
        ),
        _PROBE_BODY,
    )


def probe_resource(
    channel: InjectionChannel,
    session: InstrumentationSession,
    url: str,
    *,
    timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    min_size: int = DEFAULT_MIN_SIZE,
) -> Result:
    if not isinstance(url, str) or not url.strip():
        return BridgeError(ErrorKind.PARSE_ERROR, "url must be a non-empty string").to_result()
    res = channel.execute(session.handle, probe_fragment(url.strip(), timeout_ms=timeout_ms, min_size=min_size))
    if not res.ok:
        return res
    data = res.data if isinstance(res.data, dict) else {}
    try:
        outcome = ProbeOutcome(str(data.get("outcome")))
    except ValueError:
        return Result.failure(f"unexpected probe outcome: {data.get('outcome')!r}", ErrorKind.EXECUTION_FAILED)
    width = data.get("width")
    height = data.get("height")
    return Result.success(
        ProbeResult(
            url=str(data.get("url") or url),
            outcome=outcome,
            width=int(width) if isinstance(width, (int, float)) else None,
            height=int(height) if isinstance(height, (int, float)) else None,
            error=data.get("error") if isinstance(data.get("error"), str) else None,
        )
    )


def service_workers(channel: InjectionChannel, session: InstrumentationSession) -> Result:
    return channel.execute(session.handle, build_fragment(Command(Verb.PROBE, target="service-workers"), _SERVICE_WORKERS_BODY))


def clear_caches(channel: InjectionChannel, session: InstrumentationSession) -> Result:
    return channel.execute(session.handle, build_fragment(Command(Verb.PROBE, target="caches"), _CLEAR_CACHES_BODY))


__all__ = [
    "DEFAULT_MIN_SIZE",
    "DEFAULT_PROBE_TIMEOUT_MS",
    "ProbeOutcome",
    "ProbeResult",
    "clear_caches",
    "probe_fragment",
    "probe_resource",
    "service_workers",
]
