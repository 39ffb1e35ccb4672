"""Network condition simulation from inside the document.

The `throttle` capability wraps `fetch` and `XMLHttpRequest.prototype.send`
once per generation. The wrappers read `__webviewBridge.throttle` on every
call, so switching profiles is a single page-side assignment and never
stacks wrappers.

Only latency is simulated (plus offline / blocked hosts); there is no
byte-rate shaping.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .channel import InjectionChannel
from .codec import Command, Fragment, Verb, build_fragment
from .registry import Capability, InstallationRegistry, InstrumentationSession
from .result import BridgeError, ErrorKind, Result

logger = logging.getLogger("webview.bridge.throttle")

UNLIMITED = -1


@dataclass(slots=True, frozen=True)
class ThrottleProfile:
    id: str
    download_bps: float = UNLIMITED
    upload_bps: float = UNLIMITED
    latency_ms: float = 0
    label: str = ""

    @property
    def offline(self) -> bool:
        return self.download_bps == 0 and self.upload_bps == 0

    def to_page(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label or self.id,
            "downloadBps": self.download_bps,
            "uploadBps": self.upload_bps,
            "latencyMs": max(0, self.latency_ms),
            "offline": self.offline,
        }


PRESETS: dict[str, ThrottleProfile] = {
    p.id: p
    for p in (
        ThrottleProfile("online", UNLIMITED, UNLIMITED, 0, "Online"),
        ThrottleProfile("offline", 0, 0, 0, "Offline"),
        ThrottleProfile("2g", 250 * 1024 / 8, 50 * 1024 / 8, 2000, "Slow 2G"),
        ThrottleProfile("3g", 1.6 * 1024 * 1024 / 8, 750 * 1024 / 8, 562.5, "Fast 3G"),
        ThrottleProfile("4g", 4 * 1024 * 1024 / 8, 3 * 1024 * 1024 / 8, 170, "4G"),
    )
}


def profile_by_id(profile_id: str) -> ThrottleProfile:
    key = str(profile_id or "").strip().lower()
    profile = PRESETS.get(key)
    if profile is None:
        raise BridgeError(
            ErrorKind.UNSUPPORTED,
            f"Unknown throttle profile: {profile_id}. Use one of: {', '.join(PRESETS)}",
        )
    return profile


# Runs inside the registry install guard (`g`, `root` in scope).
THROTTLE_SOURCE = r"""
if (!root.throttle) root.throttle = { profile: null, blockedHosts: [] };
const current = () => (root.throttle && root.throttle.profile) || null;
const isOffline = () => { const p = current(); return !!p && p.offline === true; };
const delayMs = () => { const p = current(); return p && p.latencyMs > 0 ? p.latencyMs : 0; };
const isBlocked = (url) => {
  try {
    const hosts = (root.throttle && root.throttle.blockedHosts) || [];
    if (!hosts.length) return false;
    const host = new URL(String(url), g.location ? g.location.href : undefined).hostname.toLowerCase();
    return hosts.some((h) => host === h || host.endsWith("." + h));
  } catch (_e) {
    return false;
  }
};
const sleep = (ms) => new Promise((resolve) => setTimeout(resolve, ms));

const origFetch = g.fetch;
if (typeof origFetch === "function") {
  g.fetch = function (input, init) {
    const self = this;
    const args = arguments;
    let url = "";
    try { url = String(input && input.url ? input.url : input); } catch (_e) {}
    if (isOffline()) return Promise.reject(new TypeError("Failed to fetch (simulated offline)"));
    if (isBlocked(url)) return Promise.reject(new TypeError("Failed to fetch (blocked host)"));
    const ms = delayMs();
    if (!ms) return origFetch.apply(self, args);
    return sleep(ms).then(() => origFetch.apply(self, args));
  };
}

const xhrProto = g.XMLHttpRequest && g.XMLHttpRequest.prototype;
if (xhrProto) {
  const origOpen = xhrProto.open;
  const origSend = xhrProto.send;
  xhrProto.open = function (method, url) {
    try { this.__wbThrottleUrl = String(url); } catch (_e) {}
    return origOpen.apply(this, arguments);
  };
  xhrProto.send = function () {
    const xhr = this;
    const args = arguments;
    if (isOffline() || isBlocked(xhr.__wbThrottleUrl || "")) {
      setTimeout(() => {
        try {
          xhr.dispatchEvent(new ProgressEvent("error"));
          xhr.dispatchEvent(new ProgressEvent("loadend"));
        } catch (_e) {}
      }, 0);
      return;
    }
    const ms = delayMs();
    if (!ms) return origSend.apply(xhr, args);
    setTimeout(() => { try { origSend.apply(xhr, args); } catch (_e) {} }, ms);
  };
}
"""

THROTTLE_CAPABILITY = Capability(name="throttle", body=THROTTLE_SOURCE, version="1")

_APPLY_BODY = """
const root = globalThis.__webviewBridge;
if (!root || !root.installed || !root.installed.throttle) {
  return { ok: false, errorKind: "NotReady", error: "throttle capability is not installed" };
}
root.throttle = Object.assign({}, root.throttle, { profile: {{profile}} });
return { ok: true, data: { profile: root.throttle.profile.id } };
"""

_BLOCK_BODY = """
const root = globalThis.__webviewBridge;
if (!root || !root.installed || !root.installed.throttle) {
  return { ok: false, errorKind: "NotReady", error: "throttle capability is not installed" };
}
root.throttle = Object.assign({}, root.throttle, { blockedHosts: {{hosts}} });
return { ok: true, data: { blockedHosts: root.throttle.blockedHosts.length } };
"""


def apply_fragment(profile: ThrottleProfile) -> Fragment:
    return build_fragment(
        Command(Verb.APPLY_THROTTLE, target=profile.id, parameters={"profile": profile.to_page()}),
        _APPLY_BODY,
    )


def block_fragment(hosts: list[str]) -> Fragment:
    return build_fragment(Command(Verb.APPLY_THROTTLE, target="blocked-hosts", parameters={"hosts": hosts}), _BLOCK_BODY)


def normalize_hosts(hosts: list[str] | str | None) -> list[str]:
    if hosts is None:
        return []
    if isinstance(hosts, str):
        hosts = hosts.split(",")
    out: list[str] = []
    for raw in hosts:
        h = str(raw or "").strip().lower().lstrip(".").rstrip(".")
        if h and h not in out:
            out.append(h)
    return out


class ThrottleSimulator:
    """Exactly one active profile per session; replaced, never stacked."""

    def __init__(self, channel: InjectionChannel, registry: InstallationRegistry, session: InstrumentationSession) -> None:
        self.channel = channel
        self.registry = registry
        self.session = session
        self.profile: ThrottleProfile = PRESETS["online"]
        self.blocked_hosts: list[str] = []

    def apply_profile(self, profile: ThrottleProfile | str) -> Result:
        if isinstance(profile, str):
            try:
                profile = profile_by_id(profile)
            except BridgeError as exc:
                return exc.to_result()
        self.profile = profile
        res = self.registry.ensure(self.channel, self.session, THROTTLE_CAPABILITY.name)
        if not res.ok:
            return res
        res = self.channel.execute(self.session.handle, apply_fragment(profile))
        if res.ok:
            logger.info("throttle_applied profile=%s latency_ms=%s", profile.id, profile.latency_ms)
        return res

    def set_blocked_hosts(self, hosts: list[str] | str | None) -> Result:
        self.blocked_hosts = normalize_hosts(hosts)
        res = self.registry.ensure(self.channel, self.session, THROTTLE_CAPABILITY.name)
        if not res.ok:
            return res
        return self.channel.execute(self.session.handle, block_fragment(self.blocked_hosts))

    def reapply(self) -> Result:
        """Restore host-side throttle state after a re-arm (page state was wiped)."""
        if self.profile.id == "online" and not self.blocked_hosts:
            return Result.success({"profile": "online"})
        res = self.apply_profile(self.profile)
        if res.ok and self.blocked_hosts:
            res = self.set_blocked_hosts(self.blocked_hosts)
        return res


__all__ = [
    "PRESETS",
    "THROTTLE_CAPABILITY",
    "UNLIMITED",
    "ThrottleProfile",
    "ThrottleSimulator",
    "apply_fragment",
    "block_fragment",
    "normalize_hosts",
    "profile_by_id",
]
