"""Installation registry: at most one active wrapper per capability per generation.

Two layers:
- host side: `InstrumentationSession.installed` maps capability -> generation tag
- page side: `globalThis.__webviewBridge.installed[name]` checked by every
  install fragment before it wraps anything

The page-side flag is what actually prevents double wrapping (the host map is
only a cache); re-arming may fire more often than real navigations.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from .channel import DocumentHandle, InjectionChannel
from .codec import Command, Fragment, Verb, build_fragment
from .result import BridgeError, ErrorKind, Result

logger = logging.getLogger("webview.bridge.registry")

PAGE_ROOT = "__webviewBridge"


@dataclass(slots=True)
class InstrumentationSession:
    """Host-owned state for one embedded document."""

    handle: DocumentHandle
    generation: int = 0
    installed: dict[str, int] = field(default_factory=dict)

    @property
    def installed_capabilities(self) -> set[str]:
        return {name for name, gen in self.installed.items() if gen == self.generation}


@dataclass(slots=True, frozen=True)
class Capability:
    """A named, idempotently installable page-side observer/wrapper.

    `body` runs with `g` (globalThis) and `root` (the bridge root object) in
    scope and only after the page-side flag check passed.
    """

    name: str
    body: str
    version: str = "1"


_INSTALL_BODY = """
const g = globalThis;
const root = g.__webviewBridge || (g.__webviewBridge = { installed: {}, pending: { network: [], console: [] } });
if (!root.installed) root.installed = {};
const name = {{capability}};
const prev = root.installed[name];
if (prev) {
  return { ok: true, data: { capability: name, already: true, generation: prev.generation } };
}
root.installed[name] = { generation: {{generation}}, version: {{version}}, installedAt: Date.now() };
try {
%s
} catch (e) {
  delete root.installed[name];
  throw e;
}
return { ok: true, data: { capability: name, already: false, generation: {{generation}} } };
"""


class InstallationRegistry:
    def __init__(self) -> None:
        self._capabilities: dict[str, Capability] = {}

    def register(self, capability: Capability) -> None:
        if not capability.name or capability.name in self._capabilities:
            raise ValueError(f"capability already registered or unnamed: {capability.name!r}")
        self._capabilities[capability.name] = capability

    def names(self) -> list[str]:
        return list(self._capabilities)

    def get(self, name: str) -> Capability:
        cap = self._capabilities.get(name)
        if cap is None:
            raise BridgeError(ErrorKind.UNSUPPORTED, f"unknown capability: {name}")
        return cap

    def install_fragment(self, name: str, generation: int) -> Fragment:
        cap = self.get(name)
        body = "\n".join(("  " + line) if line.strip() else line for line in cap.body.strip("\n").splitlines())
        command = Command(
            Verb.INSTALL,
            target=name,
            parameters={"capability": name, "generation": generation, "version": cap.version},
        )
        # Capability bodies are static page code; only the parameters above are dynamic.
        return build_fragment(command, _INSTALL_BODY.replace("%s", body, 1))

    def reset(self, session: InstrumentationSession, generation: int) -> None:
        """Start a new generation: every page-side flag is gone after a real navigation."""
        session.generation = generation
        session.installed.clear()

    def ensure(self, channel: InjectionChannel, session: InstrumentationSession, name: str) -> Result:
        """Install one capability unless already installed in this generation."""
        if name in session.installed_capabilities:
            return Result.success({"capability": name, "already": True, "generation": session.generation})

        generation = session.generation
        started = time.monotonic()
        res = channel.execute(session.handle, self.install_fragment(name, generation))
        if not res.ok:
            logger.debug("install_failed capability=%s kind=%s err=%s", name, res.error_kind, res.error)
            return res
        if session.generation == generation:
            session.installed[name] = generation
        logger.debug(
            "installed capability=%s generation=%d already=%s ms=%d",
            name,
            generation,
            bool(isinstance(res.data, dict) and res.data.get("already")),
            int((time.monotonic() - started) * 1000),
        )
        return res

    def ensure_all(self, channel: InjectionChannel, session: InstrumentationSession) -> Result:
        installed: list[str] = []
        for name in self.names():
            res = self.ensure(channel, session, name)
            if not res.ok:
                return res
            installed.append(name)
        return Result.success({"capabilities": installed, "generation": session.generation})


__all__ = ["PAGE_ROOT", "Capability", "InstallationRegistry", "InstrumentationSession"]
