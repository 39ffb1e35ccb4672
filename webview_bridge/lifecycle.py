"""Lifecycle coordinator: re-arm page-side instrumentation across navigations.

Signals arrive as discrete typed messages on a queue (`post`) and are consumed
by a small state machine (`pump`):

    UNINSTALLED --content loaded--> INSTALLING --install ok--> ARMED
         ^                               |                        |
         +-------- install failed -------+                        |
         +----------------- navigation committed -----------------+

A committed main-frame navigation starts a new generation. In-document
navigations (hash/history changes) never do; they are accepted only when the
document's own `location.href` confirms the signalled URL, which filters out
signals coming from nested sub-frames.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Union

from .codec import Command, Fragment, Verb, build_fragment

if TYPE_CHECKING:
    from .channel import InjectionChannel
    from .registry import InstallationRegistry, InstrumentationSession
    from .result import Result

logger = logging.getLogger("webview.bridge.lifecycle")


@dataclass(slots=True, frozen=True)
class NavigationCommitted:
    url: str
    is_main_frame: bool = True


@dataclass(slots=True, frozen=True)
class ContentLoaded:
    url: str = ""
    is_main_frame: bool = True


@dataclass(slots=True, frozen=True)
class InPageNavigation:
    url: str
    is_main_frame: bool = True


LifecycleSignal = Union[NavigationCommitted, ContentLoaded, InPageNavigation]


class LifecycleState(str, Enum):
    UNINSTALLED = "uninstalled"
    INSTALLING = "installing"
    ARMED = "armed"


def location_fragment() -> Fragment:
    return build_fragment(Command(Verb.LOCATION), "return { ok: true, data: String(globalThis.location.href) };")


def _same_location(a: str, b: str) -> bool:
    return (a or "").rstrip("#") == (b or "").rstrip("#")


class LifecycleCoordinator:
    def __init__(
        self,
        session: InstrumentationSession,
        registry: InstallationRegistry,
        channel: InjectionChannel,
    ) -> None:
        self.session = session
        self.registry = registry
        self.channel = channel
        self.state = LifecycleState.UNINSTALLED
        self._inbox: queue.Queue[LifecycleSignal] = queue.Queue()
        self._pump_lock = threading.Lock()
        self._listeners: list[Callable[[LifecycleState, int], None]] = []

    @property
    def generation(self) -> int:
        return self.session.generation

    def add_listener(self, listener: Callable[[LifecycleState, int], None]) -> None:
        """Called after every state change with (state, generation)."""
        self._listeners.append(listener)

    def post(self, signal: LifecycleSignal) -> None:
        self._inbox.put(signal)

    def pump(self, max_signals: int | None = None) -> int:
        """Process queued signals in order; returns how many were handled.

        Only one thread pumps at a time; a concurrent caller returns 0 and
        leaves the queue to the active pump.
        """
        handled = 0
        while True:
            if not self._pump_lock.acquire(blocking=False):
                return handled
            try:
                while max_signals is None or handled < max_signals:
                    try:
                        signal = self._inbox.get_nowait()
                    except queue.Empty:
                        break
                    self.handle(signal)
                    handled += 1
            finally:
                self._pump_lock.release()
            # A signal posted between the last get and the release has no pump.
            if self._inbox.empty() or (max_signals is not None and handled >= max_signals):
                return handled

    def handle(self, signal: LifecycleSignal) -> None:
        if isinstance(signal, NavigationCommitted):
            self._on_committed(signal)
        elif isinstance(signal, ContentLoaded):
            self._on_content_loaded(signal)
        elif isinstance(signal, InPageNavigation):
            self._on_in_page(signal)
        else:
            logger.debug("unknown_signal %r", signal)

    def _set_state(self, state: LifecycleState) -> None:
        if state == self.state:
            return
        logger.info("lifecycle %s -> %s generation=%d", self.state.value, state.value, self.session.generation)
        self.state = state
        self._notify()

    def _notify(self) -> None:
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(state, self.session.generation)
            except Exception:  # noqa: BLE001
                logger.exception("lifecycle_listener_failed")

    def _on_committed(self, signal: NavigationCommitted) -> None:
        if not signal.is_main_frame:
            logger.debug("ignored sub-frame commit url=%s", signal.url)
            return
        handle = self.session.handle
        handle.url = signal.url
        handle.content_loaded = False
        self.registry.reset(self.session, self.session.generation + 1)
        if self.state == LifecycleState.UNINSTALLED:
            logger.info("lifecycle new generation=%d", self.session.generation)
            self._notify()
        else:
            self._set_state(LifecycleState.UNINSTALLED)

    def _on_content_loaded(self, signal: ContentLoaded) -> None:
        if not signal.is_main_frame:
            return
        handle = self.session.handle
        handle.content_loaded = True
        if signal.url:
            handle.url = signal.url
        self.arm()

    def arm(self) -> Result:
        """Issue INSTALL for every registered capability."""
        if self.state != LifecycleState.ARMED:
            self._set_state(LifecycleState.INSTALLING)
        res = self.registry.ensure_all(self.channel, self.session)
        if res.ok:
            self._set_state(LifecycleState.ARMED)
        else:
            logger.info("arm_failed kind=%s err=%s", res.error_kind, res.error)
            self._set_state(LifecycleState.UNINSTALLED)
        return res

    def _on_in_page(self, signal: InPageNavigation) -> None:
        if not signal.is_main_frame:
            logger.debug("ignored sub-frame in-page navigation url=%s", signal.url)
            return
        res = self.channel.execute(self.session.handle, location_fragment())
        if not res.ok or not isinstance(res.data, str):
            logger.debug("in-page navigation unconfirmed url=%s err=%s", signal.url, res.error)
            return
        if not _same_location(res.data, signal.url):
            logger.debug("rejected in-page navigation url=%s location=%s", signal.url, res.data)
            return
        self.session.handle.url = res.data


__all__ = [
    "ContentLoaded",
    "InPageNavigation",
    "LifecycleCoordinator",
    "LifecycleSignal",
    "LifecycleState",
    "NavigationCommitted",
    "location_fragment",
]
