"""
Host-side instrumentation bridge for embedded web documents.

Each module provides focused functionality:
- result: Result envelope and error taxonomy
- codec: Structured commands -> self-contained page fragments
- channel: Injection channel over any context executor
- cdp: Chrome DevTools Protocol transport and signal pump
- registry: Idempotent, generation-tagged capability installs
- lifecycle: Re-arming across navigations
- telemetry: Network/console observers and bounded host history
- history_persist: Atomic on-disk history snapshots
- throttle: Network condition profiles and blocked hosts
- query: Four-verb IndexedDB query language
- storage: localStorage / sessionStorage overview
- probes: Resource, service worker and cache probes
- har: HAR 1.2 export
- session: One bridge session per embedded document
"""

from .channel import DocumentHandle, InjectionChannel
from .config import BridgeConfig
from .lifecycle import ContentLoaded, InPageNavigation, LifecycleState, NavigationCommitted
from .result import BridgeError, ErrorKind, Result
from .session import BridgeSession

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "BridgeSession",
    "ContentLoaded",
    "DocumentHandle",
    "ErrorKind",
    "InPageNavigation",
    "InjectionChannel",
    "LifecycleState",
    "NavigationCommitted",
    "Result",
]
