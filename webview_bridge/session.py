"""Bridge session: everything the host keeps for one embedded document.

Sessions share nothing: each owns its channel, registry, coordinator,
collector, throttle state and query history. Every public operation returns a
`Result`; nothing raises across this boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .channel import ContextExecutor, DocumentHandle, InjectionChannel
from .codec import execute_fragment
from .config import BridgeConfig
from .har import export_har
from .history_persist import HistoryStore
from .lifecycle import LifecycleCoordinator, LifecycleSignal, LifecycleState
from .probes import clear_caches, probe_resource, service_workers
from .query import QueryHistoryEntry, StorageQueryInterpreter
from .registry import InstallationRegistry, InstrumentationSession
from .result import BridgeError, ErrorKind, Result, guard
from .storage import inspect_storage
from .telemetry import TELEMETRY_CAPABILITY, ConsoleRecord, NetworkRequestRecord, TelemetryCollector, replay_fragment
from .throttle import THROTTLE_CAPABILITY, ThrottleProfile, ThrottleSimulator

logger = logging.getLogger("webview.bridge.session")


class BridgeSession:
    def __init__(
        self,
        executor: ContextExecutor,
        handle: DocumentHandle,
        *,
        config: BridgeConfig | None = None,
        store: HistoryStore | None = None,
        history_key: str | None = None,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        if store is None and self.config.persist:
            store = HistoryStore(self.config.history_path(history_key or handle.id))

        self.channel = InjectionChannel(executor)
        self.state = InstrumentationSession(handle=handle)
        self.registry = InstallationRegistry()
        # Throttle first: telemetry then wraps the throttled primitives, so
        # recorded durations include the simulated latency.
        self.registry.register(THROTTLE_CAPABILITY)
        self.registry.register(TELEMETRY_CAPABILITY)

        self.coordinator = LifecycleCoordinator(self.state, self.registry, self.channel)
        self.collector = TelemetryCollector(
            self.channel,
            self.state,
            interval=self.config.drain_interval,
            max_requests=self.config.max_requests,
            max_console=self.config.max_console,
            store=store,
        )
        self.throttle = ThrottleSimulator(self.channel, self.registry, self.state)
        self.queries = StorageQueryInterpreter(self.channel, self.state, limit=self.config.query_limit)
        self.coordinator.add_listener(self._on_lifecycle)

    # ── lifecycle ───────────────────────────────────────────────────────
    @property
    def handle(self) -> DocumentHandle:
        return self.state.handle

    @property
    def generation(self) -> int:
        return self.state.generation

    @property
    def lifecycle_state(self) -> LifecycleState:
        return self.coordinator.state

    @property
    def installed_capabilities(self) -> set[str]:
        return self.state.installed_capabilities

    def start(self, *, collect: bool = True) -> None:
        """Load persisted history, then (optionally) start the drain timer."""
        self.collector.load()
        if collect:
            self.collector.start()

    def close(self) -> None:
        self.collector.stop()

    def post(self, signal: LifecycleSignal) -> int:
        self.coordinator.post(signal)
        return self.pump()

    def pump(self) -> int:
        """Handle queued lifecycle signals; returns how many were processed."""
        return self.coordinator.pump()

    def _on_lifecycle(self, state: LifecycleState, generation: int) -> None:
        if state == LifecycleState.ARMED:
            res = self.throttle.reapply()
            if not res.ok:
                logger.info("throttle_reapply_failed generation=%d err=%s", generation, res.error)

    # ── operations ──────────────────────────────────────────────────────
    def install(self) -> Result:
        return self.coordinator.arm()

    def drain(self) -> Result:
        return self.collector.tick()

    def requests(self, limit: int | None = None) -> list[NetworkRequestRecord]:
        return self.collector.requests(limit)

    def console(self, limit: int | None = None) -> list[ConsoleRecord]:
        return self.collector.console(limit)

    def clear_history(self) -> None:
        self.collector.clear()

    def apply_profile(self, profile: ThrottleProfile | str) -> Result:
        return self.throttle.apply_profile(profile)

    def set_blocked_hosts(self, hosts: list[str] | str | None) -> Result:
        return self.throttle.set_blocked_hosts(hosts)

    def query(self, text: str) -> Result:
        return self.queries.run(text)

    def query_history(self, limit: int | None = None) -> list[QueryHistoryEntry]:
        return self.queries.history.entries(limit)

    @guard
    def execute(self, code: str) -> Result:
        try:
            fragment = execute_fragment(code)
        except ValueError as exc:
            raise BridgeError(ErrorKind.PARSE_ERROR, str(exc)) from exc
        return self.channel.execute(self.handle, fragment)

    @guard
    def replay(self, request_id: str) -> Result:
        """Re-issue a recorded request from the page; returns status and clipped body."""
        rid = str(request_id or "").strip()
        record = next((r for r in self.requests() if r.id == rid), None)
        if record is None:
            raise BridgeError(ErrorKind.PARSE_ERROR, f"Unknown request id: {rid!r}")
        return self.channel.execute(self.handle, replay_fragment(record))

    def inspect_storage(self) -> Result:
        return inspect_storage(self.channel, self.state)

    def probe_resource(self, url: str, *, min_size: int = 200) -> Result:
        return probe_resource(
            self.channel, self.state, url, timeout_ms=self.config.image_timeout_ms, min_size=min_size
        )

    def service_workers(self) -> Result:
        return service_workers(self.channel, self.state)

    def clear_caches(self) -> Result:
        return clear_caches(self.channel, self.state)

    @guard
    def export_har(self, directory: Path | str | None = None) -> Result:
        records = self.requests()
        path = export_har(records, Path(directory) if directory else self.config.export_dir)
        return Result.success({"path": str(path), "entries": len(records)})


__all__ = ["BridgeSession"]
