from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _repo_root() -> Path:
    # webview_bridge/config.py -> repo root is parents[1]
    return Path(__file__).resolve().parents[1]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


# Page-side image loads must resolve before the CDP call waiting on them gives up.
RESOURCE_TIMEOUT_HEADROOM_MS = 500


def _env_float(name: str, default: float, *, min_v: float, max_v: float) -> float:
    try:
        v = float(os.environ.get(name, "") or default)
    except ValueError:
        v = default
    return max(min_v, min(v, max_v))


def _env_int(name: str, default: int, *, min_v: int, max_v: int) -> int:
    try:
        v = int(os.environ.get(name, "") or default)
    except ValueError:
        v = default
    return max(min_v, min(v, max_v))


@dataclass
class BridgeConfig:
    data_dir: str
    drain_interval: float = 2.0
    max_requests: int = 100
    max_console: int = 500
    query_limit: int = 50
    probe_timeout_ms: int = 3000
    cdp_timeout: float = 5.0
    persist: bool = True

    @property
    def history_dir(self) -> Path:
        return Path(self.data_dir) / "history"

    @property
    def export_dir(self) -> Path:
        return Path(self.data_dir) / "exports"

    @property
    def image_timeout_ms(self) -> int:
        """Image load timeout clamped below the CDP call timeout."""
        ceiling = int(self.cdp_timeout * 1000) - RESOURCE_TIMEOUT_HEADROOM_MS
        return max(100, min(int(self.probe_timeout_ms), ceiling))

    def history_path(self, session_key: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in (session_key or "default"))
        return self.history_dir / f"{safe or 'default'}.json"

    @classmethod
    def from_env(cls) -> BridgeConfig:
        raw_dir = os.environ.get("BRIDGE_DATA_DIR", "").strip()
        data_dir = expand_path(raw_dir) if raw_dir else str(_repo_root() / "data")
        cdp_timeout = _env_float("BRIDGE_CDP_TIMEOUT", 5.0, min_v=0.5, max_v=120.0)
        cfg = cls(
            data_dir=data_dir,
            drain_interval=_env_float("BRIDGE_DRAIN_INTERVAL", 2.0, min_v=0.1, max_v=60.0),
            max_requests=_env_int("BRIDGE_MAX_REQUESTS", 100, min_v=1, max_v=10_000),
            max_console=_env_int("BRIDGE_MAX_CONSOLE", 500, min_v=1, max_v=50_000),
            query_limit=_env_int("BRIDGE_QUERY_LIMIT", 50, min_v=1, max_v=1000),
            probe_timeout_ms=_env_int("BRIDGE_PROBE_TIMEOUT_MS", 3000, min_v=100, max_v=60_000),
            cdp_timeout=cdp_timeout,
            persist=os.environ.get("BRIDGE_PERSIST", "1").strip() != "0",
        )
        cfg.probe_timeout_ms = cfg.image_timeout_ms
        return cfg
