"""Persisted telemetry history (disk-backed, fail-soft).

Design
- One small JSON snapshot per session history file (default under `data/`).
- Atomic writes: write a per-call temp file then replace; keep one `.bak`.
- Saves and deletes on one store are serialized by a lock.
- Corrupt or missing files load as empty history.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
import time
from contextlib import suppress
from pathlib import Path
from typing import Any

logger = logging.getLogger("webview.bridge.history")

SNAPSHOT_VERSION = 1


class HistoryStore:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> dict[str, list[dict[str, Any]]]:
        empty: dict[str, list[dict[str, Any]]] = {"requests": [], "console": []}
        p = self.path
        try:
            if not p.exists() or not p.is_file():
                return empty
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except Exception as exc:  # noqa: BLE001
            logger.warning("history_load_failed path=%s err=%s", p, exc)
            return empty

        if not isinstance(obj, dict):
            return empty
        out = dict(empty)
        for key in ("requests", "console"):
            items = obj.get(key)
            if isinstance(items, list):
                out[key] = [dict(it) for it in items if isinstance(it, dict)]
        return out

    def save(self, *, requests: list[dict[str, Any]], console: list[dict[str, Any]]) -> None:
        p = self.path
        p.parent.mkdir(parents=True, exist_ok=True)

        payload = {
            "version": SNAPSHOT_VERSION,
            "updatedAt": int(time.time() * 1000),
            "requests": requests,
            "console": console,
        }
        text = json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True)

        bak = p.with_suffix(p.suffix + ".bak")
        with self._lock:
            with suppress(Exception):
                if p.exists() and p.is_file():
                    shutil.copyfile(p, bak)
            fd, name = tempfile.mkstemp(dir=p.parent, prefix=p.name + ".", suffix=".tmp")
            tmp = Path(name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(text)
                os.replace(tmp, p)
            finally:
                with suppress(Exception):
                    if tmp.exists():
                        tmp.unlink()

    def delete(self) -> None:
        with self._lock:
            for p in (self.path, self.path.with_suffix(self.path.suffix + ".bak")):
                with suppress(FileNotFoundError):
                    p.unlink()


__all__ = ["HistoryStore", "SNAPSHOT_VERSION"]
