"""Uniform result envelope for everything crossing the bridge boundary.

Page-side fragments return heterogeneous shapes (bare values, `{ok, ...}`
envelopes, `{error}` objects, `{unsupported}` markers). Callers only ever see
`Result`: `{ok: true, data}` or `{ok: false, error, errorKind}`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Any

logger = logging.getLogger("webview.bridge.result")


class ErrorKind(str, Enum):
    NOT_READY = "NotReady"
    EXECUTION_FAILED = "ExecutionFailed"
    UNSUPPORTED = "Unsupported"
    PARSE_ERROR = "ParseError"


class BridgeError(Exception):
    """Internal failure with a taxonomy kind; converted to `Result` at the boundary."""

    def __init__(self, kind: ErrorKind, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = dict(details or {})

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"

    def to_result(self) -> Result:
        return Result.failure(self.message, self.kind, details=self.details)


@dataclass(slots=True, frozen=True)
class Result:
    ok: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    details: dict[str, Any] | None = None

    @classmethod
    def success(cls, data: Any = None) -> Result:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str, kind: ErrorKind, *, details: dict[str, Any] | None = None) -> Result:
        return cls(ok=False, error=str(error or kind.value), error_kind=kind, details=details or None)

    def unwrap(self) -> Any:
        """Return data or raise the failure as `BridgeError`."""
        if self.ok:
            return self.data
        raise BridgeError(self.error_kind or ErrorKind.EXECUTION_FAILED, self.error or "failed", details=self.details)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "data": self.data}
        out: dict[str, Any] = {
            "ok": False,
            "error": self.error,
            "errorKind": (self.error_kind or ErrorKind.EXECUTION_FAILED).value,
        }
        if self.details:
            out["details"] = self.details
        return out


def _error_text(raw: Any) -> str:
    if isinstance(raw, str) and raw:
        return raw
    if isinstance(raw, dict):
        for k in ("message", "error", "description"):
            v = raw.get(k)
            if isinstance(v, str) and v:
                return v
    try:
        text = str(raw)
    except Exception:
        text = ""
    return text or "page-side failure"


def marshal(raw: Any) -> Result:
    """Normalize a page-side outcome into a `Result`.

    Recognized shapes:
    - `{"ok": true, "data": x}` / `{"ok": true, ...}` (data = remaining keys)
    - `{"ok": false, "error": "...", "errorKind": "..."}`
    - `{"unsupported": "..."}` -> UNSUPPORTED
    - `{"error": "..."}` without `ok` -> EXECUTION_FAILED
    - anything else is treated as successful data
    """
    if isinstance(raw, Result):
        return raw
    if not isinstance(raw, dict):
        return Result.success(raw)

    if "unsupported" in raw and raw.get("ok") is not True:
        return Result.failure(_error_text(raw.get("unsupported")), ErrorKind.UNSUPPORTED)

    ok = raw.get("ok")
    if ok is True:
        if "data" in raw:
            return Result.success(raw.get("data"))
        return Result.success({k: v for k, v in raw.items() if k != "ok"})

    if ok is False or ("error" in raw and "ok" not in raw):
        kind = ErrorKind.EXECUTION_FAILED
        raw_kind = raw.get("errorKind")
        if isinstance(raw_kind, str):
            for candidate in ErrorKind:
                if raw_kind in (candidate.value, candidate.name):
                    kind = candidate
                    break
        return Result.failure(_error_text(raw.get("error")), kind)

    return Result.success(raw)


def guard(func: Callable[..., Any]) -> Callable[..., Result]:
    """Decorator: never let an exception cross the public boundary."""

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Result:
        try:
            return marshal(func(*args, **kwargs))
        except BridgeError as exc:
            return exc.to_result()
        except Exception as exc:  # noqa: BLE001
            logger.exception("bridge_call_failed op=%s", getattr(func, "__name__", "?"))
            return Result.failure(str(exc) or type(exc).__name__, ErrorKind.EXECUTION_FAILED)

    return wrapper


__all__ = ["BridgeError", "ErrorKind", "Result", "guard", "marshal"]
