"""Injection channel: run a fragment inside the document's script context.

The channel is transport-agnostic. It consumes any `ContextExecutor`
(`cdp.CdpContextExecutor` in production, dummies in tests) and converts every
outcome into a `Result`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

from .codec import Fragment
from .result import ErrorKind, Result, marshal

logger = logging.getLogger("webview.bridge.channel")


class NotReadyError(Exception):
    """The document is detached or has not finished loading."""


class ExecutionError(Exception):
    """The fragment threw inside the document (message is surfaced verbatim)."""


@dataclass(slots=True)
class DocumentHandle:
    """Reference to one embedded document as seen by the host."""

    id: str
    url: str = ""
    attached: bool = True
    content_loaded: bool = False


class ContextExecutor(Protocol):
    def execute_in_context(self, handle: DocumentHandle, code: str) -> Any: ...


class InjectionChannel:
    """Submits fragments; never raises across its boundary.

    Calls on one handle are not serialized: fragments must be self-contained.
    """

    def __init__(self, executor: ContextExecutor) -> None:
        self.executor = executor

    def execute(self, handle: DocumentHandle | None, fragment: Fragment) -> Result:
        if handle is None or not handle.attached:
            return Result.failure("document is not attached", ErrorKind.NOT_READY)
        if not handle.content_loaded:
            return Result.failure("document content has not loaded yet", ErrorKind.NOT_READY)

        started = time.monotonic()
        try:
            raw = self.executor.execute_in_context(handle, fragment.source)
        except NotReadyError as exc:
            return Result.failure(str(exc) or "document is not ready", ErrorKind.NOT_READY)
        except ExecutionError as exc:
            return Result.failure(str(exc) or "fragment failed", ErrorKind.EXECUTION_FAILED)
        except Exception as exc:  # noqa: BLE001
            # Transport faults are ordinary failed results, never host faults.
            return Result.failure(str(exc) or type(exc).__name__, ErrorKind.EXECUTION_FAILED)
        finally:
            logger.debug(
                "execute verb=%s handle=%s ms=%d",
                fragment.verb.value,
                handle.id,
                int((time.monotonic() - started) * 1000),
            )
        return marshal(raw)


__all__ = ["ContextExecutor", "DocumentHandle", "ExecutionError", "InjectionChannel", "NotReadyError"]
