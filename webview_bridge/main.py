"""
Console entry point: attach to one page over CDP and drive a bridge session.

Commands are read line by line from stdin; every reply is one JSON line on
stdout. Logs go to stderr so stdout stays machine-readable.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any

from .cdp import CdpConnection, CdpContextExecutor, CdpError, CdpSignalPump
from .channel import DocumentHandle
from .config import BridgeConfig, expand_path
from .lifecycle import ContentLoaded
from .result import ErrorKind, Result
from .session import BridgeSession
from .throttle import PRESETS

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("webview.bridge")

__all__ = ["BridgeConsole", "main"]

COMMANDS = (
    ":throttle <id>",
    ":block <host,...>",
    ":requests [n]",
    ":replay <id>",
    ":console [n]",
    ":export [dir]",
    ":storage",
    ":probe <url>",
    ":js <code>",
    ":workers",
    ":clear-caches",
    ":history",
    ":drain",
    ":status",
    ":quit",
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Result):
        return _jsonable(value.to_dict())
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _jsonable(to_dict())
    return value


def _write_message(payload: dict[str, Any]) -> None:
    """Write one JSON reply line to stdout."""
    data = json.dumps(_jsonable(payload), ensure_ascii=False, default=str)
    sys.stdout.write(data + "\n")
    sys.stdout.flush()


def _optional_int(arg: str) -> int | None:
    arg = arg.strip()
    if not arg:
        return None
    try:
        return max(0, int(arg))
    except ValueError:
        return None


class BridgeConsole:
    """Line-oriented command dispatch over one `BridgeSession`."""

    def __init__(self, session: BridgeSession) -> None:
        self.session = session

    def dispatch(self, line: str) -> Result | None:
        """Run one command line. Returns None for `:quit`."""
        line = line.strip()
        if not line.startswith(":"):
            return self.session.query(line)

        name, _, arg = line[1:].partition(" ")
        arg = arg.strip()
        s = self.session

        if name == "quit":
            return None
        if name == "throttle":
            return s.apply_profile(arg or "online")
        if name == "block":
            return s.set_blocked_hosts(arg)
        if name == "requests":
            return Result.success(s.requests(_optional_int(arg)))
        if name == "replay":
            return s.replay(arg)
        if name == "console":
            return Result.success(s.console(_optional_int(arg)))
        if name == "export":
            return s.export_har(arg or None)
        if name == "storage":
            return s.inspect_storage()
        if name == "probe":
            return s.probe_resource(arg)
        if name == "js":
            return s.execute(arg)
        if name == "workers":
            return s.service_workers()
        if name == "clear-caches":
            return s.clear_caches()
        if name == "history":
            return Result.success(s.query_history(_optional_int(arg)))
        if name == "drain":
            return s.drain()
        if name == "status":
            return Result.success(
                {
                    "url": s.handle.url,
                    "state": s.lifecycle_state.value,
                    "generation": s.generation,
                    "installed": sorted(s.installed_capabilities),
                    "profile": s.throttle.profile.id,
                    "profiles": sorted(PRESETS),
                }
            )
        return Result.failure(f"Unknown command :{name}. Commands: {', '.join(COMMANDS)}", ErrorKind.UNSUPPORTED)


def _target_id(ws_url: str) -> str:
    return ws_url.rstrip("/").rsplit("/", 1)[-1] or "default"


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="webview-bridge", description=__doc__.strip().splitlines()[0])
    parser.add_argument(
        "--ws-url",
        default=os.environ.get("BRIDGE_WS_URL", ""),
        help="page-level DevTools WebSocket URL (ws://host:port/devtools/page/<id>)",
    )
    parser.add_argument("--data-dir", default="", help="history snapshot + HAR export directory")
    parser.add_argument("--session-key", default="", help="history snapshot name (default: page target id)")
    parser.add_argument("--no-collect", action="store_true", help="do not start the background drain timer")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the bridge console."""
    args = _parse_args(argv)
    if not args.ws_url:
        logger.error("--ws-url (or BRIDGE_WS_URL) is required")
        raise SystemExit(2)

    config = BridgeConfig.from_env()
    if args.data_dir:
        config.data_dir = expand_path(args.data_dir)

    try:
        conn = CdpConnection(args.ws_url, timeout=config.cdp_timeout)
    except CdpError as exc:
        logger.error("attach_failed url=%s err=%s", args.ws_url, exc)
        raise SystemExit(1) from exc

    executor = CdpContextExecutor(conn)
    handle = DocumentHandle(id=_target_id(args.ws_url), url=executor.location() or "")
    session = BridgeSession(executor, handle, config=config, history_key=args.session_key or None)
    session.start(collect=not args.no_collect)

    pump = CdpSignalPump(ws_url=args.ws_url, on_signal=session.post, timeout=config.cdp_timeout)
    pump.start()
    # Attached after the page already loaded: no domContentEventFired will come.
    if executor.ready_state() in ("interactive", "complete"):
        session.post(ContentLoaded(url=handle.url))

    logger.info(
        "attached url=%s state=%s generation=%d data_dir=%s",
        handle.url,
        session.lifecycle_state.value,
        session.generation,
        config.data_dir,
    )

    console = BridgeConsole(session)
    try:
        for raw in sys.stdin:
            if not raw.strip():
                continue
            session.pump()
            reply = console.dispatch(raw)
            if reply is None:
                break
            _write_message(reply.to_dict())
    except KeyboardInterrupt:
        pass
    finally:
        pump.stop()
        session.close()
        conn.close()


if __name__ == "__main__":
    main()
