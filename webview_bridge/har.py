"""HAR 1.2 export of the host-side request history (write-only)."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from .telemetry import NetworkRequestRecord

logger = logging.getLogger("webview.bridge.har")

HAR_VERSION = "1.2"
CREATOR = {"name": "webview-bridge", "version": "0.1.0"}


def _iso(ms: int) -> str:
    dt = datetime.fromtimestamp(max(0, int(ms)) / 1000.0, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def _name_values(headers: dict[str, str]) -> list[dict[str, str]]:
    return [{"name": k, "value": v} for k, v in sorted(headers.items())]


def _query_string(url: str) -> list[dict[str, str]]:
    try:
        query = urlsplit(url).query
    except ValueError:
        return []
    return [{"name": k, "value": v} for k, v in parse_qsl(query, keep_blank_values=True)]


def _content_type(headers: dict[str, str]) -> str:
    for k, v in headers.items():
        if k.lower() == "content-type":
            return v
    return "application/octet-stream"


def har_entry(rec: NetworkRequestRecord) -> dict[str, Any]:
    request: dict[str, Any] = {
        "method": rec.method,
        "url": rec.url,
        "httpVersion": "HTTP/1.1",
        "headers": _name_values(rec.request_headers),
        "queryString": _query_string(rec.url),
        "cookies": [],
        "headersSize": -1,
        "bodySize": len(rec.request_body.encode("utf-8")) if rec.request_body is not None else 0,
    }
    if rec.request_body is not None:
        request["postData"] = {"mimeType": _content_type(rec.request_headers), "text": rec.request_body}

    entry: dict[str, Any] = {
        "startedDateTime": _iso(rec.started_at),
        "time": rec.duration_ms,
        "request": request,
        "response": {
            "status": rec.status,
            "statusText": "",
            "httpVersion": "HTTP/1.1",
            "headers": _name_values(rec.response_headers),
            "cookies": [],
            "content": {"size": rec.size, "mimeType": rec.mime_type or "x-unknown", "text": rec.response_body or ""},
            "redirectURL": "",
            "headersSize": -1,
            "bodySize": rec.size,
        },
        "cache": {},
        "timings": {"send": 0, "wait": rec.duration_ms, "receive": 0},
    }
    if rec.error:
        entry["comment"] = rec.error
    return entry


def build_har(records: Iterable[NetworkRequestRecord]) -> dict[str, Any]:
    return {"log": {"version": HAR_VERSION, "creator": dict(CREATOR), "entries": [har_entry(r) for r in records]}}


def dumps_har(records: Iterable[NetworkRequestRecord]) -> str:
    """Deterministic serialization: same records -> same bytes."""
    return json.dumps(build_har(records), ensure_ascii=False, indent=2, sort_keys=True)


def export_har(records: Iterable[NetworkRequestRecord], directory: Path, *, now_ms: int | None = None) -> Path:
    """Write `network-<epoch-ms>.har` into `directory` and return its path."""
    stamp = int(time.time() * 1000) if now_ms is None else int(now_ms)
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"network-{stamp}.har"
    text = dumps_har(records)
    path.write_text(text, encoding="utf-8")
    logger.info("har_exported path=%s bytes=%d", path, len(text))
    return path


__all__ = ["CREATOR", "HAR_VERSION", "build_har", "dumps_har", "export_har", "har_entry"]
