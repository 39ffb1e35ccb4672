"""Web storage overview (localStorage / sessionStorage).

Cognitive-cheap by default: keys, byte sizes and short value previews; keys
that look like secrets are flagged and their values withheld.
"""

from __future__ import annotations

from typing import Any

from .channel import InjectionChannel
from .codec import Command, Fragment, Verb, build_fragment
from .registry import InstrumentationSession
from .result import Result

MAX_ITEMS = 200
MAX_PREVIEW_CHARS = 200

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "auth",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "apikey",
)


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


_INSPECT_BODY = """
const maxItems = {{max_items}};
const maxChars = {{max_chars}};
const areas = {};
for (const which of ["local", "session"]) {
  let s = null;
  try { s = which === "session" ? globalThis.sessionStorage : globalThis.localStorage; } catch (_e) { s = null; }
  if (!s) { areas[which] = { supported: false }; continue; }
  const items = [];
  let total = 0;
  let bytes = 0;
  for (let i = 0; i < s.length; i++) {
    try {
      const key = s.key(i);
      if (key == null) continue;
      const value = String(s.getItem(key) || "");
      const size = new Blob([value]).size;
      total += 1;
      bytes += size;
      if (items.length < maxItems) items.push({ key: String(key), size, preview: value.slice(0, maxChars), chars: value.length });
    } catch (_e) {}
  }
  items.sort((a, b) => (a.key < b.key ? -1 : a.key > b.key ? 1 : 0));
  areas[which] = { supported: true, total, bytes, items };
}
return { ok: true, data: { origin: String(globalThis.location.origin), areas } };
"""


def inspect_fragment(*, max_items: int = MAX_ITEMS, max_chars: int = MAX_PREVIEW_CHARS) -> Fragment:
    return build_fragment(
        Command(Verb.INSPECT_STORAGE, parameters={"max_items": max_items, "max_chars": max_chars}),
        _INSPECT_BODY,
    )


def _redact(area: dict[str, Any]) -> dict[str, Any]:
    if not area.get("supported"):
        return {"supported": False, "error": "Unsupported: storage area is not available"}
    items: list[dict[str, Any]] = []
    for it in area.get("items") or []:
        if not isinstance(it, dict):
            continue
        key = str(it.get("key") or "")
        item: dict[str, Any] = {"key": key, "size": it.get("size"), "chars": it.get("chars")}
        if is_sensitive_key(key):
            item["sensitive"] = True
        else:
            item["preview"] = it.get("preview")
        items.append(item)
    return {
        "supported": True,
        "total": area.get("total"),
        "bytes": area.get("bytes"),
        "truncated": isinstance(area.get("total"), int) and area["total"] > len(items),
        "items": items,
    }


def inspect_storage(channel: InjectionChannel, session: InstrumentationSession) -> Result:
    res = channel.execute(session.handle, inspect_fragment())
    if not res.ok:
        return res
    data = res.data if isinstance(res.data, dict) else {}
    areas = data.get("areas") if isinstance(data.get("areas"), dict) else {}
    return Result.success(
        {
            "origin": data.get("origin"),
            "local": _redact(areas.get("local") or {}),
            "session": _redact(areas.get("session") or {}),
        }
    )


__all__ = ["MAX_ITEMS", "inspect_fragment", "inspect_storage", "is_sensitive_key"]
