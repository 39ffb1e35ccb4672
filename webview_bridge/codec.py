"""Command codec: structured commands -> self-contained page-side fragments.

Hard rule: dynamic values only ever enter generated code through
`encode_literal`. Templates reference them as `{{name}}` placeholders and
`render` refuses to leave any placeholder unfilled.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

# Characters that are legal inside a JSON string but can terminate or confuse
# the surrounding JavaScript / HTML context.
_UNSAFE_CHARS = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class Verb(str, Enum):
    INSTALL = "INSTALL"
    SHOW_DATABASES = "SHOW_DATABASES"
    SHOW_STORES = "SHOW_STORES"
    SELECT = "SELECT"
    CLEAR = "CLEAR"
    APPLY_THROTTLE = "APPLY_THROTTLE"
    EXECUTE = "EXECUTE"
    DRAIN = "DRAIN"
    PROBE = "PROBE"
    INSPECT_STORAGE = "INSPECT_STORAGE"
    LOCATION = "LOCATION"
    REPLAY = "REPLAY"


@dataclass(slots=True, frozen=True)
class Command:
    verb: Verb
    target: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class Fragment:
    """A unit of code submitted to the injection channel (plus its origin)."""

    command: Command
    source: str

    @property
    def verb(self) -> Verb:
        return self.command.verb


def encode_literal(value: Any) -> str:
    """Serialize a value as an inert JavaScript literal."""
    text = json.dumps(value, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    for ch, repl in _UNSAFE_CHARS.items():
        if ch in text:
            text = text.replace(ch, repl)
    return text


def render(template: str, **values: Any) -> str:
    """Fill `{{name}}` placeholders with encoded literals.

    Raises ValueError on a placeholder without a value.
    """
    missing: list[str] = []

    def _sub(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values:
            missing.append(name)
            return match.group(0)
        return encode_literal(values[name])

    out = _PLACEHOLDER_RE.sub(_sub, template)
    if missing:
        raise ValueError(f"unfilled fragment placeholder(s): {', '.join(sorted(set(missing)))}")
    return out


_FRAGMENT_WRAPPER = """(async () => {
  try {
%s
  } catch (e) {
    return { ok: false, errorKind: "ExecutionFailed", error: String(e && e.message ? e.message : e) };
  }
})()"""


def build_fragment(command: Command, body: str) -> Fragment:
    """Wrap a body template into a self-contained fragment.

    The body is rendered with `command.parameters`; thrown errors are caught
    page-side and returned as an `{ok: false}` envelope.
    """
    rendered = render(body, **command.parameters)
    indented = "\n".join(("    " + line) if line.strip() else line for line in rendered.strip("\n").splitlines())
    return Fragment(command=command, source=_FRAGMENT_WRAPPER % indented)


_EXECUTE_BODY = """
const code = {{code}};
const value = await (0, eval)(code);
return { ok: true, data: value === undefined ? null : value };
"""


def execute_fragment(code: str) -> Fragment:
    """Ad-hoc code: embedded as a string literal and evaluated page-side."""
    if not isinstance(code, str) or not code.strip():
        raise ValueError("code must be a non-empty string")
    return build_fragment(Command(Verb.EXECUTE, parameters={"code": code}), _EXECUTE_BODY)


__all__ = ["Command", "Fragment", "Verb", "build_fragment", "encode_literal", "execute_fragment", "render"]
