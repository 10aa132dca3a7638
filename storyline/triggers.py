"""Trigger compilation and matching.

A trigger spec is one of:

    "open the gate"                     plain pattern, case-insensitive
    "/open\\s+the\\s+gate/i"            slash notation with flags
    {"pattern": "gate", "flags": "m"}   explicit mapping (flags default to "i")

Supported flags: i (ignore case), m (multiline), s (dot matches newline),
x (verbose), y (sticky: match only at the start of the text). The flags g, u,
d and v are accepted for compatibility with story files written for other
regex engines and have no effect here.

Compilation errors are fatal: a broken trigger would silently disable the
whole checkpoint, so story loading aborts instead.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any, Literal

from pydantic import BaseModel

from storyline.errors import TriggerError

TriggerReason = Literal["win", "fail"]

_SLASH_NOTATION = re.compile(r"^/(.*)/([a-z]*)$", re.DOTALL)

_FLAG_BITS: dict[str, int] = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}
_IGNORED_FLAGS = frozenset("gudv")
DEFAULT_FLAGS = "i"


class Trigger:
    """A compiled, stateless matcher.

    Python patterns keep no cursor between calls, so `test` is idempotent.
    Sticky triggers anchor at the start of the text on every call.
    """

    __slots__ = ("pattern", "flags", "regex", "sticky")

    def __init__(self, pattern: str, flags: str, regex: re.Pattern[str], sticky: bool) -> None:
        self.pattern = pattern
        self.flags = flags
        self.regex = regex
        self.sticky = sticky

    def test(self, text: str) -> bool:
        if self.sticky:
            return self.regex.match(text) is not None
        return self.regex.search(text) is not None

    @property
    def source(self) -> str:
        return f"/{self.pattern}/{self.flags}"

    def __repr__(self) -> str:
        return f"Trigger({self.source!r})"


class TriggerMatch(BaseModel):
    reason: TriggerReason
    pattern: str


def _split_spec(spec: Any) -> tuple[str, str]:
    if isinstance(spec, str):
        m = _SLASH_NOTATION.match(spec)
        if m:
            return m.group(1), m.group(2)
        return spec, DEFAULT_FLAGS
    if isinstance(spec, Mapping):
        pattern = spec.get("pattern")
        flags = spec.get("flags")
        if flags is None:
            flags = DEFAULT_FLAGS
        if not isinstance(pattern, str) or not isinstance(flags, str):
            raise TriggerError(f"Trigger mapping needs string 'pattern' and 'flags': {spec!r}")
        return pattern, flags
    raise TriggerError(f"Unsupported trigger spec type {type(spec).__name__}")


def compile_trigger(spec: Any, where: str = "trigger") -> Trigger:
    """Compile one trigger spec. Raises TriggerError naming `where` on failure."""
    try:
        pattern, flags = _split_spec(spec)
    except TriggerError as e:
        raise TriggerError(f"Invalid trigger at {where}: {e}") from e

    if not pattern:
        raise TriggerError(f"Invalid trigger at {where}: empty pattern")

    bits = 0
    sticky = False
    for flag in flags:
        if flag in _FLAG_BITS:
            bits |= _FLAG_BITS[flag]
        elif flag == "y":
            sticky = True
        elif flag not in _IGNORED_FLAGS:
            raise TriggerError(f"Invalid trigger at {where}: unknown flag {flag!r} in /{pattern}/{flags}")

    try:
        regex = re.compile(pattern, bits)
    except re.error as e:
        raise TriggerError(f"Invalid trigger at {where}: /{pattern}/{flags} -> {e}") from e
    return Trigger(pattern, flags, regex, sticky)


def compile_triggers(spec: Any, where: str = "triggers") -> list[Trigger]:
    """Compile a single spec or a list of specs, preserving order."""
    if spec is None:
        return []
    if isinstance(spec, Sequence) and not isinstance(spec, str):
        return [compile_trigger(item, f"{where}[{i}]") for i, item in enumerate(spec)]
    return [compile_trigger(spec, where)]


def match_trigger(
    text: str,
    win: Sequence[Trigger],
    fail: Sequence[Trigger],
) -> TriggerMatch | None:
    """Return the first matching trigger, fail triggers first, or None."""
    if not text:
        return None
    for reason, triggers in (("fail", fail), ("win", win)):
        for trigger in triggers:
            if trigger.test(text):
                return TriggerMatch(reason=reason, pattern=trigger.source)
    return None
