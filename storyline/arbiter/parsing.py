"""Tolerant parsing of arbiter replies.

Models wrap JSON in code fences, add chatter around it, rename keys, or answer
with a bare YES/NO. `parse_verdict` tries, in order:

    1. strip code fences
    2. the largest brace-delimited block, then each smaller balanced block
    3. a `key: true|false|yes|no` scan
    4. a bare YES / NO / FAIL answer

and returns None when nothing yields a decision. Keys are matched without
regard to case or separators, so `nextTransition`, `next_transition` and
`Next-Transition` are the same key.
"""

from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterator, Mapping
from typing import Any, Literal

from pydantic import BaseModel

from storyline.arbiter.prompt import clamp_text

logger = logging.getLogger(__name__)

EvaluationOutcome = Literal["win", "fail", "continue"]

REASON_CLAMP = 120

_FENCE = re.compile(r"```[a-zA-Z0-9_-]*\s*(.*?)```", re.DOTALL)
_KEY_VALUE = re.compile(
    r"""["']?([A-Za-z][A-Za-z_-]*)["']?\s*[:=]\s*["']?(true|false|yes|no)\b""",
    re.IGNORECASE,
)

_ADVANCE_KEYS = ("advance", "completed", "complete", "hascompleted", "decision", "answer")
_FAILED_KEYS = ("failed", "failure", "hasfailed", "lose")
_NEXT_KEYS = ("nexttransition", "nexttransitionid", "nextedge", "nextedgeid", "transition", "transitionid")
_CONFIDENCE_KEYS = ("confidence", "score")

_WIN_WORDS = frozenset(("advance", "advanced", "win", "won", "complete", "completed", "success", "yes", "true"))
_FAIL_WORDS = frozenset(("fail", "failed", "failure", "lose", "lost"))
_CONTINUE_WORDS = frozenset(("continue", "stay", "none", "pending", "no", "false", "hold"))


class ArbiterVerdict(BaseModel):
    advance: bool
    failed: bool = False
    next_transition_id: str | None = None
    reason: str | None = None
    confidence: float | None = None


def _norm_key(key: str) -> str:
    return re.sub(r"[\s_\-]", "", key).lower()


def _strip_fences(text: str) -> str:
    m = _FENCE.search(text)
    return m.group(1).strip() if m else text


def _brace_blocks(text: str) -> Iterator[str]:
    """Largest block first (first '{' to last '}'), then each balanced block."""
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return
    yield text[first:last + 1]

    stack: list[int] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and stack:
            in_string = True
        elif ch == "{":
            stack.append(i)
        elif ch == "}" and stack:
            start = stack.pop()
            yield text[start:i + 1]


def _pick(data: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in ("yes", "true"):
            return True
        if word in ("no", "false"):
            return False
    return None


def _decision(value: Any) -> tuple[bool | None, bool]:
    """(advance, failed) for a decision-style value."""
    as_bool = _to_bool(value)
    if as_bool is not None:
        return as_bool, False
    if not isinstance(value, str):
        return None, False
    word = value.strip().lower()
    if word in _WIN_WORDS:
        return True, False
    if word in _FAIL_WORDS:
        return False, True
    if word in _CONTINUE_WORDS:
        return False, False
    return None, False


def verdict_from_mapping(data: Mapping[str, Any]) -> ArbiterVerdict | None:
    normalized = {_norm_key(str(k)): v for k, v in data.items()}

    advance, failed_by_decision = _decision(_pick(normalized, _ADVANCE_KEYS))
    if advance is None:
        return None

    failed = failed_by_decision or bool(_to_bool(_pick(normalized, _FAILED_KEYS)))
    if advance:
        failed = False

    next_id = _pick(normalized, _NEXT_KEYS)
    next_transition_id = None
    if isinstance(next_id, (str, int)) and not isinstance(next_id, bool):
        next_transition_id = str(next_id).strip() or None

    reason = normalized.get("reason")
    reason = clamp_text(reason, REASON_CLAMP) if isinstance(reason, str) and reason.strip() else None

    confidence = _pick(normalized, _CONFIDENCE_KEYS)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not math.isfinite(confidence):
        confidence = None
    else:
        confidence = min(1.0, max(0.0, float(confidence)))

    return ArbiterVerdict(
        advance=advance,
        failed=failed,
        next_transition_id=next_transition_id,
        reason=reason,
        confidence=confidence,
    )


def _keyword_scan(text: str) -> ArbiterVerdict | None:
    found: dict[str, str] = {}
    for key, value in _KEY_VALUE.findall(text):
        found.setdefault(key, value)
    return verdict_from_mapping(found) if found else None


def _bare_answer(text: str) -> ArbiterVerdict | None:
    word = text.strip().strip(".!\"'").upper()
    if word == "YES":
        return ArbiterVerdict(advance=True)
    if word == "NO":
        return ArbiterVerdict(advance=False)
    if word in ("FAIL", "FAILED"):
        return ArbiterVerdict(advance=False, failed=True)
    return None


def parse_verdict(raw: str | None) -> ArbiterVerdict | None:
    if not raw or not raw.strip():
        return None
    text = _strip_fences(raw.strip())

    for block in _brace_blocks(text):
        try:
            data = json.loads(block)
        except ValueError:
            continue
        if isinstance(data, dict):
            verdict = verdict_from_mapping(data)
            if verdict is not None:
                return verdict

    return _keyword_scan(text) or _bare_answer(text)


def resolve_outcome(verdict: ArbiterVerdict | None) -> EvaluationOutcome:
    if verdict is None:
        return "continue"
    if verdict.advance:
        return "win"
    if verdict.failed:
        return "fail"
    return "continue"
