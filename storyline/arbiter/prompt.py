"""Arbiter prompt construction.

The prompt has two parts. The header is the configurable instruction text; it
is itself a Handlebars template and may reference the story context macros:

    {{story_title}}  {{story_description}}  {{story_current_checkpoint}}
    {{story_past_checkpoints}}  {{chat_excerpt}}  {{story_possible_triggers}}

The body is fixed: checkpoint, review reason, turn, latest message, the
most-recent-first conversation excerpt, the numbered transition candidates
and the response shape.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import Literal

from pydantic import BaseModel, Field

from storyline.config import DEFAULT_ARBITER_PROMPT, EngineSettings
from storyline.models import ChatMessage
from storyline.prompts import render_prompt

EvaluationReason = Literal["trigger", "timed", "interval", "manual"]

CHAT_NAME_CLAMP = 40
CHAT_MESSAGE_CLAMP = 300
NO_CANDIDATES = "No transition candidates are currently available."

_WHITESPACE = re.compile(r"\s+")
# Macros are plain text; `{{macro}}` is rendered like `{{{macro}}}`.
_MACRO = re.compile(r"(?<!\{)\{\{\s*(story_[a-z_]+|chat_excerpt)\s*\}\}(?!\})")


class TransitionCandidate(BaseModel):
    id: str
    outcome: Literal["win", "fail"] = "win"
    label: str | None = None
    description: str | None = None
    target_name: str | None = None
    after_turns: int | None = None


class EvaluationRequest(BaseModel):
    """Snapshot of everything the arbiter sees for one judgment."""

    checkpoint_key: str
    checkpoint_name: str
    objective: str = ""
    latest_text: str = ""
    reason: EvaluationReason
    matched: str | None = None
    turn: int = 0
    interval_turns: int = 3
    candidates: list[TransitionCandidate] = Field(default_factory=list)
    story_title: str = ""
    story_description: str = ""
    past_checkpoints: list[str] = Field(default_factory=list)
    activation: int = 0  # activation counter of the orchestrator when queued


def clamp_text(text: str | None, limit: int) -> str:
    """Collapse whitespace and cut to `limit` chars, marking the cut with '...'."""
    normalized = _WHITESPACE.sub(" ", text or "").strip()
    if limit <= 0:
        return "..." if normalized else ""
    if len(normalized) <= limit:
        return normalized
    return normalized[: max(0, limit - 3)] + "..."


def reason_line(reason: EvaluationReason, matched: str | None, interval_turns: int) -> str:
    if reason == "interval":
        return f"Periodic check (every {interval_turns} turns)."
    if reason == "timed":
        return f"Timed trigger reached: {matched}." if matched else "Timed trigger reached."
    if reason == "trigger":
        return f"Objective trigger detected: {matched}." if matched else "Objective trigger detected."
    return f"Manual review requested: {matched}" if matched else "Manual review requested."


def format_candidate(candidate: TransitionCandidate, number: int) -> str:
    header = f"{number}. [{candidate.id}] ({candidate.outcome})"
    meta = []
    if candidate.label:
        meta.append(candidate.label)
    if candidate.target_name:
        meta.append(f"Next: {candidate.target_name}")
    lines = [f"{header} {' | '.join(meta)}".rstrip()]
    if candidate.description:
        lines.append(f"   {candidate.description}")
    if candidate.after_turns:
        lines.append(f"   Timed: after {candidate.after_turns} turns at this checkpoint")
    return "\n".join(lines)


def candidates_section(candidates: Sequence[TransitionCandidate]) -> str:
    if not candidates:
        return NO_CANDIDATES
    lines = ["Evaluate the candidate transitions below. Select at most one."]
    lines.extend(format_candidate(c, i + 1) for i, c in enumerate(candidates))
    return "\n".join(lines)


def transcript_lines(history: Sequence[ChatMessage], limit: int) -> list[str]:
    """The last `limit` messages, numbered oldest to newest, listed newest first."""
    if limit <= 0:
        return []
    window = list(history)[-limit:]
    lines = []
    for idx, msg in enumerate(window):
        text = clamp_text(msg.text, CHAT_MESSAGE_CLAMP)
        if not text:
            continue
        who = msg.speaker or ("Player" if msg.is_user else "Companion")
        lines.append(f"{idx + 1}. {clamp_text(who, CHAT_NAME_CLAMP)}: {text}")
    lines.reverse()
    return lines


_BODY_TEMPLATE = """\
{{{header}}}

Checkpoint: {{{checkpoint_name}}}
{{#if objective}}Objective: {{{objective}}}
{{/if}}Reason for review: {{{reason_line}}}
Turn index: {{turn}}

Latest player message:
{{{latest_text}}}

{{#if transcript}}Recent conversation (most recent first):
{{#take transcript limit}}{{{this}}}
{{/take}}{{/if}}
{{{candidates}}}

Respond with concise JSON only, using the shape:
{"decision": "win" | "fail" | "continue", "next_transition": "<transition id>" | null, "reason": "<short evidence>", "confidence": <0..1>}
Use "win" when the objective is clearly met and "fail" when it can no longer be met.
If nothing is clearly decided, send {"decision": "continue", "next_transition": null}.
"""


def build_arbiter_prompt(
    request: EvaluationRequest,
    history: Sequence[ChatMessage] = (),
    settings: EngineSettings | None = None,
) -> str:
    """Render the full arbiter prompt. Raises PromptError on a broken header template."""
    settings = settings or EngineSettings()
    transcript = transcript_lines(history, settings.snapshot_limit)
    candidates = candidates_section(request.candidates)

    current = f"Name: {request.checkpoint_name}"
    if request.objective:
        current += f"\nObjective: {request.objective}"

    macros = {
        "story_title": request.story_title,
        "story_description": request.story_description,
        "story_current_checkpoint": current,
        "story_past_checkpoints": "\n".join(request.past_checkpoints) or "None completed yet.",
        "chat_excerpt": "\n".join(transcript),
        "story_possible_triggers": candidates,
    }
    template = _MACRO.sub(r"{{{\1}}}", settings.arbiter_prompt or DEFAULT_ARBITER_PROMPT)
    header = render_prompt(template, macros)
    header = "\n".join(line.strip() for line in header.splitlines() if line.strip())

    return render_prompt(_BODY_TEMPLATE, {
        "header": header,
        "checkpoint_name": request.checkpoint_name,
        "objective": request.objective,
        "reason_line": reason_line(request.reason, request.matched, request.interval_turns),
        "turn": request.turn,
        "latest_text": clamp_text(request.latest_text, CHAT_MESSAGE_CLAMP),
        "transcript": transcript,
        "limit": len(transcript),
        "candidates": candidates,
    })
