"""Story file schema and loader.

A story file is JSON:

    {
      "title": "The Broken Compass",
      "roles": {"dm": "Narrator", "companion": "Mira"},
      "checkpoints": [
        {"id": "gate", "name": "The Gate", "objective": "Get past the guard",
         "triggers": {"win": ["/opens? the gate/i"], "fail": "arrested"},
         "on_activate": {"authors_note": "Rain falls.", "automations": ["/bg gate"]}}
      ],
      "transitions": [{"id": "t1", "from": "gate", "to": "market", "outcome": "win"}]
    }

`load_story` validates the file, compiles every trigger and checks graph
references. The result is an immutable `Story`; the engine never mutates it.
Any problem raises StoryDefinitionError and the story is not activated.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from storyline.errors import StoryDefinitionError
from storyline.triggers import Trigger, compile_triggers

Outcome = Literal["win", "fail"]

GLOBAL_NOTE_KEY = "chat"
ARBITER_ROLE = "$arbiter"


# ---------------------------------------------------------------------------
# File schema
# ---------------------------------------------------------------------------

class AuthorsNote(BaseModel):
    text: str
    position: Literal["before", "after", "chat"] = "chat"
    interval: int = Field(default=1, ge=0)
    depth: int = Field(default=4, ge=0)
    role: Literal["system", "user", "assistant"] = "system"


class WorldInfoOps(BaseModel):
    activate: list[str] = Field(default_factory=list)
    deactivate: list[str] = Field(default_factory=list)
    make_constant: list[str] = Field(default_factory=list)

    @field_validator("activate", "deactivate", "make_constant")
    @classmethod
    def _clean_names(cls, names: list[str]) -> list[str]:
        seen: list[str] = []
        for name in names:
            name = name.strip()
            if name and name not in seen:
                seen.append(name)
        return seen

    def is_empty(self) -> bool:
        return not (self.activate or self.deactivate or self.make_constant)


class OnActivate(BaseModel):
    """Side effects requested when a checkpoint becomes active."""

    authors_note: dict[str, AuthorsNote] = Field(default_factory=dict)
    world_info: WorldInfoOps | None = None
    preset_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)
    arbiter_preset: dict[str, Any] | None = None
    automations: list[str] = Field(default_factory=list)

    @field_validator("authors_note", mode="before")
    @classmethod
    def _normalize_notes(cls, value: Any) -> Any:
        # A bare string is the global note; bare string values are note texts.
        if value is None:
            return {}
        if isinstance(value, str):
            return {GLOBAL_NOTE_KEY: {"text": value}}
        if isinstance(value, Mapping):
            return {
                key: {"text": note} if isinstance(note, str) else note
                for key, note in value.items()
            }
        return value

    @field_validator("automations")
    @classmethod
    def _clean_automations(cls, commands: list[str]) -> list[str]:
        return [c.strip() for c in commands if c.strip()]


class CheckpointTriggersFile(BaseModel):
    win: Any = None
    fail: Any = None


class CheckpointFile(BaseModel):
    id: str | int
    name: str = Field(min_length=1)
    objective: str = Field(min_length=1)
    triggers: CheckpointTriggersFile = Field(default_factory=CheckpointTriggersFile)
    on_activate: OnActivate = Field(default_factory=OnActivate)


class TransitionFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str | int | None = None
    source: str | int = Field(alias="from")
    target: str | int = Field(alias="to")
    outcome: Outcome = "win"
    label: str | None = None
    description: str | None = None
    after_turns: int | None = Field(default=None, ge=1)


class StoryFile(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    roles: dict[str, str] = Field(default_factory=dict)
    base_preset: dict[str, Any] | None = None
    role_defaults: dict[str, dict[str, Any]] = Field(default_factory=dict)
    checkpoints: list[CheckpointFile] = Field(min_length=1)
    transitions: list[TransitionFile] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalized, immutable story graph
# ---------------------------------------------------------------------------

class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str | int
    key: str
    name: str
    objective: str
    win_triggers: tuple[Trigger, ...] = ()
    fail_triggers: tuple[Trigger, ...] = ()
    on_activate: OnActivate = Field(default_factory=OnActivate)


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    outcome: Outcome = "win"
    label: str | None = None
    description: str | None = None
    after_turns: int | None = None


class Story(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str = ""
    roles: dict[str, str] = Field(default_factory=dict)
    checkpoints: tuple[Checkpoint, ...]
    transitions: tuple[Transition, ...] = ()
    base_preset: dict[str, Any] | None = None
    role_defaults: dict[str, dict[str, Any]] = Field(default_factory=dict)

    def index_of(self, key: str | int | None) -> int:
        """Position of the checkpoint with this key, or -1."""
        if key is None:
            return -1
        wanted = canonical_key(key)
        for i, cp in enumerate(self.checkpoints):
            if cp.key == wanted:
                return i
        return -1

    def checkpoint(self, key: str | int) -> Checkpoint | None:
        idx = self.index_of(key)
        return self.checkpoints[idx] if idx >= 0 else None

    def outgoing(self, key: str, outcome: Outcome | None = None) -> list[Transition]:
        """Edges leaving `key` in definition order, optionally filtered by outcome."""
        return [
            edge for edge in self.transitions
            if edge.source == key and (outcome is None or edge.outcome == outcome)
        ]


def canonical_key(value: str | int) -> str:
    return str(value).strip()


def _optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


def format_validation_error(e: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}"
        for err in e.errors()
    )


def load_story(data: Mapping[str, Any]) -> Story:
    """Validate a parsed story file and build the immutable story graph."""
    try:
        story_file = StoryFile.model_validate(data)
    except ValidationError as e:
        raise StoryDefinitionError(f"Invalid story: {format_validation_error(e)}") from e

    checkpoints: list[Checkpoint] = []
    seen_keys: set[str] = set()
    for idx, cp in enumerate(story_file.checkpoints):
        key = canonical_key(cp.id)
        if not key:
            raise StoryDefinitionError(f"checkpoints[{idx}] has an empty id")
        if key in seen_keys:
            raise StoryDefinitionError(f"Duplicate checkpoint id {key!r}")
        seen_keys.add(key)
        checkpoints.append(Checkpoint(
            id=cp.id,
            key=key,
            name=cp.name.strip(),
            objective=cp.objective.strip(),
            win_triggers=tuple(compile_triggers(cp.triggers.win, f"checkpoints[{idx}].triggers.win")),
            fail_triggers=tuple(compile_triggers(cp.triggers.fail, f"checkpoints[{idx}].triggers.fail")),
            on_activate=cp.on_activate,
        ))

    transitions: list[Transition] = []
    seen_edges: set[str] = set()
    for idx, edge in enumerate(story_file.transitions):
        edge_id = canonical_key(edge.id) if edge.id is not None else ""
        edge_id = edge_id or f"edge-{idx + 1}"
        if edge_id in seen_edges:
            raise StoryDefinitionError(f"Duplicate transition id {edge_id!r}")
        seen_edges.add(edge_id)
        source = canonical_key(edge.source)
        target = canonical_key(edge.target)
        if source not in seen_keys:
            raise StoryDefinitionError(
                f"Transition {edge_id} references unknown source checkpoint {source!r}"
            )
        if target not in seen_keys:
            raise StoryDefinitionError(
                f"Transition {edge_id} references unknown target checkpoint {target!r}"
            )
        transitions.append(Transition(
            id=edge_id,
            source=source,
            target=target,
            outcome=edge.outcome,
            label=_optional_text(edge.label),
            description=_optional_text(edge.description),
            after_turns=edge.after_turns,
        ))

    roles = {role: name.strip() for role, name in story_file.roles.items() if name.strip()}

    return Story(
        title=story_file.title.strip(),
        description=story_file.description.strip(),
        roles=roles,
        checkpoints=tuple(checkpoints),
        transitions=tuple(transitions),
        base_preset=story_file.base_preset,
        role_defaults=story_file.role_defaults,
    )


def load_story_file(path: Path) -> Story:
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise StoryDefinitionError(f"Cannot read story file {path}: {e}") from e
    if not isinstance(data, dict):
        raise StoryDefinitionError(f"Story file {path} must contain a JSON object")
    return load_story(data)
