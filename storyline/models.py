"""Runtime domain models.

The orchestrator, the persistence layer and the HTTP routes all exchange these
types. Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

CheckpointStatus = Literal["pending", "current", "complete", "failed"]

CHECKPOINT_STATUSES: frozenset[str] = frozenset(
    ("pending", "current", "complete", "failed")
)

STATE_VERSION = 1


class RuntimeStoryState(BaseModel):
    """The only mutable piece of a running story.

    Owned by the orchestrator; created on first activation or on rehydration.
    """

    checkpoint_index: int = 0
    active_checkpoint_key: str | None = None
    turns_since_eval: int = 0
    checkpoint_turn_count: int = 0  # user turns since the active checkpoint was entered
    checkpoint_statuses: list[CheckpointStatus] = Field(default_factory=list)


class PersistedStoryState(BaseModel):
    """Durable record stored per chat session."""

    ver: int
    story_signature: str
    checkpoint_index: int
    active_checkpoint_key: str | None = None
    checkpoint_statuses: list[str] = Field(default_factory=list)
    turns_since_eval: int = 0
    checkpoint_turn_count: int = 0
    updated_at: float


class ChatMessage(BaseModel):
    """One entry of the conversation excerpt shown to the arbiter."""

    speaker: str
    text: str
    is_user: bool = False
