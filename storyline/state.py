"""Pure helpers for the runtime story state.

Everything here is side-effect free apart from `load_story_state` and
`persist_story_state`, which go through a state store.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Sequence
from typing import Literal

from pydantic import ValidationError

from storyline.models import (
    CHECKPOINT_STATUSES,
    STATE_VERSION,
    CheckpointStatus,
    PersistedStoryState,
    RuntimeStoryState,
)
from storyline.storage import StateStore
from storyline.story import Story

logger = logging.getLogger(__name__)

StateSource = Literal["stored", "default"]


def clamp_index(index: int, count: int) -> int:
    """Clamp an index into [0, count - 1]; 0 for an empty story."""
    if count <= 0:
        return 0
    return max(0, min(int(index), count - 1))


def sanitize_turns(value: object) -> int:
    """Non-negative integer, anything else becomes 0."""
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return max(0, value)


def compute_statuses(
    count: int,
    index: int,
    previous: Sequence[str] | None = None,
) -> list[CheckpointStatus]:
    """Status vector for `count` checkpoints with `index` active.

    A checkpoint already marked failed stays failed. Otherwise checkpoints
    before the active one are complete, the active one is current and the
    rest are pending.
    """
    previous = previous or []
    statuses: list[CheckpointStatus] = []
    for i in range(count):
        if i < len(previous) and previous[i] == "failed":
            statuses.append("failed")
        elif i < index:
            statuses.append("complete")
        elif i == index:
            statuses.append("current")
        else:
            statuses.append("pending")
    return statuses


def make_default_state(story: Story | None) -> RuntimeStoryState:
    if story is None or not story.checkpoints:
        return RuntimeStoryState()
    return RuntimeStoryState(
        checkpoint_index=0,
        active_checkpoint_key=story.checkpoints[0].key,
        checkpoint_statuses=compute_statuses(len(story.checkpoints), 0),
    )


def story_signature(story: Story) -> str:
    """Fingerprint of the story's checkpoint identity.

    Edits that rename, reorder, add or remove checkpoints change the
    signature and invalidate stored progress.
    """
    h = hashlib.sha256()
    h.update(story.title.encode("utf-8"))
    h.update(b"\x00")
    h.update(str(len(story.checkpoints)).encode("ascii"))
    for cp in story.checkpoints:
        h.update(b"\x00")
        h.update(f"{cp.key}::{cp.name}::{cp.objective}".encode("utf-8"))
    return h.hexdigest()


def reconcile_statuses(
    stored: Sequence[str],
    count: int,
    index: int,
) -> list[CheckpointStatus]:
    """Fit a stored status list to the story.

    Starts from the default vector for `index` (complete before, current
    at, pending after) and overlays every known stored value. Extra
    entries are dropped. The active checkpoint is always current unless
    it failed.
    """
    statuses = compute_statuses(count, index)
    for i, value in enumerate(stored[:count]):
        if value in CHECKPOINT_STATUSES:
            statuses[i] = value  # type: ignore[assignment]
    if count and statuses[index] != "failed":
        statuses[index] = "current"
    return statuses


def load_story_state(
    store: StateStore,
    chat_id: str,
    story: Story,
) -> tuple[RuntimeStoryState, StateSource]:
    """Rebuild runtime state for a chat, or fall back to defaults.

    Returns the runtime and "stored" or "default".
    """
    raw = store.load(chat_id)
    if raw is None:
        return make_default_state(story), "default"

    try:
        record = PersistedStoryState.model_validate(raw)
    except ValidationError:
        logger.info("Ignoring malformed story state for chat %s", chat_id)
        return make_default_state(story), "default"

    if record.ver != STATE_VERSION:
        logger.info("Ignoring story state v%s for chat %s", record.ver, chat_id)
        return make_default_state(story), "default"
    if record.story_signature != story_signature(story):
        logger.info("Story changed since state was saved for chat %s; starting over", chat_id)
        return make_default_state(story), "default"

    count = len(story.checkpoints)
    index = clamp_index(record.checkpoint_index, count)
    if record.active_checkpoint_key is not None:
        by_key = story.index_of(record.active_checkpoint_key)
        if by_key >= 0:
            index = by_key

    runtime = RuntimeStoryState(
        checkpoint_index=index,
        active_checkpoint_key=story.checkpoints[index].key if count else None,
        turns_since_eval=sanitize_turns(record.turns_since_eval),
        checkpoint_turn_count=sanitize_turns(record.checkpoint_turn_count),
        checkpoint_statuses=reconcile_statuses(record.checkpoint_statuses, count, index),
    )
    return runtime, "stored"


def build_record(story: Story, runtime: RuntimeStoryState) -> PersistedStoryState:
    return PersistedStoryState(
        ver=STATE_VERSION,
        story_signature=story_signature(story),
        checkpoint_index=runtime.checkpoint_index,
        active_checkpoint_key=runtime.active_checkpoint_key,
        checkpoint_statuses=list(runtime.checkpoint_statuses),
        turns_since_eval=runtime.turns_since_eval,
        checkpoint_turn_count=runtime.checkpoint_turn_count,
        updated_at=time.time(),
    )


def persist_story_state(
    store: StateStore,
    chat_id: str,
    story: Story,
    runtime: RuntimeStoryState,
) -> PersistedStoryState:
    record = build_record(story, runtime)
    store.save(chat_id, record.model_dump())
    return record
