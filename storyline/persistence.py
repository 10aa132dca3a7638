"""Runtime persistence and rehydration for one chat session.

The controller decides *whether* progress may be written. It persists only
when all of the following hold:

    - a story is set
    - a chat id is set
    - the group requirement is met (configurable, on by default)
    - the session has been hydrated, so a fresh default runtime never
      overwrites stored progress before it was read

Store failures are logged and swallowed; the running story keeps going.
"""

from __future__ import annotations

import logging

from storyline.models import RuntimeStoryState
from storyline.state import StateSource, load_story_state, make_default_state, persist_story_state
from storyline.storage import StateStore
from storyline.story import Story

logger = logging.getLogger(__name__)


def _clean_chat_id(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class PersistenceController:
    def __init__(self, store: StateStore, require_group: bool = True) -> None:
        self._store = store
        self._require_group = require_group
        self._story: Story | None = None
        self._chat_id: str | None = None
        self._group_selected = False
        self._hydrated = False

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def group_selected(self) -> bool:
        return self._group_selected

    def set_story(self, story: Story | None) -> RuntimeStoryState:
        """Switch stories. Progress must be hydrated again before it is saved."""
        self._story = story
        self._hydrated = False
        return make_default_state(story)

    def set_chat_context(self, chat_id: str | None, group_selected: bool) -> None:
        self._chat_id = _clean_chat_id(chat_id)
        self._group_selected = bool(group_selected)

    def set_require_group(self, required: bool) -> None:
        self._require_group = required

    def _group_ok(self) -> bool:
        return self._group_selected or not self._require_group

    def can_persist(self) -> bool:
        return bool(self._story and self._chat_id and self._group_ok())

    def is_hydrated(self) -> bool:
        return self._hydrated

    def hydrate(self) -> tuple[RuntimeStoryState, StateSource]:
        """Load stored progress for the current chat, or defaults."""
        if self._story is None or not self._group_ok() or self._chat_id is None:
            self._hydrated = False
            return make_default_state(self._story), "default"

        try:
            runtime, source = load_story_state(self._store, self._chat_id, self._story)
        except Exception:
            logger.warning("Could not read story state for chat %s", self._chat_id, exc_info=True)
            runtime, source = make_default_state(self._story), "default"
        self._hydrated = True
        logger.info(
            "Hydrated chat %s from %s state at checkpoint %d",
            self._chat_id, source, runtime.checkpoint_index,
        )
        return runtime, source

    def save(self, runtime: RuntimeStoryState, *, mark_hydrated: bool = False) -> bool:
        """Persist `runtime` if allowed. Returns True when a record was written.

        `mark_hydrated` is used by explicit activations: once the user has
        moved the story on, the in-memory runtime is authoritative.
        """
        if mark_hydrated and self._group_ok():
            self._hydrated = True
        story, chat_id = self._story, self._chat_id
        if not self._hydrated or not self.can_persist() or story is None or chat_id is None:
            return False
        try:
            persist_story_state(self._store, chat_id, story, runtime)
        except Exception:
            logger.warning("Could not persist story state for chat %s", self._chat_id, exc_info=True)
            return False
        return True

    def dispose(self) -> None:
        self._story = None
        self._chat_id = None
        self._group_selected = False
        self._hydrated = False
