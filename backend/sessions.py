"""In-process registry of running story sessions, one per chat id.

Each session owns a StoryOrchestrator plus two recording collaborators so API
clients can see what the host should do: `SessionEffects` keeps the recent
side-effect requests (author's notes, world info, automations) and
`SessionPresetSink` keeps the last preset written for the story.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from storyline.config import EngineSettings, get_config, llm_from_config
from storyline.llm import LLM
from storyline.orchestrator import EvaluationEvent, StoryOrchestrator
from storyline.storage import JsonStateStore
from storyline.story import AuthorsNote, Story

logger = logging.getLogger(__name__)

EFFECT_LOG_LIMIT = 50
EVENT_LOG_LIMIT = 20

LLMFactory = Callable[[dict[str, Any]], LLM]


class SessionEffects:
    def __init__(self, limit: int = EFFECT_LOG_LIMIT) -> None:
        self.log: deque[dict[str, Any]] = deque(maxlen=limit)

    def _record(self, kind: str, **data: Any) -> None:
        self.log.append({"kind": kind, "ts": time.time(), **data})
        logger.debug("effect %s %s", kind, data)

    def apply_authors_note(self, target: str, note: AuthorsNote) -> None:
        self._record("authors_note", target=target, note=note.model_dump())

    def clear_authors_note(self) -> None:
        self._record("clear_authors_note")

    def toggle_world_info(
        self,
        activate: Sequence[str],
        deactivate: Sequence[str],
        make_constant: Sequence[str],
    ) -> None:
        self._record(
            "world_info",
            activate=list(activate),
            deactivate=list(deactivate),
            make_constant=list(make_constant),
        )

    def run_automation(self, command_id: str) -> None:
        self._record("automation", command=command_id)


class SessionPresetSink:
    def __init__(self) -> None:
        self.current: dict[str, Any] | None = None

    def apply_preset(self, name: str, values: dict[str, Any], label: str) -> None:
        self.current = {"name": name, "label": label, "values": values}


class Session:
    def __init__(self, chat_id: str, orchestrator: StoryOrchestrator,
                 effects: SessionEffects, presets: SessionPresetSink) -> None:
        self.chat_id = chat_id
        self.orchestrator = orchestrator
        self.effects = effects
        self.presets = presets
        self.events: deque[dict[str, Any]] = deque(maxlen=EVENT_LOG_LIMIT)

    def record_event(self, event: EvaluationEvent) -> None:
        self.events.append(event.model_dump(mode="json"))

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.orchestrator.snapshot(),
            "events": list(self.events),
            "effects": list(self.effects.log),
            "preset": self.presets.current,
        }


class SessionRegistry:
    def __init__(self, data_dir: Path, llm_factory: LLMFactory | None = None) -> None:
        self.data_dir = data_dir
        self.store = JsonStateStore(data_dir)
        self._llm_factory = llm_factory or llm_from_config
        self._sessions: dict[str, Session] = {}

    def config(self) -> dict[str, Any]:
        return get_config(self.data_dir)

    def settings(self) -> EngineSettings:
        return EngineSettings.from_config(self.config())

    def get(self, chat_id: str) -> Session | None:
        return self._sessions.get(chat_id)

    def chat_ids(self) -> list[str]:
        return sorted(self._sessions)

    def open(self, chat_id: str, story: Story) -> Session:
        """Start a session for `chat_id`, replacing any running one."""
        self.close(chat_id)
        config = self.config()
        effects = SessionEffects()
        presets = SessionPresetSink()
        orchestrator = StoryOrchestrator(
            story,
            llm=self._llm_factory(config),
            store=self.store,
            effects=effects,
            preset_sink=presets,
            settings=EngineSettings.from_config(config),
        )
        session = Session(chat_id, orchestrator, effects, presets)
        orchestrator.on_evaluated = session.record_event
        self._sessions[chat_id] = session
        logger.info("session opened chat=%s story=%r", chat_id, story.title)
        return session

    def close(self, chat_id: str) -> bool:
        session = self._sessions.pop(chat_id, None)
        if session is None:
            return False
        session.orchestrator.dispose()
        logger.info("session closed chat=%s", chat_id)
        return True

    def apply_settings(self) -> EngineSettings:
        settings = self.settings()
        for session in self._sessions.values():
            session.orchestrator.update_settings(settings)
        return settings

    def close_all(self) -> None:
        for chat_id in list(self._sessions):
            self.close(chat_id)
