import asyncio
import copy
import shutil
from pathlib import Path
from typing import Any

import pytest

from storyline.config import EngineSettings
from storyline.orchestrator import StoryOrchestrator
from storyline.storage import MemoryStateStore
from storyline.story import load_story

TEST_DATA_DIR = Path("data-tests")


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir(parents=True)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def data_dir() -> Path:
    return TEST_DATA_DIR


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an exception instance is raised instead of returned.
    Set `gate` to an asyncio.Event to hold every call until it is set.
    """

    def __init__(self, responses: dict[str, list[Any]] | None = None) -> None:
        self._queues: dict[str, list[Any]] = {k: list(v) for k, v in (responses or {}).items()}
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            queue = self._queues.get(stage)
            if not queue:
                raise AssertionError(
                    f"StubLLM: unexpected call to stage={stage!r} "
                    f"(no responses queued). calls so far: {len(self.calls)}"
                )
            response = queue.pop(0)
        finally:
            self.in_flight -= 1
        if isinstance(response, BaseException):
            raise response
        return response

    def push(self, *responses: Any, stage: str = "arbiter") -> None:
        self._queues.setdefault(stage, []).extend(responses)

    @property
    def prompts(self) -> list[str]:
        return [p for _, p in self.calls]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed — catches missing LLM calls."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: responses never consumed: {leftover}")


class RecordingEffects:
    """Collects side-effect calls as (name, args) tuples."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []

    def apply_authors_note(self, target, note):
        self.calls.append(("apply_authors_note", (target, note.text)))

    def clear_authors_note(self):
        self.calls.append(("clear_authors_note", ()))

    def toggle_world_info(self, activate, deactivate, make_constant):
        self.calls.append(("toggle_world_info", (list(activate), list(deactivate), list(make_constant))))

    def run_automation(self, command_id):
        self.calls.append(("run_automation", (command_id,)))

    def named(self, name: str) -> list[tuple]:
        return [args for n, args in self.calls if n == name]


class RecordingPresetSink:
    def __init__(self) -> None:
        self.applied: list[tuple[str, dict, str]] = []

    def apply_preset(self, name, values, label):
        self.applied.append((name, values, label))


# ---------------------------------------------------------------------------
# Story fixtures
# ---------------------------------------------------------------------------

BROKEN_COMPASS: dict[str, Any] = {
    "title": "The Broken Compass",
    "description": "A courier must get a broken compass repaired before dawn.",
    "roles": {"dm": "Narrator", "companion": "Mira"},
    "base_preset": {"temperature": 0.7, "top_p": 0.9, "logit_bias": [{"text": "dragon", "value": -5}]},
    "role_defaults": {"companion": {"temperature": 0.8}, "$arbiter": {"temperature": 0.1}},
    "checkpoints": [
        {
            "id": "gate",
            "name": "The City Gate",
            "objective": "Get past the gate guard",
            "triggers": {"win": ["/opens? the gate/i"], "fail": "arrested"},
            "on_activate": {
                "authors_note": {
                    "chat": "Rain lashes the city walls.",
                    "companion": {"text": "Mira distrusts guards.", "depth": 2},
                },
                "world_info": {"activate": ["City Gate"], "deactivate": ["Night Market"]},
                "preset_overrides": {"companion": {"top_p": 0.95}},
                "arbiter_preset": {"temperature": 0.0},
                "automations": ["/bg gate", "/music rain"],
            },
        },
        {
            "id": "market",
            "name": "The Night Market",
            "objective": "Find the compass maker",
            "triggers": {"win": "compass maker"},
            "on_activate": {
                "authors_note": "Lanterns sway over the stalls.",
                "world_info": {"activate": ["Night Market"], "make_constant": ["Compass Maker"]},
            },
        },
        {
            "id": "cells",
            "name": "The Cells",
            "objective": "Escape the cells",
            "triggers": {"win": "/unlock(ed)? the door/"},
        },
        {
            "id": "tower",
            "name": "The Clock Tower",
            "objective": "Repair the compass",
        },
    ],
    "transitions": [
        {"id": "gate-market", "from": "gate", "to": "market", "outcome": "win", "label": "Through the gate"},
        {"id": "gate-cells", "from": "gate", "to": "cells", "outcome": "fail", "label": "Arrested"},
        {"id": "market-tower", "from": "market", "to": "tower", "outcome": "win"},
        {"id": "market-cells", "from": "market", "to": "cells", "outcome": "fail", "after_turns": 5,
         "label": "Curfew"},
        {"id": "cells-market", "from": "cells", "to": "market", "outcome": "win"},
    ],
}


@pytest.fixture
def story_data() -> dict[str, Any]:
    return copy.deepcopy(BROKEN_COMPASS)


@pytest.fixture
def story(story_data):
    return load_story(story_data)


@pytest.fixture
def stub_llm():
    """Factory: stub_llm("reply", ...) → StubLLM answering the arbiter stage in order."""
    def make(*responses: Any) -> StubLLM:
        return StubLLM({"arbiter": list(responses)})
    return make


@pytest.fixture
def effects() -> RecordingEffects:
    return RecordingEffects()


@pytest.fixture
def preset_sink() -> RecordingPresetSink:
    return RecordingPresetSink()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def make_orchestrator(story, store, effects, preset_sink):
    """Factory for an orchestrator on the Broken Compass story with recording collaborators."""
    created: list[StoryOrchestrator] = []

    def make(llm, *, story_override=None, **settings: Any) -> StoryOrchestrator:
        orch = StoryOrchestrator(
            story_override or story,
            llm=llm,
            store=store,
            effects=effects,
            preset_sink=preset_sink,
            settings=EngineSettings(**settings),
        )
        created.append(orch)
        return orch

    yield make
    for orch in created:
        orch.dispose()
