"""Checkpoint state machine.

One `StoryOrchestrator` drives one story in one chat session. It owns the
runtime state (active checkpoint, turn counters, status vector) and wires the
other pieces together:

    user text ─► trigger matcher ─► ArbiterQueue ─► verdict
                                                     │
        activate target ◄── resolve_transition ◄─────┘

Every state change is applied and persisted before side effects are
dispatched. Side effects (author's notes, world info, automations, presets)
are fire-and-forget; observers are notified synchronously and their failures
are logged.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from storyline.arbiter import (
    ArbiterDisposedError,
    ArbiterPayload,
    ArbiterQueue,
    EvaluationOutcome,
    EvaluationReason,
    EvaluationRequest,
    TransitionCandidate,
)
from storyline.config import EngineSettings
from storyline.effects import EffectRunner, LoggingEffects, StoryEffects
from storyline.llm import LLM
from storyline.models import CHECKPOINT_STATUSES, ChatMessage, CheckpointStatus, RuntimeStoryState
from storyline.persistence import PersistenceController
from storyline.presets import LoggingPresetSink, PresetSink, RolePresetDispatcher
from storyline.resolver import resolve_transition
from storyline.state import StateSource, clamp_index, compute_statuses, make_default_state
from storyline.storage import StateStore
from storyline.story import GLOBAL_NOTE_KEY, Checkpoint, Story, Transition
from storyline.triggers import Trigger, match_trigger

logger = logging.getLogger(__name__)

LOG_SAMPLE_LIMIT = 80


class EvaluationEvent(BaseModel):
    """What the orchestrator did with one arbiter payload."""

    outcome: EvaluationOutcome
    reason: EvaluationReason
    turn: int
    checkpoint_index: int
    checkpoint_key: str
    matched: str | None = None
    transition: Transition | None = None
    stale: bool = False
    error: str | None = None


def _sample(text: str) -> str:
    return text if len(text) <= LOG_SAMPLE_LIMIT else text[:LOG_SAMPLE_LIMIT] + "..."


class StoryOrchestrator:
    def __init__(
        self,
        story: Story,
        *,
        llm: LLM,
        store: StateStore,
        effects: StoryEffects | None = None,
        preset_sink: PresetSink | None = None,
        settings: EngineSettings | None = None,
        on_evaluated: Callable[[EvaluationEvent], Any] | None = None,
        on_activate: Callable[[int], Any] | None = None,
        on_turn_tick: Callable[[int, int], Any] | None = None,
    ) -> None:
        self._story = story
        self._settings = settings or EngineSettings()
        self._effects: StoryEffects = effects or LoggingEffects()
        self._runner = EffectRunner()
        self._presets = RolePresetDispatcher.for_story(story, preset_sink or LoggingPresetSink(), self._runner)
        self._persistence = PersistenceController(store, require_group=self._settings.require_group_chat)
        self._persistence.set_story(story)

        self._runtime = make_default_state(story)
        self._turn = 0
        self._activation = 0
        self._active_role: str | None = None
        self._win_triggers: tuple[Trigger, ...] = ()
        self._fail_triggers: tuple[Trigger, ...] = ()
        self._outgoing: list[Transition] = []
        self._history: deque[ChatMessage] = deque(maxlen=self._settings.history_limit)
        self._disposed = False

        self.on_evaluated = on_evaluated
        self.on_activate = on_activate
        self.on_turn_tick = on_turn_tick

        self._queue = ArbiterQueue(
            llm,
            history=lambda: list(self._history),
            on_evaluated=self._handle_payload,
            before_call=self._apply_arbiter_preset,
            settings=self._settings,
        )
        self._load_checkpoint()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def story(self) -> Story:
        return self._story

    @property
    def runtime(self) -> RuntimeStoryState:
        return self._runtime.model_copy(deep=True)

    @property
    def index(self) -> int:
        return self._runtime.checkpoint_index

    @property
    def turn(self) -> int:
        return self._turn

    @property
    def current_checkpoint(self) -> Checkpoint | None:
        if not self._story.checkpoints:
            return None
        return self._story.checkpoints[self._runtime.checkpoint_index]

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def persistence(self) -> PersistenceController:
        return self._persistence

    @property
    def active_role(self) -> str | None:
        return self._active_role

    @property
    def history(self) -> list[ChatMessage]:
        return list(self._history)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def snapshot(self) -> dict[str, Any]:
        cp = self.current_checkpoint
        return {
            "story": self._story.title,
            "chat_id": self._persistence.chat_id,
            "checkpoint_index": self._runtime.checkpoint_index,
            "checkpoint_key": self._runtime.active_checkpoint_key,
            "checkpoint_name": cp.name if cp else None,
            "objective": cp.objective if cp else None,
            "turn": self._turn,
            "turns_since_eval": self._runtime.turns_since_eval,
            "checkpoint_turn_count": self._runtime.checkpoint_turn_count,
            "interval_turns": self._settings.interval_turns,
            "checkpoints": [
                {"id": c.key, "name": c.name, "status": status}
                for c, status in zip(self._story.checkpoints, self._runtime.checkpoint_statuses)
            ],
            "active_role": self._active_role,
            "hydrated": self._persistence.is_hydrated(),
            "can_persist": self._persistence.can_persist(),
            "evaluation_busy": self._queue.busy,
            "evaluations_pending": self._queue.pending,
        }

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def update_settings(self, settings: EngineSettings) -> None:
        self._settings = settings
        self._queue.update_settings(settings)
        self._persistence.set_require_group(settings.require_group_chat)
        if self._history.maxlen != settings.history_limit:
            self._history = deque(self._history, maxlen=settings.history_limit)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def activate_index(self, index: int, *, fresh: bool = False) -> int:
        """Make checkpoint `index` (clamped) the active one. Returns the index used.

        `fresh` discards previously recorded failures.
        """
        if self._disposed:
            return self._runtime.checkpoint_index
        count = len(self._story.checkpoints)
        if count == 0:
            self._queue.clear()
            return 0

        idx = clamp_index(index, count)
        previous = None if fresh else self._runtime.checkpoint_statuses
        self._runtime = RuntimeStoryState(
            checkpoint_index=idx,
            active_checkpoint_key=self._story.checkpoints[idx].key,
            turns_since_eval=0,
            checkpoint_turn_count=0,
            checkpoint_statuses=compute_statuses(count, idx, previous),
        )
        self._turn = 0
        self._activation += 1
        self._load_checkpoint()
        self._queue.clear()
        self._persistence.save(self._runtime, mark_hydrated=True)

        cp = self._story.checkpoints[idx]
        logger.info("activated checkpoint %d (%s: %s)", idx, cp.key, cp.name)
        self._dispatch_on_activate(cp, run_automations=True)
        self._emit(self.on_activate, idx)
        return idx

    def activate_relative(self, delta: int) -> int:
        return self.activate_index(self._runtime.checkpoint_index + delta)

    def reset_story(self) -> int:
        return self.activate_index(0, fresh=True)

    def update_checkpoint_status(self, index: int, status: CheckpointStatus) -> None:
        if not 0 <= index < len(self._runtime.checkpoint_statuses):
            raise ValueError(f"checkpoint index {index} out of range")
        if status not in CHECKPOINT_STATUSES:
            raise ValueError(f"unknown checkpoint status {status!r}")
        self._runtime.checkpoint_statuses[index] = status
        self._persistence.save(self._runtime)

    def _load_checkpoint(self) -> None:
        cp = self.current_checkpoint
        if cp is None:
            self._win_triggers = ()
            self._fail_triggers = ()
            self._outgoing = []
            return
        self._win_triggers = cp.win_triggers
        self._fail_triggers = cp.fail_triggers
        self._outgoing = self._story.outgoing(cp.key)

    def _dispatch_on_activate(self, cp: Checkpoint, *, run_automations: bool) -> None:
        on = cp.on_activate
        note = on.authors_note.get(GLOBAL_NOTE_KEY)
        if note is not None:
            self._runner.spawn("authors_note", self._effects.apply_authors_note, GLOBAL_NOTE_KEY, note)
        wi = on.world_info
        if wi is not None and not wi.is_empty():
            self._runner.spawn(
                "world_info", self._effects.toggle_world_info,
                list(wi.activate), list(wi.deactivate), list(wi.make_constant),
            )
        if run_automations and on.automations:
            self._runner.spawn_sequence(
                f"automations:{cp.key}",
                [(self._effects.run_automation, (command,)) for command in on.automations],
            )
        if self._active_role is not None:
            self._apply_role(self._active_role, cp)

    # ------------------------------------------------------------------
    # Conversation input
    # ------------------------------------------------------------------

    def record_message(self, speaker: str, text: str, is_user: bool = False) -> None:
        if not text or not text.strip():
            return
        self._history.append(ChatMessage(speaker=speaker, text=text, is_user=is_user))

    def handle_user_text(self, text: str | None) -> asyncio.Future[ArbiterPayload] | None:
        """Count a user turn and queue an evaluation when one is due.

        Returns the evaluation future, or None when nothing was queued.
        """
        if self._disposed:
            return None
        text = (text or "").strip()
        if not text:
            return None

        rt = self._runtime
        self._turn += 1
        rt.turns_since_eval += 1
        rt.checkpoint_turn_count += 1
        logger.info("user text turn=%d since_eval=%d sample=%r", self._turn, rt.turns_since_eval, _sample(text))
        self._persistence.save(rt)
        self._emit(self.on_turn_tick, self._turn, rt.turns_since_eval)

        if self.current_checkpoint is None:
            return None

        match = match_trigger(text, self._win_triggers, self._fail_triggers)
        if match is not None:
            return self._enqueue("trigger", text, f"{match.reason} {match.pattern}")

        for edge in self._outgoing:
            if edge.after_turns is not None and edge.after_turns == rt.checkpoint_turn_count:
                return self._enqueue("timed", text, f"{edge.id} after {edge.after_turns} turns")

        if rt.turns_since_eval >= self._settings.interval_turns:
            return self._enqueue("interval", text)
        return None

    def evaluate_now(self, reason: EvaluationReason = "manual") -> asyncio.Future[ArbiterPayload] | None:
        if self._disposed or self.current_checkpoint is None:
            return None
        latest = next((m.text for m in reversed(self._history) if m.is_user), "")
        return self._enqueue(reason, latest)

    # ------------------------------------------------------------------
    # Roles and presets
    # ------------------------------------------------------------------

    def set_active_role(self, name: str) -> str | None:
        """Switch to the role whose display name is `name`. Returns the role or None."""
        role = self._presets.resolve_role(name)
        if role is None:
            return None
        self._active_role = role
        cp = self.current_checkpoint
        if cp is None or not self._presets.should_apply(role, self._runtime.checkpoint_index):
            return role
        self._apply_role(role, cp)
        return role

    def new_generation(self) -> int:
        return self._presets.new_epoch()

    def _apply_role(self, role: str, cp: Checkpoint) -> None:
        note = cp.on_activate.authors_note.get(role)
        if note is not None:
            self._runner.spawn(f"authors_note:{role}", self._effects.apply_authors_note, role, note)
        else:
            self._runner.spawn("authors_note:clear", self._effects.clear_authors_note)
        self._presets.apply_for_role(role, cp.on_activate.preset_overrides.get(role), cp.name)

    def _apply_arbiter_preset(self, request: EvaluationRequest) -> None:
        cp = self._story.checkpoint(request.checkpoint_key)
        if cp is None:
            return
        self._presets.apply_arbiter(cp.on_activate.arbiter_preset, cp.name)

    def _restore_role_preset(self) -> None:
        """Put the active role's preset back after an arbiter call."""
        role = self._active_role
        cp = self.current_checkpoint
        if self._disposed or role is None or cp is None:
            return
        if self._presets.should_apply(role, self._runtime.checkpoint_index):
            self._presets.apply_for_role(role, cp.on_activate.preset_overrides.get(role), cp.name)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _candidates(self) -> list[TransitionCandidate]:
        out = []
        for edge in self._outgoing:
            target = self._story.checkpoint(edge.target)
            out.append(TransitionCandidate(
                id=edge.id,
                outcome=edge.outcome,
                label=edge.label,
                description=edge.description,
                target_name=target.name if target else None,
                after_turns=edge.after_turns,
            ))
        return out

    def _past_checkpoints(self) -> list[str]:
        lines = []
        statuses = self._runtime.checkpoint_statuses
        for i in range(self._runtime.checkpoint_index - 1, -1, -1):
            status = statuses[i] if i < len(statuses) else "pending"
            if status not in ("complete", "failed"):
                continue
            cp = self._story.checkpoints[i]
            lines.append(f"- [{status.capitalize()}] {cp.name}: {cp.objective}")
        return lines

    def _enqueue(
        self,
        reason: EvaluationReason,
        text: str,
        matched: str | None = None,
    ) -> asyncio.Future[ArbiterPayload] | None:
        cp = self.current_checkpoint
        if cp is None:
            return None
        request = EvaluationRequest(
            checkpoint_key=cp.key,
            checkpoint_name=cp.name,
            objective=cp.objective,
            latest_text=text,
            reason=reason,
            matched=matched,
            turn=self._turn,
            interval_turns=self._settings.interval_turns,
            candidates=self._candidates(),
            story_title=self._story.title,
            story_description=self._story.description,
            past_checkpoints=self._past_checkpoints(),
            activation=self._activation,
        )
        if self._settings.reset_since_eval_on == "enqueue":
            self._reset_since_eval()
        try:
            return self._queue.evaluate(request)
        except ArbiterDisposedError:
            logger.info("evaluation dropped: arbiter disposed")
            return None

    def _reset_since_eval(self) -> None:
        self._runtime.turns_since_eval = 0
        self._persistence.save(self._runtime)
        self._emit(self.on_turn_tick, self._turn, 0)

    def _handle_payload(self, payload: ArbiterPayload) -> None:
        request = payload.request
        event = EvaluationEvent(
            outcome=payload.outcome,
            reason=request.reason,
            turn=request.turn,
            checkpoint_index=self._story.index_of(request.checkpoint_key),
            checkpoint_key=request.checkpoint_key,
            matched=request.matched,
            error=payload.error,
        )

        if (
            self._disposed
            or request.activation != self._activation
            or request.checkpoint_key != self._runtime.active_checkpoint_key
        ):
            logger.info("ignoring stale %s verdict for checkpoint %s", payload.outcome, request.checkpoint_key)
            self._emit(self.on_evaluated, event.model_copy(update={"stale": True}))
            self._restore_role_preset()
            return

        if self._settings.reset_since_eval_on == "evaluated":
            self._reset_since_eval()

        transition = None
        if payload.outcome == "fail":
            self._runtime.checkpoint_statuses[self._runtime.checkpoint_index] = "failed"
            self._persistence.save(self._runtime)
        if payload.outcome != "continue":
            transition = resolve_transition(
                self._story.transitions, request.checkpoint_key, payload.outcome, payload.next_transition_id,
            )

        self._emit(self.on_evaluated, event.model_copy(update={"transition": transition}))

        if transition is not None:
            logger.info("following transition %s: %s -> %s", transition.id, transition.source, transition.target)
            self.activate_index(self._story.index_of(transition.target))
        else:
            self._restore_role_preset()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def handle_chat_changed(
        self,
        chat_id: str | None,
        group_selected: bool,
        *,
        force: bool = False,
    ) -> StateSource | None:
        """React to the host switching chats. Returns the state source, or None if unchanged."""
        if self._disposed:
            return None
        same = chat_id == self._persistence.chat_id and bool(group_selected) == self._persistence.group_selected
        if same and self._persistence.is_hydrated() and not force:
            return None

        self._queue.clear()
        self._history.clear()
        self._persistence.set_chat_context(chat_id, group_selected)
        runtime, source = self._persistence.hydrate()
        self._runtime = runtime
        self._turn = runtime.turns_since_eval
        self._activation += 1
        self._load_checkpoint()

        cp = self.current_checkpoint
        if cp is not None:
            logger.info("chat %s at checkpoint %d (%s) from %s state", chat_id, self.index, cp.name, source)
            self._dispatch_on_activate(cp, run_automations=False)
        self._emit(self.on_activate, self.index)
        return source

    async def wait_idle(self) -> None:
        """Wait until queued evaluations and scheduled side effects are done."""
        while self._queue.busy or self._queue.pending or self._runner.pending:
            await self._queue.wait_idle()
            await self._runner.wait()

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._queue.dispose()
        self._runner.cancel_all()
        self._persistence.dispose()
        self._history.clear()
        self.on_evaluated = None
        self.on_activate = None
        self.on_turn_tick = None
        logger.info("orchestrator for %r disposed", self._story.title)

    def _emit(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.warning("story observer %s failed", getattr(callback, "__name__", callback), exc_info=True)
