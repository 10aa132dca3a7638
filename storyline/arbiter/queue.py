"""Serialized evaluation queue.

Requests are judged strictly one at a time in FIFO order by a drain task on
the running event loop. Every failure on the way to a verdict (prompt
rendering, the LLM call, an unparseable reply) degrades to a "continue"
outcome; nothing raised by the oracle escapes the queue.

A decisive outcome (win or fail) drops the queued requests made for the same
checkpoint activation: the story is about to leave that checkpoint. Their
futures are cancelled. Requests from a later activation are kept.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Sequence
from typing import Any

from pydantic import BaseModel

from storyline.arbiter.parsing import ArbiterVerdict, EvaluationOutcome, parse_verdict, resolve_outcome
from storyline.arbiter.prompt import EvaluationRequest, build_arbiter_prompt
from storyline.config import EngineSettings
from storyline.llm import LLM
from storyline.models import ChatMessage

logger = logging.getLogger(__name__)

ARBITER_STAGE = "arbiter"
LOG_SAMPLE_LENGTH = 200


class ArbiterDisposedError(RuntimeError):
    """Raised when work is submitted to a disposed queue."""


class ArbiterPayload(BaseModel):
    request: EvaluationRequest
    raw: str = ""
    verdict: ArbiterVerdict | None = None
    outcome: EvaluationOutcome = "continue"
    next_transition_id: str | None = None
    error: str | None = None


class _Job:
    __slots__ = ("request", "future")

    def __init__(self, request: EvaluationRequest, future: asyncio.Future) -> None:
        self.request = request
        self.future = future


class ArbiterQueue:
    """FIFO arbiter client with at most one evaluation in flight.

    Args:
        llm:          Completion callable used as the oracle.
        history:      Returns the conversation so far, oldest first.
        on_evaluated: Observer called with every payload, in order.
        before_call:  Called with the request right before the oracle call.
        settings:     Prompt header, snapshot limit and response length.
    """

    def __init__(
        self,
        llm: LLM,
        *,
        history: Callable[[], Sequence[ChatMessage]] | None = None,
        on_evaluated: Callable[[ArbiterPayload], Any] | None = None,
        before_call: Callable[[EvaluationRequest], Any] | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        self._llm = llm
        self._history = history
        self._on_evaluated = on_evaluated
        self._before_call = before_call
        self._settings = settings or EngineSettings()
        self._queue: deque[_Job] = deque()
        self._task: asyncio.Task | None = None
        self._current: _Job | None = None
        self._busy = False
        self._disposed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def update_settings(self, settings: EngineSettings) -> None:
        self._settings = settings

    def set_observer(self, on_evaluated: Callable[[ArbiterPayload], Any] | None) -> None:
        self._on_evaluated = on_evaluated

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def evaluate(self, request: EvaluationRequest) -> asyncio.Future[ArbiterPayload]:
        """Queue a judgment. The returned future resolves with its payload."""
        if self._disposed:
            raise ArbiterDisposedError("arbiter queue disposed")
        loop = asyncio.get_running_loop()
        job = _Job(request, loop.create_future())
        self._queue.append(job)
        logger.info(
            "evaluation queued reason=%s checkpoint=%s turn=%d pending=%d",
            request.reason, request.checkpoint_key, request.turn, len(self._queue),
        )
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain(), name="arbiter-drain")
        return job.future

    def clear(self) -> int:
        """Drop every queued request. The in-flight one, if any, still completes."""
        dropped = 0
        while self._queue:
            job = self._queue.popleft()
            if not job.future.done():
                job.future.cancel()
            dropped += 1
        if dropped:
            logger.info("evaluation queue cleared (%d dropped)", dropped)
        return dropped

    async def wait_idle(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    def dispose(self) -> None:
        self._disposed = True
        self.clear()
        if self._current is not None and not self._current.future.done():
            self._current.future.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._on_evaluated = None
        self._before_call = None

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        while self._queue and not self._disposed:
            job = self._queue.popleft()
            if job.future.done():
                continue

            self._busy = True
            self._current = job
            try:
                payload = await self._judge(job.request)
            finally:
                self._busy = False
                self._current = None

            if self._disposed:
                job.future.cancel()
                return
            if not job.future.done():
                job.future.set_result(payload)
            self._notify(payload)
            if payload.outcome != "continue":
                self._flush_activation(job.request)

    def _flush_activation(self, request: EvaluationRequest) -> None:
        """Cancel queued requests made during the same checkpoint activation."""
        kept: deque[_Job] = deque()
        dropped = 0
        for queued in self._queue:
            same = (
                queued.request.checkpoint_key == request.checkpoint_key
                and queued.request.activation == request.activation
            )
            if same:
                if not queued.future.done():
                    queued.future.cancel()
                dropped += 1
            else:
                kept.append(queued)
        self._queue = kept
        if dropped:
            logger.info("evaluation queue flushed for checkpoint %s (%d dropped)", request.checkpoint_key, dropped)

    def _notify(self, payload: ArbiterPayload) -> None:
        if self._on_evaluated is None:
            return
        try:
            self._on_evaluated(payload)
        except Exception:
            logger.warning("evaluation observer failed", exc_info=True)

    async def _judge(self, request: EvaluationRequest) -> ArbiterPayload:
        if self._before_call is not None:
            try:
                self._before_call(request)
            except Exception:
                logger.warning("pre-evaluation hook failed", exc_info=True)

        try:
            history = list(self._history()) if self._history is not None else []
            prompt = build_arbiter_prompt(request, history, self._settings)
        except Exception as e:
            logger.warning("could not build arbiter prompt: %s", e)
            return ArbiterPayload(request=request, error=str(e))

        logger.debug("arbiter prompt reason=%s checkpoint=%s:\n%s",
                     request.reason, request.checkpoint_name, prompt)
        try:
            raw = await self._llm(ARBITER_STAGE, prompt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("arbiter request failed: %s", e)
            return ArbiterPayload(request=request, error=str(e))

        raw = raw.strip() if isinstance(raw, str) else ""
        logger.debug("arbiter raw response: %s", raw[:LOG_SAMPLE_LENGTH])
        verdict = parse_verdict(raw)
        if raw and verdict is None:
            logger.warning("could not parse arbiter response: %r", raw[:LOG_SAMPLE_LENGTH])
        outcome = resolve_outcome(verdict)
        logger.info(
            "evaluation done reason=%s checkpoint=%s outcome=%s next=%s",
            request.reason, request.checkpoint_key, outcome,
            verdict.next_transition_id if verdict else None,
        )
        return ArbiterPayload(
            request=request,
            raw=raw,
            verdict=verdict,
            outcome=outcome,
            next_transition_id=verdict.next_transition_id if verdict else None,
        )
