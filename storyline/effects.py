"""Side-effect collaborators.

The orchestrator never waits on the host. Author's notes, world-info toggles
and automation commands are dispatched through an `EffectRunner`, which calls
the collaborator, schedules any returned awaitable as a task and logs every
failure. Nothing raised by a collaborator reaches the state machine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from storyline.story import AuthorsNote

logger = logging.getLogger(__name__)


class StoryEffects(Protocol):
    """Host hooks. Each method may be sync or async."""

    def apply_authors_note(self, target: str, note: AuthorsNote) -> Any: ...

    def clear_authors_note(self) -> Any: ...

    def toggle_world_info(
        self,
        activate: Sequence[str],
        deactivate: Sequence[str],
        make_constant: Sequence[str],
    ) -> Any: ...

    def run_automation(self, command_id: str) -> Any: ...


class LoggingEffects:
    """Default collaborator for headless sessions: logs what would happen."""

    def apply_authors_note(self, target: str, note: AuthorsNote) -> None:
        logger.info("authors note for %s: %r (position=%s depth=%d)",
                    target, note.text[:80], note.position, note.depth)

    def clear_authors_note(self) -> None:
        logger.info("authors note cleared")

    def toggle_world_info(
        self,
        activate: Sequence[str],
        deactivate: Sequence[str],
        make_constant: Sequence[str],
    ) -> None:
        logger.info("world info: activate=%s deactivate=%s constant=%s",
                    list(activate), list(deactivate), list(make_constant))

    def run_automation(self, command_id: str) -> None:
        logger.info("automation: %s", command_id)


class EffectRunner:
    """Fire-and-forget dispatch with logged failures.

    Scheduled tasks are tracked until they finish so they are not garbage
    collected mid-flight, and so `wait()` can drain them.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, label: str, fn: Callable[..., Any], *args: Any) -> asyncio.Task | None:
        try:
            result = fn(*args)
        except Exception:
            logger.warning("Side effect %s failed", label, exc_info=True)
            return None
        if inspect.isawaitable(result):
            return self._schedule(label, result)
        return None

    def spawn_sequence(self, label: str, calls: Sequence[tuple[Callable[..., Any], tuple]]) -> asyncio.Task | None:
        """Run calls one after another in a single task.

        A failing step is logged and the remaining steps still run.
        """
        if not calls:
            return None

        async def _run() -> None:
            for fn, args in calls:
                try:
                    result = fn(*args)
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.warning("Side effect %s step %s%r failed",
                                   label, getattr(fn, "__name__", fn), args, exc_info=True)

        return self._schedule(label, _run())

    def _schedule(self, label: str, awaitable: Awaitable[Any]) -> asyncio.Task | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Side effect %s skipped: no running event loop", label)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return None

        task = loop.create_task(_await(awaitable), name=f"effect:{label}")
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("Side effect %s failed: %s", label, exc, exc_info=exc)

        task.add_done_callback(_done)
        return task

    async def wait(self) -> None:
        while self._tasks:
            await asyncio.wait(set(self._tasks))

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable
