"""Run a queue of stories through the single-story cycle."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence, Union

from storycycle.domain.cycle_state import (
    CycleStateStore,
    EpicQueueState,
    EpicStoryStatus,
    StateChange,
)
from storycycle.domain.stories import StoryCatalog
from storycycle.errors import CycleAlreadyRunning, NothingToRetry, StorycycleError
from storycycle.logging import get_logger
from storycycle.orchestration.single_cycle import SingleCycleOrchestrator

__all__ = ["EpicQueueOrchestrator", "eligible_stories"]


logger = get_logger(__name__)


def eligible_stories(catalog: StoryCatalog, epic_id: int) -> List[str]:
    """Ids of the epic's stories that are not done, in sprint-status order."""

    return [story.id for story in catalog.eligible_for_epic(epic_id)]


class EpicQueueOrchestrator:
    """Advance through ``story_queue`` one single-cycle run at a time.

    The queue reacts to the single cycle's running -> stopped transition
    published by the store.  A failed story halts the queue until
    :meth:`retry`; a finished story advances the queue after
    ``settle_delay`` seconds.
    """

    def __init__(
        self,
        store: CycleStateStore,
        cycle: SingleCycleOrchestrator,
        *,
        settle_delay: float = 0.5,
    ) -> None:
        self.store = store
        self.cycle = cycle
        self.settle_delay = settle_delay
        self._started_story: Optional[str] = None
        self._advance_task: Optional[asyncio.Task] = None
        self._finished: Optional[asyncio.Event] = None
        self._unsubscribe = store.subscribe(self._on_change)

    @property
    def state(self) -> EpicQueueState:
        return self.store.epic

    def close(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def start_epic_cycle(self, epic_id: Union[int, str], story_ids: Sequence[str]) -> None:
        if self.store.epic.is_running or self.cycle.is_running:
            raise CycleAlreadyRunning("A cycle is already running.")
        queue = [str(story_id) for story_id in story_ids]
        if not queue:
            raise ValueError(f"Epic {epic_id} has no stories to run.")

        self._finished = asyncio.Event()
        self._started_story = None
        self.store.start_epic(epic_id, queue)
        logger.info(
            "Starting epic %s with %d stories",
            epic_id,
            len(queue),
            extra={"metadata": {"epic": epic_id, "stories": queue}},
        )
        self._start_current()

    def cancel(self) -> bool:
        if not self.store.epic.is_running:
            return False
        self._cancel_pending_advance()
        self.store.fail_epic("cancelled")
        self._started_story = None
        self.cycle.cancel()
        self._signal_finished()
        logger.info("Epic %s cancelled", self.store.epic.epic_id)
        return True

    def retry(self) -> None:
        """Reset the failed story to pending and run it again."""

        epic = self.store.epic
        if epic.is_running or self.cycle.is_running:
            raise CycleAlreadyRunning("The epic queue is still running.")
        story_id = epic.current_story
        if not epic.error or story_id is None:
            raise NothingToRetry("The epic queue has not halted on a story.")

        self._finished = asyncio.Event()
        self.store.retry_epic()
        self._started_story = story_id
        self.store.mark_story(epic.current_story_index, EpicStoryStatus.RUNNING)

        single = self.store.single
        logger.info("Retrying story %s of epic %s", story_id, epic.epic_id)
        try:
            if single.story_id == story_id and single.first_incomplete_step() is not None:
                self.cycle.retry()
            else:
                self.cycle.start(story_id)
        except StorycycleError as exc:
            self._halt(f"Story failed: {exc}")
            raise

    def reset(self) -> None:
        """Return to the setup phase after a completed or halted queue."""

        if self.store.epic.is_running:
            raise CycleAlreadyRunning("Cannot reset a running epic queue.")
        self._cancel_pending_advance()
        self._started_story = None
        self.store.reset_epic()

    async def wait(self) -> EpicQueueState:
        if self._finished is not None:
            await self._finished.wait()
        return self.store.epic

    # ------------------------------------------------------------------
    # Queue mechanics
    # ------------------------------------------------------------------
    def _start_current(self) -> None:
        epic = self.store.epic
        story_id = epic.current_story
        if story_id is None or self._started_story == story_id:
            return
        self._started_story = story_id
        self.store.mark_story(epic.current_story_index, EpicStoryStatus.RUNNING)
        logger.info(
            "Epic %s: story %d/%d %s",
            epic.epic_id,
            epic.current_story_index + 1,
            len(epic.story_queue),
            story_id,
        )
        try:
            self.cycle.start(story_id)
        except StorycycleError as exc:
            self._halt(f"Story failed: {exc}")

    def _on_change(self, change: StateChange) -> None:
        if change.kind != "single":
            return
        previous, current = change.previous, change.current
        if not (previous.is_running and not current.is_running):
            return
        epic = self.store.epic
        if not epic.is_running or current.story_id != epic.current_story:
            return

        self._started_story = None
        if current.error:
            self._halt(f"Story failed: {current.error}")
            return

        self.store.advance_story()
        self._advance_task = asyncio.get_running_loop().create_task(self._advance_later())

    async def _advance_later(self) -> None:
        # Let the finished run tear down before the next story starts.
        await self.cycle.wait()
        await asyncio.sleep(self.settle_delay)
        epic = self.store.epic
        if not epic.is_running:
            return
        if epic.current_story is None:
            logger.info("Epic %s complete", epic.epic_id)
            self.store.complete_epic()
            self._signal_finished()
            return
        self._start_current()

    def _halt(self, message: str) -> None:
        logger.warning("Epic %s halted: %s", self.store.epic.epic_id, message)
        self.store.fail_epic(message)
        self._signal_finished()

    def _cancel_pending_advance(self) -> None:
        if self._advance_task is not None and not self._advance_task.done():
            self._advance_task.cancel()
        self._advance_task = None

    def _signal_finished(self) -> None:
        if self._finished is not None:
            self._finished.set()
