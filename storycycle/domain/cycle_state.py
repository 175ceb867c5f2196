"""Observable state of the single-story cycle and the epic queue.

Only the owning orchestrator mutates these records, through the methods of
:class:`CycleStateStore`.  Observers receive copies, either by reading
:attr:`CycleStateStore.single` / :attr:`CycleStateStore.epic` or by
subscribing to change notifications.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from storycycle.domain.outcomes import ErrorKind
from storycycle.domain.steps import StepStatus
from storycycle.logging import get_logger

__all__ = [
    "CycleStateStore",
    "EpicPhase",
    "EpicQueueState",
    "EpicStoryStatus",
    "SingleCycleState",
    "StateChange",
]


logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SingleCycleState:
    is_running: bool = False
    story_id: Optional[str] = None
    current_step: int = 0
    total_steps: int = 0
    step_name: str = ""
    step_statuses: List[StepStatus] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    failed_step: Optional[int] = None
    logs: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    minimized: bool = False
    start_time: Optional[int] = None
    step_start_time: Optional[int] = None

    def copy(self) -> "SingleCycleState":
        return replace(self, step_statuses=list(self.step_statuses), logs=list(self.logs))

    def first_incomplete_step(self) -> Optional[int]:
        for index, status in enumerate(self.step_statuses):
            if not status.is_done:
                return index
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "story_id": self.story_id,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "step_name": self.step_name,
            "step_statuses": [status.value for status in self.step_statuses],
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "failed_step": self.failed_step,
            "logs": list(self.logs),
            "session_id": self.session_id,
            "minimized": self.minimized,
            "start_time": self.start_time,
            "step_start_time": self.step_start_time,
        }


class EpicStoryStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class EpicPhase(str, Enum):
    SETUP = "setup"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class EpicQueueState:
    is_running: bool = False
    epic_id: Optional[Union[int, str]] = None
    story_queue: List[str] = field(default_factory=list)
    current_story_index: int = 0
    story_statuses: List[EpicStoryStatus] = field(default_factory=list)
    start_time: Optional[int] = None
    error: Optional[str] = None

    @property
    def phase(self) -> EpicPhase:
        if self.is_running:
            return EpicPhase.RUNNING
        if self.error:
            return EpicPhase.ERROR
        if self.story_queue and self.current_story_index >= len(self.story_queue):
            return EpicPhase.COMPLETE
        return EpicPhase.SETUP

    @property
    def current_story(self) -> Optional[str]:
        if 0 <= self.current_story_index < len(self.story_queue):
            return self.story_queue[self.current_story_index]
        return None

    def copy(self) -> "EpicQueueState":
        return replace(
            self,
            story_queue=list(self.story_queue),
            story_statuses=list(self.story_statuses),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "epic_id": self.epic_id,
            "story_queue": list(self.story_queue),
            "current_story_index": self.current_story_index,
            "story_statuses": [status.value for status in self.story_statuses],
            "start_time": self.start_time,
            "error": self.error,
            "phase": self.phase.value,
        }


@dataclass(frozen=True)
class StateChange:
    """Notification delivered to store subscribers."""

    kind: str  # "single" or "epic"
    previous: Union[SingleCycleState, EpicQueueState]
    current: Union[SingleCycleState, EpicQueueState]


Listener = Callable[[StateChange], None]


class CycleStateStore:
    """Single owner of the cycle and queue records."""

    def __init__(self) -> None:
        self._single = SingleCycleState()
        self._epic = EpicQueueState()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def single(self) -> SingleCycleState:
        return self._single.copy()

    @property
    def epic(self) -> EpicQueueState:
        return self._epic.copy()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, kind: str, previous: Any, current: Any) -> None:
        change = StateChange(kind=kind, previous=previous, current=current.copy())
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("State listener %r failed", listener)

    def _mutate_single(self, mutation: Callable[[SingleCycleState], None]) -> None:
        previous = self._single.copy()
        mutation(self._single)
        self._publish("single", previous, self._single)

    def _mutate_epic(self, mutation: Callable[[EpicQueueState], None]) -> None:
        previous = self._epic.copy()
        mutation(self._epic)
        self._publish("epic", previous, self._epic)

    # ------------------------------------------------------------------
    # Single-cycle mutations
    # ------------------------------------------------------------------
    def start_cycle(self, story_id: str, total_steps: int) -> None:
        def mutation(state: SingleCycleState) -> None:
            minimized = state.minimized
            fresh = SingleCycleState(
                is_running=True,
                story_id=story_id,
                total_steps=total_steps,
                step_statuses=[StepStatus.PENDING] * total_steps,
                minimized=minimized,
                start_time=_now_ms(),
            )
            state.__dict__.update(fresh.__dict__)

        self._mutate_single(mutation)

    def begin_step(self, index: int, name: str) -> None:
        def mutation(state: SingleCycleState) -> None:
            state.current_step = index
            state.step_name = name
            state.step_statuses[index] = StepStatus.RUNNING
            state.step_start_time = _now_ms()

        self._mutate_single(mutation)

    def finish_step(self, index: int, status: StepStatus) -> None:
        if not status.is_done:
            raise ValueError(f"finish_step expects completed or skipped, got {status.value}")

        def mutation(state: SingleCycleState) -> None:
            state.step_statuses[index] = status
            state.current_step = index + 1

        self._mutate_single(mutation)

    def fail_cycle(self, index: int, message: str, kind: Optional[ErrorKind]) -> None:
        def mutation(state: SingleCycleState) -> None:
            if 0 <= index < len(state.step_statuses):
                state.step_statuses[index] = StepStatus.ERROR
            state.error = message
            state.error_kind = kind
            state.failed_step = index
            state.is_running = False

        self._mutate_single(mutation)

    def cancel_cycle(self) -> None:
        def mutation(state: SingleCycleState) -> None:
            for index, status in enumerate(state.step_statuses):
                if status is StepStatus.RUNNING:
                    state.step_statuses[index] = StepStatus.ERROR
                    state.failed_step = index
            state.is_running = False
            state.error = "cancelled"
            state.error_kind = ErrorKind.CANCELLED

        self._mutate_single(mutation)

    def complete_cycle(self) -> None:
        def mutation(state: SingleCycleState) -> None:
            state.is_running = False
            state.current_step = state.total_steps
            state.step_name = ""

        self._mutate_single(mutation)

    def prepare_retry(self, resume_index: int) -> None:
        def mutation(state: SingleCycleState) -> None:
            for index in range(resume_index, len(state.step_statuses)):
                state.step_statuses[index] = StepStatus.PENDING
            state.current_step = resume_index
            state.error = None
            state.error_kind = None
            state.failed_step = None
            state.is_running = True

        self._mutate_single(mutation)

    def append_log(self, line: str) -> None:
        self._mutate_single(lambda state: state.logs.append(line))

    def set_session_id(self, session_id: Optional[str]) -> None:
        def mutation(state: SingleCycleState) -> None:
            state.session_id = session_id

        self._mutate_single(mutation)

    def set_minimized(self, minimized: bool) -> None:
        def mutation(state: SingleCycleState) -> None:
            state.minimized = minimized

        self._mutate_single(mutation)

    # ------------------------------------------------------------------
    # Epic queue mutations
    # ------------------------------------------------------------------
    def start_epic(self, epic_id: Union[int, str], story_ids: Sequence[str]) -> None:
        def mutation(state: EpicQueueState) -> None:
            fresh = EpicQueueState(
                is_running=True,
                epic_id=epic_id,
                story_queue=list(story_ids),
                current_story_index=0,
                story_statuses=[EpicStoryStatus.PENDING] * len(story_ids),
                start_time=_now_ms(),
            )
            state.__dict__.update(fresh.__dict__)

        self._mutate_epic(mutation)

    def mark_story(self, index: int, status: EpicStoryStatus) -> None:
        def mutation(state: EpicQueueState) -> None:
            state.story_statuses[index] = status

        self._mutate_epic(mutation)

    def advance_story(self) -> None:
        def mutation(state: EpicQueueState) -> None:
            state.story_statuses[state.current_story_index] = EpicStoryStatus.COMPLETED
            state.current_story_index += 1

        self._mutate_epic(mutation)

    def fail_epic(self, message: str) -> None:
        def mutation(state: EpicQueueState) -> None:
            if state.current_story is not None:
                state.story_statuses[state.current_story_index] = EpicStoryStatus.ERROR
            state.error = message
            state.is_running = False

        self._mutate_epic(mutation)

    def complete_epic(self) -> None:
        def mutation(state: EpicQueueState) -> None:
            state.is_running = False

        self._mutate_epic(mutation)

    def retry_epic(self) -> None:
        def mutation(state: EpicQueueState) -> None:
            if state.current_story is not None:
                state.story_statuses[state.current_story_index] = EpicStoryStatus.PENDING
            state.error = None
            state.is_running = True

        self._mutate_epic(mutation)

    def reset_epic(self) -> None:
        def mutation(state: EpicQueueState) -> None:
            state.__dict__.update(EpicQueueState().__dict__)

        self._mutate_epic(mutation)
