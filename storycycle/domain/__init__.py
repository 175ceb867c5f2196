"""Domain records for the story cycle engine."""

from __future__ import annotations

from storycycle.domain.cycle_state import (
    CycleStateStore,
    EpicPhase,
    EpicQueueState,
    EpicStoryStatus,
    SingleCycleState,
)
from storycycle.domain.outcomes import ErrorKind, StepOutcome
from storycycle.domain.steps import (
    GitAction,
    Step,
    StepStatus,
    StepType,
    build_steps,
    transform_command,
)
from storycycle.domain.stories import Story, StoryCatalog

__all__ = [
    "CycleStateStore",
    "EpicPhase",
    "EpicQueueState",
    "EpicStoryStatus",
    "ErrorKind",
    "GitAction",
    "SingleCycleState",
    "Step",
    "StepOutcome",
    "StepStatus",
    "StepType",
    "Story",
    "StoryCatalog",
    "build_steps",
    "transform_command",
]
