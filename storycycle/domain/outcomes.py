"""Step outcomes and the failure taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from storycycle.domain.steps import StepStatus

__all__ = ["ErrorKind", "StepOutcome"]


class ErrorKind(str, Enum):
    LOAD_FAILURE = "load-failure"
    SEND_FAILURE = "send-failure"
    CANCELLED = "cancelled"
    NON_ZERO_EXIT = "non-zero-exit"
    MERGE_CONFLICT = "merge-conflict"
    GIT_FAILURE = "git-failure"
    STATUS_FAILURE = "status-failure"
    STALE_RUN = "stale-run"
    TIMEOUT = "timeout"
    AUTO_REPLY_LIMIT = "auto-reply-limit"
    INTERNAL = "internal"


@dataclass(frozen=True)
class StepOutcome:
    """Result of executing one step.

    ``status`` is one of the terminal step statuses.  ``message`` carries the
    human readable reason for skips and errors.
    """

    status: StepStatus
    message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def completed(cls, message: Optional[str] = None) -> "StepOutcome":
        return cls(StepStatus.COMPLETED, message)

    @classmethod
    def skipped(cls, message: Optional[str] = None) -> "StepOutcome":
        return cls(StepStatus.SKIPPED, message)

    @classmethod
    def failed(cls, kind: ErrorKind, message: str) -> "StepOutcome":
        return cls(StepStatus.ERROR, message, kind)

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.ERROR

    @property
    def is_stale(self) -> bool:
        return self.error_kind is ErrorKind.STALE_RUN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "message": self.message,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }
