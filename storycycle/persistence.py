"""Persist cycle and queue snapshots for observers outside the process."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from storycycle.domain.cycle_state import (
    CycleStateStore,
    EpicQueueState,
    SingleCycleState,
    StateChange,
)
from storycycle.domain.steps import StepStatus
from storycycle.logging import get_logger

__all__ = [
    "CYCLE_SNAPSHOT",
    "EPIC_SNAPSHOT",
    "HISTORY_FILE",
    "StateSnapshotWriter",
    "read_history",
    "read_snapshot",
]


logger = get_logger(__name__)

CYCLE_SNAPSHOT = "cycle.json"
EPIC_SNAPSHOT = "epic.json"
HISTORY_FILE = "history.jsonl"

_FINAL_STATUSES = (StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.ERROR)


class StateSnapshotWriter:
    """Mirror the state store into ``cycle.json``, ``epic.json`` and ``history.jsonl``.

    Snapshots are rewritten on every change.  The history file gets one line
    per step that reached a final status, plus one per queue halt or
    completion.
    """

    def __init__(self, state_dir: Union[str, Path]) -> None:
        self.state_dir = Path(state_dir)
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, store: CycleStateStore) -> "StateSnapshotWriter":
        self.detach()
        self._unsubscribe = store.subscribe(self.apply)
        self._write_snapshot(CYCLE_SNAPSHOT, store.single.to_dict())
        self._write_snapshot(EPIC_SNAPSHOT, store.epic.to_dict())
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def apply(self, change: StateChange) -> None:
        """Write the snapshot for ``change`` and append any history entries."""

        try:
            if change.kind == "single":
                self._write_snapshot(CYCLE_SNAPSHOT, change.current.to_dict())
                entries = _step_history(change.previous, change.current)
            else:
                self._write_snapshot(EPIC_SNAPSHOT, change.current.to_dict())
                entries = _epic_history(change.previous, change.current)
            for entry in entries:
                self._append_history(entry)
        except OSError as exc:
            logger.warning("Unable to write state snapshot to %s: %s", self.state_dir, exc)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _write_snapshot(self, name: str, payload: Dict[str, Any]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        target = self.state_dir / name
        scratch = target.with_suffix(target.suffix + ".tmp")
        scratch.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        scratch.replace(target)

    def _append_history(self, entry: Dict[str, Any]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with (self.state_dir / HISTORY_FILE).open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, sort_keys=True))
            handle.write("\n")


def _step_history(previous: SingleCycleState, current: SingleCycleState) -> List[Dict[str, Any]]:
    if previous.story_id != current.story_id or len(previous.step_statuses) != len(
        current.step_statuses
    ):
        return []
    entries = []
    for index, status in enumerate(current.step_statuses):
        if status is previous.step_statuses[index] or status not in _FINAL_STATUSES:
            continue
        entries.append(
            {
                "timestamp": time.time(),
                "event": "step",
                "story_id": current.story_id,
                "step_index": index,
                "step_name": current.step_name,
                "status": status.value,
                "error": current.error if status is StepStatus.ERROR else None,
                "error_kind": (
                    current.error_kind.value
                    if status is StepStatus.ERROR and current.error_kind
                    else None
                ),
            }
        )
    return entries


def _epic_history(previous: EpicQueueState, current: EpicQueueState) -> List[Dict[str, Any]]:
    if not previous.is_running or current.is_running:
        return []
    return [
        {
            "timestamp": time.time(),
            "event": "epic",
            "epic_id": current.epic_id,
            "phase": current.phase.value,
            "error": current.error,
            "completed_stories": current.current_story_index,
            "total_stories": len(current.story_queue),
        }
    ]


def read_snapshot(state_dir: Union[str, Path], name: str) -> Optional[Dict[str, Any]]:
    path = Path(state_dir) / name
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Unable to read %s: %s", path, exc)
        return None
    return payload if isinstance(payload, dict) else None


def read_history(state_dir: Union[str, Path], limit: Optional[int] = None) -> List[Dict[str, Any]]:
    path = Path(state_dir) / HISTORY_FILE
    if not path.exists():
        return []
    entries: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if isinstance(entry, dict):
                entries.append(entry)
    if limit is not None and limit >= 0:
        return entries[-limit:] if limit else []
    return entries
