"""Story status collaborator backed by ``sprint-status.yaml``."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

import yaml

from storycycle.domain.stories import SPRINT_STATUS_FILENAME
from storycycle.logging import get_logger, log_action

__all__ = ["SprintStatusUpdater", "StatusResult", "StoryStatusUpdater"]


logger = get_logger(__name__)

PathLike = Union[str, Path]


@dataclass(frozen=True)
class StatusResult:
    success: bool
    error: Optional[str] = None


class StoryStatusUpdater(Protocol):
    async def update_story_status(self, file_path: PathLike, new_status: str) -> StatusResult: ...


class SprintStatusUpdater:
    """Write ``development_status[<story key>]`` next to the story file.

    The story key is the story file name without ``.md``; the status file is
    the ``sprint-status.yaml`` in the same directory.
    """

    @log_action("update-story-status", success_level=logging.DEBUG, start_level=logging.DEBUG)
    async def update_story_status(self, file_path: PathLike, new_status: str) -> StatusResult:
        return await asyncio.to_thread(self._update, Path(file_path), new_status)

    def _update(self, story_path: Path, new_status: str) -> StatusResult:
        story_key = story_path.stem
        status_path = story_path.parent / SPRINT_STATUS_FILENAME
        if not status_path.exists():
            return StatusResult(False, f"{SPRINT_STATUS_FILENAME} not found")

        scratch = status_path.with_suffix(status_path.suffix + ".tmp")
        try:
            with status_path.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle) or {}
            if not isinstance(payload, dict):
                return StatusResult(False, f"{SPRINT_STATUS_FILENAME} is not a mapping")

            development: Dict[str, Any] = payload.get("development_status") or {}
            if not isinstance(development, dict):
                return StatusResult(False, "development_status is not a mapping")
            development[story_key] = new_status
            payload["development_status"] = development

            with scratch.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(
                    payload,
                    handle,
                    sort_keys=False,
                    default_flow_style=False,
                    allow_unicode=True,
                    width=float("inf"),
                )
            scratch.replace(status_path)
        except (OSError, yaml.YAMLError) as exc:
            scratch.unlink(missing_ok=True)
            logger.error("Failed to update story status for %s: %s", story_key, exc)
            return StatusResult(False, str(exc))

        logger.info(
            "Story %s marked %s",
            story_key,
            new_status,
            extra={"metadata": {"story": story_key, "status": new_status}},
        )
        return StatusResult(True)
