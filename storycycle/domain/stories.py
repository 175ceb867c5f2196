"""Read-only view of the project's stories.

Stories are tracked in ``sprint-status.yaml`` (``development_status`` maps a
story key such as ``1-2-user-login`` to its status) with one markdown file per
story in the same directory.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import yaml

from storycycle.logging import get_logger

__all__ = ["IN_PROGRESS_STATUSES", "SPRINT_STATUS_FILENAME", "Story", "StoryCatalog"]


logger = get_logger(__name__)

SPRINT_STATUS_FILENAME = "sprint-status.yaml"
IN_PROGRESS_STATUSES = frozenset({"in-progress", "review", "human-review"})

_STORY_KEY = re.compile(r"^(?P<epic>\d+)-(?P<number>\d+)-(?P<slug>.+)$")
_TITLE_LINE = re.compile(r"^#\s+(?:Story\s+[\d.]+:\s*)?(?P<title>.+?)\s*$")


@dataclass(frozen=True)
class Story:
    id: str
    title: str = ""
    status: str = "backlog"
    file_path: Optional[Path] = None
    epic_id: Optional[int] = None

    @property
    def display_title(self) -> str:
        return self.title or self.id

    @property
    def has_file(self) -> bool:
        return self.file_path is not None and self.file_path.exists()

    @property
    def is_in_progress(self) -> bool:
        return self.status in IN_PROGRESS_STATUSES


def _read_title(path: Path) -> str:
    try:
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                match = _TITLE_LINE.match(line.strip())
                if match:
                    return match.group("title")
    except OSError as exc:
        logger.warning("Unable to read story file %s: %s", path, exc)
    return ""


class StoryCatalog:
    """Stories discovered from a sprint-status file, in file order."""

    def __init__(self, stories: Iterable[Story], stories_dir: Optional[Path] = None) -> None:
        self._stories: Dict[str, Story] = {story.id: story for story in stories}
        self.stories_dir = stories_dir

    @classmethod
    def load(cls, stories_dir: Union[str, Path]) -> "StoryCatalog":
        directory = Path(stories_dir)
        status_path = directory / SPRINT_STATUS_FILENAME
        if not status_path.exists():
            logger.debug("No sprint status file at %s", status_path)
            return cls([], directory)

        with status_path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
        development: Mapping[str, Any] = {}
        if isinstance(payload, Mapping) and isinstance(payload.get("development_status"), Mapping):
            development = payload["development_status"]

        stories: List[Story] = []
        for key, raw_status in development.items():
            match = _STORY_KEY.match(str(key))
            if not match:
                continue  # epic-N and epic-N-retrospective entries
            story_file = directory / f"{key}.md"
            stories.append(
                Story(
                    id=str(key),
                    title=_read_title(story_file) if story_file.exists() else "",
                    status=str(raw_status or "backlog").strip().lower(),
                    file_path=story_file if story_file.exists() else None,
                    epic_id=int(match.group("epic")),
                )
            )
        return cls(stories, directory)

    def __iter__(self):
        return iter(self._stories.values())

    def __len__(self) -> int:
        return len(self._stories)

    def get(self, story_id: str) -> Optional[Story]:
        story = self._stories.get(story_id)
        if story is None:
            return None
        if story.file_path is None and self.stories_dir is not None:
            candidate = self.stories_dir / f"{story_id}.md"
            if candidate.exists():
                # The create-story step writes the file after the catalog loaded.
                return Story(story.id, _read_title(candidate), story.status, candidate, story.epic_id)
        return story

    def resolve(self, story_id: str) -> Story:
        """Return the catalogued story, or a bare record for unknown ids."""

        story = self.get(story_id)
        if story is not None:
            return story
        match = _STORY_KEY.match(story_id)
        file_path = None
        if self.stories_dir is not None and (self.stories_dir / f"{story_id}.md").exists():
            file_path = self.stories_dir / f"{story_id}.md"
        return Story(
            id=story_id,
            file_path=file_path,
            epic_id=int(match.group("epic")) if match else None,
        )

    def eligible_for_epic(self, epic_id: int) -> List[Story]:
        """Stories of ``epic_id`` that are not done, in sprint-status order."""

        return [story for story in self if story.epic_id == epic_id and story.status != "done"]
