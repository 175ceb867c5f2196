"""Fakes shared by the orchestration tests."""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

import yaml

from storycycle.integrations.agent_channel import (
    AgentExit,
    AgentLoaded,
    AgentOutput,
    ChannelResult,
)
from storycycle.integrations.git import GitResult
from storycycle.integrations.story_status import StatusResult

STORIES_DIR = Path("_bmad-output") / "implementation-artifacts"

ISSUE_PROMPT = (
    "I found 2 failing tests in the login module.\n\n"
    "How would you like to proceed?\n"
    "1. Fix the failing tests automatically\n"
    "2. Skip them and continue\n"
    "3. Stop here\n"
)

DONE_TEXT = (
    "I updated the login form validation, added unit tests for the empty password "
    "and locked account cases, and refreshed the developer notes for the new session "
    "handling. The full test suite runs green locally.\n\n"
    "All acceptance criteria are met and the story is ready for review."
)


def text_frame(text: str) -> str:
    """One stream-json line carrying a text delta."""

    event = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}
    return json.dumps({"type": "stream_event", "event": event}) + "\n"


@dataclass
class Reply:
    text: str = DONE_TEXT
    code: Optional[int] = 0
    cancelled: bool = False
    hang: bool = False


class FakeAgentChannel:
    """Scripted agent channel; every send consumes the next queued :class:`Reply`."""

    def __init__(self, session_id: str = "session-1") -> None:
        self.session_id = session_id
        self.listeners: List[Callable] = []
        self.loads: List[str] = []
        self.sent: List[Tuple[str, str, Optional[str]]] = []
        self.cancelled: List[str] = []
        self.replies: Deque[Reply] = deque()
        self.load_code: Optional[int] = 0
        self.load_output: Optional[str] = None
        self.send_result = ChannelResult(True)
        self.hanging: Set[str] = set()

    def queue(self, *replies: Reply) -> None:
        self.replies.extend(replies)

    def subscribe(self, listener):
        self.listeners.append(listener)

        def unsubscribe():
            if listener in self.listeners:
                self.listeners.remove(listener)

        return unsubscribe

    def emit(self, event) -> None:
        for listener in list(self.listeners):
            listener(event)

    async def load_agent(self, agent_id, project_path, profile, command=None):
        self.loads.append(agent_id)
        loop = asyncio.get_running_loop()
        if self.load_output:
            loop.call_soon(
                self.emit, AgentOutput(agent_id, text_frame(self.load_output), is_load_phase=True)
            )
        session = self.session_id if self.load_code == 0 else None
        loop.call_soon(self.emit, AgentLoaded(agent_id, self.load_code, session_id=session))
        return ChannelResult(True)

    async def send_message(self, agent_id, project_path, message, session_id=None):
        self.sent.append((agent_id, message, session_id))
        if not self.send_result.success:
            return self.send_result
        reply = self.replies.popleft() if self.replies else Reply()
        if reply.hang:
            self.hanging.add(agent_id)
            return ChannelResult(True)
        loop = asyncio.get_running_loop()
        loop.call_soon(self.emit, AgentOutput(agent_id, '{"type": "system", "subtype": "init"}\n'))
        if reply.text:
            loop.call_soon(self.emit, AgentOutput(agent_id, text_frame(reply.text)))
        loop.call_soon(
            self.emit,
            AgentExit(agent_id, reply.code, session_id=self.session_id, cancelled=reply.cancelled),
        )
        return ChannelResult(True)

    def cancel_message(self, agent_id) -> bool:
        self.cancelled.append(agent_id)
        if agent_id not in self.hanging:
            return False
        self.hanging.discard(agent_id)
        asyncio.get_running_loop().call_soon(
            self.emit, AgentExit(agent_id, None, signal="SIGTERM", cancelled=True)
        )
        return True

    def sent_messages(self, agent_id: Optional[str] = None) -> List[str]:
        return [message for agent, message, _ in self.sent if agent_id in (None, agent)]

    async def aclose(self) -> None:
        self.listeners.clear()


class FakeGit:
    """In-memory git collaborator recording every call."""

    def __init__(self) -> None:
        self.calls: List[Tuple] = []
        self.branches: Set[str] = {"main"}
        self.current = "main"
        self.dirty = False
        self.commits: List[str] = []
        self.commit_error: Optional[str] = None
        self.checkout_error: Optional[str] = None
        self.create_error: Optional[str] = None
        self.conflicts: Set[str] = set()
        self.merge_error: Optional[str] = None
        self.merged: List[str] = []
        self.hook: Optional[Callable[[str], None]] = None

    def _record(self, *call) -> None:
        self.calls.append(call)
        if self.hook is not None:
            self.hook(call[0])

    async def branch_exists(self, path, name):
        self._record("branch_exists", name)
        return name in self.branches

    async def create_branch(self, path, name, from_branch=None):
        self._record("create_branch", name, from_branch)
        if self.create_error:
            return GitResult(False, self.create_error)
        if name in self.branches:
            return GitResult(False, f"Branch '{name}' already exists.", already_exists=True)
        self.branches.add(name)
        self.current = name
        return GitResult(True)

    async def checkout_branch(self, path, name):
        self._record("checkout_branch", name)
        if self.checkout_error:
            return GitResult(False, self.checkout_error)
        if name not in self.branches:
            return GitResult(False, f"Branch '{name}' does not exist.")
        self.current = name
        return GitResult(True)

    async def commit(self, path, message, force_add=False):
        self._record("commit", message)
        if self.commit_error:
            return GitResult(False, self.commit_error)
        if not self.dirty:
            return GitResult(False, "Nothing to commit")
        self.dirty = False
        self.commits.append(message)
        return GitResult(True)

    async def has_changes(self, path):
        self._record("has_changes")
        return self.dirty

    async def merge_branch(self, path, name):
        self._record("merge_branch", name)
        if name in self.conflicts:
            return GitResult(False, "Merge has conflicts - resolve in terminal", has_conflicts=True)
        if self.merge_error:
            return GitResult(False, self.merge_error)
        self.merged.append(name)
        return GitResult(True)

    async def is_branch_merged(self, path, branch, target):
        self._record("is_branch_merged", branch, target)
        return branch in self.merged

    def called(self, name: str) -> List[Tuple]:
        return [call for call in self.calls if call[0] == name]


class FakeStatusUpdater:
    def __init__(self) -> None:
        self.updates: List[Tuple[Path, str]] = []
        self.result = StatusResult(True)

    async def update_story_status(self, file_path, new_status):
        self.updates.append((Path(file_path), new_status))
        return self.result


def write_sprint(project: Path, statuses: Dict[str, str], *, with_files: bool = True) -> Path:
    """Create a sprint-status.yaml (and story files) under ``project``."""

    stories_dir = project / STORIES_DIR
    stories_dir.mkdir(parents=True, exist_ok=True)
    development = {"epic-1": "in-progress"}
    development.update(statuses)
    development["epic-1-retrospective"] = "optional"
    (stories_dir / "sprint-status.yaml").write_text(
        yaml.safe_dump({"project": "demo", "development_status": development}, sort_keys=False),
        encoding="utf-8",
    )
    if with_files:
        for key, status in statuses.items():
            story_file(stories_dir, key, status)
    return stories_dir


def story_file(stories_dir: Path, key: str, status: str = "ready-for-dev") -> Path:
    number = ".".join(key.split("-")[:2])
    title = key.split("-", 2)[2].replace("-", " ").title()
    path = stories_dir / f"{key}.md"
    path.write_text(f"# Story {number}: {title}\n\nStatus: {status}\n", encoding="utf-8")
    return path


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""

    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
