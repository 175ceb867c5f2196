"""Per-agent conversation threads.

The cycle writes the commands it sends and a placeholder for each agent
answer so an observer can follow the exchange.  The thread's session id is
what lets a later step resume the agent instead of loading it again.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

__all__ = ["ChatMessage", "ChatThread", "ConversationLog", "InMemoryConversationLog"]


_MESSAGE_IDS = itertools.count(1)


def new_message_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{next(_MESSAGE_IDS)}"


@dataclass
class ChatMessage:
    id: str
    role: str  # "user" or "assistant"
    content: str = ""
    status: str = "complete"  # "pending", "complete" or "error"
    timestamp: float = field(default_factory=time.time)


@dataclass
class ChatThread:
    agent_id: str
    messages: List[ChatMessage] = field(default_factory=list)
    session_id: Optional[str] = None
    story_id: Optional[str] = None
    branch_name: Optional[str] = None
    is_typing: bool = False


class ConversationLog(Protocol):
    def add_message(self, agent_id: str, message: ChatMessage) -> None: ...

    def update_message(
        self,
        agent_id: str,
        message_id: str,
        *,
        content: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None: ...

    def clear(self, agent_id: str) -> None: ...

    def session_id(self, agent_id: str) -> Optional[str]: ...

    def set_session_id(self, agent_id: str, session_id: Optional[str]) -> None: ...

    def set_context(self, agent_id: str, story_id: str, branch_name: str) -> None: ...

    def set_typing(self, agent_id: str, typing: bool) -> None: ...


class InMemoryConversationLog:
    """:class:`ConversationLog` kept in process memory."""

    def __init__(self) -> None:
        self._threads: Dict[str, ChatThread] = {}

    def thread(self, agent_id: str) -> ChatThread:
        thread = self._threads.get(agent_id)
        if thread is None:
            thread = ChatThread(agent_id)
            self._threads[agent_id] = thread
        return thread

    def add_message(self, agent_id: str, message: ChatMessage) -> None:
        self.thread(agent_id).messages.append(message)

    def update_message(
        self,
        agent_id: str,
        message_id: str,
        *,
        content: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        for message in self.thread(agent_id).messages:
            if message.id == message_id:
                if content is not None:
                    message.content = content
                if status is not None:
                    message.status = status
                return

    def clear(self, agent_id: str) -> None:
        # A cleared thread also forgets its session so the agent is loaded afresh.
        self._threads[agent_id] = ChatThread(agent_id)

    def session_id(self, agent_id: str) -> Optional[str]:
        thread = self._threads.get(agent_id)
        return thread.session_id if thread else None

    def set_session_id(self, agent_id: str, session_id: Optional[str]) -> None:
        self.thread(agent_id).session_id = session_id

    def set_context(self, agent_id: str, story_id: str, branch_name: str) -> None:
        thread = self.thread(agent_id)
        thread.story_id = story_id
        thread.branch_name = branch_name

    def set_typing(self, agent_id: str, typing: bool) -> None:
        self.thread(agent_id).is_typing = typing
