"""Collaborators the cycle talks to: git, the agent CLI, story status and chat threads."""

from storycycle.integrations.agent_channel import (
    AgentChannel,
    AgentExit,
    AgentLoaded,
    AgentOutput,
    ChannelResult,
    ClaudeAgentChannel,
)
from storycycle.integrations.conversation import (
    ChatMessage,
    ChatThread,
    ConversationLog,
    InMemoryConversationLog,
)
from storycycle.integrations.git import GitClient, GitCollaborator, GitResult
from storycycle.integrations.story_status import (
    SprintStatusUpdater,
    StatusResult,
    StoryStatusUpdater,
)

__all__ = [
    "AgentChannel",
    "AgentExit",
    "AgentLoaded",
    "AgentOutput",
    "ChannelResult",
    "ChatMessage",
    "ChatThread",
    "ClaudeAgentChannel",
    "ConversationLog",
    "GitClient",
    "GitCollaborator",
    "GitResult",
    "InMemoryConversationLog",
    "SprintStatusUpdater",
    "StatusResult",
    "StoryStatusUpdater",
]
