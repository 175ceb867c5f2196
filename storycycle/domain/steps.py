"""Step plan for the single-story cycle.

The plan is a pure function of the project profile and the number of review
rounds.  Retries index into the plan, so the same inputs must always produce
the same list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

__all__ = [
    "AGENT_PROFILES",
    "GitAction",
    "Step",
    "StepStatus",
    "StepType",
    "build_steps",
    "transform_command",
]


class StepType(str, Enum):
    GIT = "git"
    AGENT = "agent"
    STATUS = "status"


class GitAction(str, Enum):
    CREATE_BRANCH = "create-branch"
    COMMIT = "commit"
    MERGE = "merge"


class StepStatus(str, Enum):
    """Per-step progress marker.

    A step only moves ``pending -> running -> completed | skipped | error``.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"

    @property
    def is_done(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.SKIPPED)


@dataclass(frozen=True)
class Step:
    """One unit of the pipeline."""

    id: str
    name: str
    type: StepType
    description: str = ""
    agent_id: Optional[str] = None
    command: Optional[str] = None
    git_action: Optional[GitAction] = None
    commit_message: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "description": self.description,
        }
        if self.type is StepType.AGENT:
            payload["agent_id"] = self.agent_id
            payload["command"] = self.command
        if self.type is StepType.GIT:
            payload["git_action"] = self.git_action.value if self.git_action else None
            if self.commit_message:
                payload["commit_message"] = self.commit_message
        return payload


@dataclass(frozen=True)
class _Profile:
    module: str
    sm_agent: str
    dev_agent: str
    sm_label: str
    dev_label: str


AGENT_PROFILES = {
    "bmm": _Profile("bmm", "sm", "dev", "SM", "DEV"),
    "bmgd": _Profile("bmgd", "game-scrum-master", "game-dev", "Game Scrum Master", "Game DEV"),
}


def _workflow_command(module: str, name: str) -> str:
    return f"/bmad-{module}-{name}"


def build_steps(profile: str, review_rounds: int) -> List[Step]:
    """Return the ordered step plan for ``profile`` with ``review_rounds`` reviews.

    The plan always has ``8 + 2 * review_rounds`` entries: five setup and
    implementation steps, a review/commit pair per round, then mark-done,
    commit-done and merge-to-base.
    """

    try:
        agents = AGENT_PROFILES[(profile or "bmm").strip().lower()]
    except KeyError:
        known = ", ".join(sorted(AGENT_PROFILES))
        raise ValueError(f"Unknown project profile '{profile}' (expected one of: {known}).") from None
    if isinstance(review_rounds, bool) or not isinstance(review_rounds, int):
        raise ValueError("review_rounds must be an integer.")
    if review_rounds < 0:
        raise ValueError("review_rounds must be zero or greater.")

    steps: List[Step] = [
        Step(
            id="create-story",
            name="Create Story File",
            type=StepType.AGENT,
            description=f"{agents.sm_label} agent creates story markdown with acceptance criteria",
            agent_id=agents.sm_agent,
            command=_workflow_command(agents.module, "create-story"),
        ),
        Step(
            id="create-branch",
            name="Create Git Branch",
            type=StepType.GIT,
            description="Create a feature branch for this story",
            git_action=GitAction.CREATE_BRANCH,
        ),
        Step(
            id="commit-story",
            name="Commit Story",
            type=StepType.GIT,
            description="Commit the new story file",
            git_action=GitAction.COMMIT,
            commit_message="docs: add story file",
        ),
        Step(
            id="implement",
            name="Implement Story",
            type=StepType.AGENT,
            description=f"{agents.dev_label} agent implements the feature",
            agent_id=agents.dev_agent,
            command=_workflow_command(agents.module, "dev-story"),
        ),
        Step(
            id="commit-implementation",
            name="Commit Implementation",
            type=StepType.GIT,
            description="Commit all implementation changes",
            git_action=GitAction.COMMIT,
            commit_message="feat: implement story",
        ),
    ]

    for round_number in range(1, review_rounds + 1):
        final_round = round_number == review_rounds and round_number > 1
        steps.append(
            Step(
                id=f"code-review-{round_number}",
                name=f"Code Review #{round_number}",
                type=StepType.AGENT,
                description=(
                    f"{agents.dev_label} agent reviews the code"
                    if round_number == 1
                    else f"{agents.dev_label} review #{round_number} for verification"
                ),
                agent_id=agents.dev_agent,
                command=_workflow_command(agents.module, "code-review"),
            )
        )
        steps.append(
            Step(
                id=f"commit-review-{round_number}",
                name="Commit Final Fixes" if final_round else "Commit Review Fixes",
                type=StepType.GIT,
                description=(
                    "Commit any remaining fixes"
                    if final_round
                    else f"Commit any fixes from review #{round_number}"
                ),
                git_action=GitAction.COMMIT,
                commit_message=(
                    "fix: final review fixes" if final_round else "fix: address code review feedback"
                ),
            )
        )

    steps.extend(
        [
            Step(
                id="mark-done",
                name="Mark Done",
                type=StepType.STATUS,
                description="Update story status to done",
            ),
            Step(
                id="commit-done",
                name="Commit Status",
                type=StepType.GIT,
                description="Commit the done status update",
                git_action=GitAction.COMMIT,
                commit_message="docs: mark story as done",
            ),
            Step(
                id="merge-to-base",
                name="Merge to Base",
                type=StepType.GIT,
                description="Merge story branch back to base branch",
                git_action=GitAction.MERGE,
            ),
        ]
    )
    return steps


_COLON_AGENT_COMMAND = re.compile(r"^/bmad:[^:]+:agents:(?P<name>.+)$")
_COLON_WORKFLOW_COMMAND = re.compile(r"^/bmad:[^:]+:workflows:(?P<name>.+)$")
_DASH_AGENT_COMMAND = re.compile(r"^/bmad-agent-[^-]+-(?P<name>.+)$")
_DASH_WORKFLOW_COMMAND = re.compile(r"^/bmad-(?:bmm|bmgd)-(?P<name>.+)$")


def transform_command(command: Optional[str], ai_tool: str, *, agent_prefix: str = "@") -> str:
    """Rewrite a slash command for tools that do not understand slash commands.

    ``claude-code`` keeps commands verbatim.  Other tools use ``@name`` for
    agent invocations and ``*name`` for workflows.
    """

    if not command:
        return ""
    if (ai_tool or "claude-code").strip().lower() == "claude-code":
        return command

    for pattern in (_COLON_AGENT_COMMAND, _DASH_AGENT_COMMAND):
        match = pattern.match(command)
        if match:
            return f"{agent_prefix}{match.group('name')}"
    for pattern in (_COLON_WORKFLOW_COMMAND, _DASH_WORKFLOW_COMMAND):
        match = pattern.match(command)
        if match:
            return f"*{match.group('name')}"
    return re.sub(r"^/", "*", command)
