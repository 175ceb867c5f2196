"""Cycle orchestration: git steps, agent sessions, the single cycle and the epic queue."""

from storycycle.orchestration.agent_session import AgentSession, SessionSettings
from storycycle.orchestration.epic_queue import EpicQueueOrchestrator, eligible_stories
from storycycle.orchestration.git_steps import GitStepExecutor
from storycycle.orchestration.runs import RunToken
from storycycle.orchestration.single_cycle import SingleCycleOrchestrator

__all__ = [
    "AgentSession",
    "EpicQueueOrchestrator",
    "GitStepExecutor",
    "RunToken",
    "SessionSettings",
    "SingleCycleOrchestrator",
    "eligible_stories",
]
