"""Run one story through the step plan."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional, Union

from storycycle.domain.cycle_state import CycleStateStore, SingleCycleState
from storycycle.domain.outcomes import ErrorKind, StepOutcome
from storycycle.domain.steps import Step, StepStatus, StepType, build_steps, transform_command
from storycycle.domain.stories import StoryCatalog
from storycycle.errors import CycleAlreadyRunning, NothingToRetry
from storycycle.integrations.agent_channel import AgentChannel
from storycycle.integrations.conversation import ConversationLog, InMemoryConversationLog
from storycycle.integrations.git import GitCollaborator
from storycycle.integrations.story_status import StoryStatusUpdater
from storycycle.logging import get_logger
from storycycle.orchestration.agent_session import AgentSession, SessionSettings
from storycycle.orchestration.git_steps import GitStepExecutor
from storycycle.orchestration.runs import RunToken

__all__ = ["DEFAULT_STORIES_DIR", "FRESH_CONTEXT_STEPS", "SingleCycleOrchestrator"]


logger = get_logger(__name__)

DEFAULT_STORIES_DIR = Path("_bmad-output") / "implementation-artifacts"
# Steps that start with an empty conversation so earlier turns do not leak in.
FRESH_CONTEXT_STEPS = frozenset({"create-story", "implement", "code-review-1", "code-review-2"})
DONE_STATUS = "done"

_STALE = StepOutcome.failed(ErrorKind.STALE_RUN, "Run superseded")


class SingleCycleOrchestrator:
    """Sequence the git, agent and status steps for a single story.

    All state changes go through the shared :class:`CycleStateStore`.  Each
    run owns a :class:`RunToken`; ``cancel``, ``retry`` and ``start`` revoke
    the previous token so late results from a superseded run are dropped.
    """

    def __init__(
        self,
        store: CycleStateStore,
        *,
        channel: AgentChannel,
        git: GitCollaborator,
        status_updater: StoryStatusUpdater,
        project_path: Union[str, Path],
        stories_dir: Optional[Union[str, Path]] = None,
        conversation: Optional[ConversationLog] = None,
        profile: str = "bmm",
        review_rounds: int = 1,
        ai_tool: str = "claude-code",
        base_branch: str = "main",
        enable_branches: bool = True,
        epic_branches: bool = False,
        session_settings: Optional[SessionSettings] = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.status_updater = status_updater
        self.project_path = Path(project_path)
        if stories_dir is None:
            self.stories_dir = self.project_path / DEFAULT_STORIES_DIR
        else:
            self.stories_dir = self.project_path / Path(stories_dir)
        self.conversation = conversation or InMemoryConversationLog()
        self.profile = profile
        self.ai_tool = ai_tool
        self.session_settings = session_settings or SessionSettings()
        self.steps: List[Step] = build_steps(profile, review_rounds)
        self.git_steps = GitStepExecutor(
            git,
            self.project_path,
            base_branch=base_branch,
            enable_branches=enable_branches,
            epic_branches=epic_branches,
            log=self._log,
        )
        self._token: Optional[RunToken] = None
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def state(self) -> SingleCycleState:
        return self.store.single

    @property
    def is_running(self) -> bool:
        return self.store.single.is_running

    @property
    def current_run_id(self) -> Optional[str]:
        if self._token is not None and self._token.is_active():
            return self._token.run_id
        return None

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def start(self, story_id: str) -> asyncio.Task:
        """Begin a fresh run for ``story_id`` at step 0."""

        self._ensure_idle()
        token = self._mint(story_id)
        self.store.start_cycle(story_id, len(self.steps))
        self._log(f"Starting full cycle for {story_id}")
        return self._launch(token, story_id, 0)

    def cancel(self) -> bool:
        """Stop the current run; completed steps keep their status."""

        state = self.store.single
        if not state.is_running:
            return False
        if self._token is not None:
            self._token.revoke()
        if 0 <= state.current_step < len(self.steps):
            step = self.steps[state.current_step]
            if step.type is StepType.AGENT and step.agent_id:
                self.channel.cancel_message(step.agent_id)
        self.store.cancel_cycle()
        self._log("Cycle cancelled")
        logger.info(
            "Cancelled cycle for %s",
            state.story_id,
            extra={"metadata": {"story": state.story_id, "step": state.current_step}},
        )
        return True

    def retry(self) -> asyncio.Task:
        """Resume the halted run from its first step that is not done."""

        self._ensure_idle()
        state = self.store.single
        if state.story_id is None:
            raise NothingToRetry("No cycle has run yet.")
        if state.total_steps != len(self.steps):
            raise NothingToRetry("The step plan changed since the last run; start a new cycle.")
        resume_index = state.first_incomplete_step()
        if resume_index is None:
            raise NothingToRetry(f"Every step for {state.story_id} already finished.")

        token = self._mint(state.story_id)
        self.store.prepare_retry(resume_index)
        self._log(f"Retrying from step {resume_index + 1}: {self.steps[resume_index].name}")
        return self._launch(token, state.story_id, resume_index)

    async def wait(self) -> SingleCycleState:
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.store.single

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------
    def _ensure_idle(self) -> None:
        # A cancelled run may still be unwinding; its token is revoked, so it
        # can only produce stale results.
        if self.store.single.is_running:
            raise CycleAlreadyRunning(
                f"A cycle for {self.store.single.story_id} is still running."
            )

    def _mint(self, story_id: str) -> RunToken:
        if self._token is not None:
            self._token.revoke()
        self._token = RunToken(story_id)
        return self._token

    def _launch(self, token: RunToken, story_id: str, start_index: int) -> asyncio.Task:
        self._task = asyncio.get_running_loop().create_task(
            self._run(token, story_id, start_index), name=f"storycycle-{token.run_id}"
        )
        return self._task

    async def _run(self, token: RunToken, story_id: str, start_index: int) -> None:
        total = len(self.steps)
        run_logger = get_logger(__name__, metadata={"story": story_id, "run_id": token.run_id})
        for index in range(start_index, total):
            if not token.is_active():
                return
            step = self.steps[index]
            self._log(f"--- Step {index + 1}/{total}: {step.name} ---")
            self.store.begin_step(index, step.name)
            run_logger.info("Step %s started", step.id, extra={"metadata": {"step": step.id}})

            outcome = await self._execute_step(step, story_id, token)
            if not token.is_active() or outcome.is_stale:
                run_logger.info("Dropping result of superseded run %s", token.run_id)
                return

            run_logger.info(
                "Step %s %s",
                step.id,
                outcome.status.value,
                extra={"metadata": {"step": step.id, "outcome": outcome.to_dict()}},
            )
            if outcome.status is StepStatus.ERROR:
                message = outcome.message or f'Step "{step.name}" failed'
                self._log(f'Step "{step.name}" failed: {message}')
                self.store.fail_cycle(index, message, outcome.error_kind)
                token.revoke()
                return
            self.store.finish_step(index, outcome.status)

        if token.is_active():
            self._log("=== Full cycle complete! ===")
            self.store.complete_cycle()
            token.revoke()

    async def _execute_step(self, step: Step, story_id: str, token: RunToken) -> StepOutcome:
        try:
            if step.type is StepType.AGENT:
                return await self._agent_step(step, story_id, token)
            if step.type is StepType.GIT:
                return await self.git_steps.execute(step, story_id, token)
            if step.type is StepType.STATUS:
                return await self._status_step(story_id, token)
        except Exception as exc:
            logger.exception("Step %s raised", step.id)
            if not token.is_active():
                return _STALE
            return StepOutcome.failed(ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}")
        return StepOutcome.completed()

    async def _agent_step(self, step: Step, story_id: str, token: RunToken) -> StepOutcome:
        story = self._catalog().resolve(story_id)

        if step.id == "create-story" and story.has_file:
            self._log("Story file already exists, skipping creation")
            return StepOutcome.skipped("Story file already exists")
        if step.id == "implement" and story.is_in_progress:
            self._log(f"Story is in {story.status}, skipping implementation")
            return StepOutcome.skipped(f"Story already {story.status}")

        agent_id = step.agent_id or ""
        if step.id in FRESH_CONTEXT_STEPS:
            self._log(f"Clearing {agent_id} chat for fresh context")
            self.conversation.clear(agent_id)

        command = f"{transform_command(step.command, self.ai_tool)} {story.id}"
        session = AgentSession(
            self.channel,
            self.conversation,
            token,
            project_path=self.project_path,
            profile=self.profile,
            settings=self.session_settings,
            log=self._log,
            on_session=lambda session_id: self._store_session(token, session_id),
        )
        return await session.run(agent_id, command, story.id, branch_name=story.id)

    async def _status_step(self, story_id: str, token: RunToken) -> StepOutcome:
        story = self._catalog().resolve(story_id)
        if not story.has_file:
            self._log("No story file to update status")
            return StepOutcome.completed("No story file")

        self._log(f"Updating story status to {DONE_STATUS}")
        result = await self.status_updater.update_story_status(story.file_path, DONE_STATUS)
        if not token.is_active():
            return _STALE
        if not result.success:
            self._log(f"Failed to update status: {result.error}")
            return StepOutcome.failed(
                ErrorKind.STATUS_FAILURE, f"Failed to update status: {result.error}"
            )
        self._log(f"Story marked as {DONE_STATUS}")
        return StepOutcome.completed()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _catalog(self) -> StoryCatalog:
        # Reloaded per step: earlier steps create the story file and change its status.
        return StoryCatalog.load(self.stories_dir)

    def _store_session(self, token: RunToken, session_id: str) -> None:
        if token.is_active():
            self.store.set_session_id(session_id)

    def _log(self, message: str) -> None:
        self.store.append_log(message)
        logger.debug(message)
