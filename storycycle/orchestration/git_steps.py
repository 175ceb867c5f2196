"""Translate git steps into calls on the git collaborator."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Union

from storycycle.domain.outcomes import ErrorKind, StepOutcome
from storycycle.domain.steps import GitAction, Step
from storycycle.integrations.git import GitCollaborator
from storycycle.logging import get_logger
from storycycle.orchestration.runs import RunToken
from storycycle.vcs.commits import format_conventional_commit, story_commit_message

__all__ = ["GitStepExecutor"]


logger = get_logger(__name__)

_STALE = StepOutcome.failed(ErrorKind.STALE_RUN, "Run superseded")


class GitStepExecutor:
    """Run ``create-branch``, ``commit`` and ``merge`` steps for a story.

    The story id doubles as the branch name.  With ``enable_branches`` off the
    branch and merge steps are skipped and every commit lands on the current
    branch.  ``epic_branches`` makes new story branches start from whatever is
    checked out instead of ``base_branch``.
    """

    def __init__(
        self,
        git: GitCollaborator,
        project_path: Union[str, Path],
        *,
        base_branch: str = "main",
        enable_branches: bool = True,
        epic_branches: bool = False,
        log: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.git = git
        self.project_path = Path(project_path)
        self.base_branch = base_branch
        self.enable_branches = enable_branches
        self.epic_branches = epic_branches
        self._log = log or logger.info

    async def execute(self, step: Step, story_id: str, token: RunToken) -> StepOutcome:
        if step.git_action is GitAction.CREATE_BRANCH:
            return await self._create_branch(story_id, token)
        if step.git_action is GitAction.COMMIT:
            return await self._commit(step, story_id, token)
        if step.git_action is GitAction.MERGE:
            return await self._merge(story_id, token)
        return StepOutcome.failed(ErrorKind.INTERNAL, f"Unknown git action for step {step.id}")

    async def _create_branch(self, branch: str, token: RunToken) -> StepOutcome:
        if not self.enable_branches:
            self._log("Branches disabled, skipping branch creation")
            return StepOutcome.skipped("Branches disabled")

        self._log(f"Creating branch: {branch}")
        from_branch = None if self.epic_branches else self.base_branch
        result = await self.git.create_branch(self.project_path, branch, from_branch)
        if not token.is_active():
            return _STALE

        if result.already_exists:
            self._log(f"Branch {branch} already exists, checking out")
            checkout = await self.git.checkout_branch(self.project_path, branch)
            if not token.is_active():
                return _STALE
            if not checkout.success:
                self._log(f"Failed to checkout: {checkout.error}")
                return StepOutcome.failed(
                    ErrorKind.GIT_FAILURE, f"Failed to checkout {branch}: {checkout.error}"
                )
        elif not result.success:
            self._log(f"Failed to create branch: {result.error}")
            return StepOutcome.failed(
                ErrorKind.GIT_FAILURE, f"Failed to create branch {branch}: {result.error}"
            )

        self._log("Branch ready")
        return StepOutcome.completed(f"On branch {branch}")

    async def _commit(self, step: Step, story_id: str, token: RunToken) -> StepOutcome:
        has_changes = await self.git.has_changes(self.project_path)
        if not token.is_active():
            return _STALE
        if not has_changes:
            self._log("No changes to commit, skipping")
            return StepOutcome.skipped("Nothing to commit")

        message = story_commit_message(step.commit_message, story_id)
        self._log(f"Committing: {message}")
        result = await self.git.commit(self.project_path, message)
        if not token.is_active():
            return _STALE
        if not result.success:
            if result.error and "nothing to commit" in result.error.lower():
                self._log("No changes to commit, skipping")
                return StepOutcome.skipped("Nothing to commit")
            self._log(f"Failed to commit: {result.error}")
            return StepOutcome.failed(ErrorKind.GIT_FAILURE, f"Failed to commit: {result.error}")

        self._log("Committed successfully")
        return StepOutcome.completed(message)

    async def _merge(self, branch: str, token: RunToken) -> StepOutcome:
        if not self.enable_branches:
            self._log("Branches disabled, skipping merge")
            return StepOutcome.skipped("Branches disabled")

        dirty = await self.git.has_changes(self.project_path)
        if not token.is_active():
            return _STALE
        if dirty:
            message = format_conventional_commit(
                "chore", "save uncommitted work before merge", scope=branch
            )
            self._log(f"Uncommitted changes found, committing: {message}")
            safety = await self.git.commit(self.project_path, message)
            if not token.is_active():
                return _STALE
            if not safety.success and "nothing to commit" not in (safety.error or "").lower():
                self._log(f"Failed to commit before merge: {safety.error}")
                return StepOutcome.failed(
                    ErrorKind.GIT_FAILURE, f"Failed to commit before merge: {safety.error}"
                )

        self._log(f"Checking out {self.base_branch}")
        checkout = await self.git.checkout_branch(self.project_path, self.base_branch)
        if not token.is_active():
            return _STALE
        if not checkout.success:
            self._log(f"Failed to checkout {self.base_branch}: {checkout.error}")
            return StepOutcome.failed(
                ErrorKind.GIT_FAILURE, f"Failed to checkout {self.base_branch}: {checkout.error}"
            )

        self._log(f"Merging {branch} into {self.base_branch}")
        merged = await self.git.merge_branch(self.project_path, branch)
        if not token.is_active():
            return _STALE
        if merged.has_conflicts:
            self._log("Merge has conflicts, resolve them in a terminal and retry")
            return StepOutcome.failed(
                ErrorKind.MERGE_CONFLICT,
                f"Merge conflict merging {branch} into {self.base_branch}",
            )
        if not merged.success:
            self._log(f"Merge failed: {merged.error}")
            return StepOutcome.failed(ErrorKind.GIT_FAILURE, f"Merge failed: {merged.error}")

        self._log(f"Merged {branch} into {self.base_branch}")
        return StepOutcome.completed(f"Merged into {self.base_branch}")
