"""Git collaborator used by the cycle's git steps."""

from __future__ import annotations

import asyncio
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Tuple, Union

from storycycle.logging import get_logger

__all__ = ["GitClient", "GitCollaborator", "GitResult", "is_valid_ref"]


logger = get_logger(__name__)

PathLike = Union[str, Path]

_SAFE_REF = re.compile(r"^[\w\-./^~@]+$")
_UNSAFE_CHARS = re.compile(r"[;&|`$(){}\[\]<>!\\'\"*?\n\r]")


@dataclass(frozen=True)
class GitResult:
    success: bool
    error: Optional[str] = None
    already_exists: bool = False
    has_conflicts: bool = False


class GitCollaborator(Protocol):
    async def branch_exists(self, path: PathLike, name: str) -> bool: ...

    async def create_branch(
        self, path: PathLike, name: str, from_branch: Optional[str] = None
    ) -> GitResult: ...

    async def checkout_branch(self, path: PathLike, name: str) -> GitResult: ...

    async def commit(self, path: PathLike, message: str, force_add: bool = False) -> GitResult: ...

    async def has_changes(self, path: PathLike) -> bool: ...

    async def merge_branch(self, path: PathLike, name: str) -> GitResult: ...

    async def is_branch_merged(self, path: PathLike, branch: str, target: str) -> bool: ...


def is_valid_ref(ref: Optional[str]) -> bool:
    if not ref or len(ref) > 256:
        return False
    if _UNSAFE_CHARS.search(ref):
        return False
    if ".." in ref:
        return False
    return bool(_SAFE_REF.match(ref))


class GitClient:
    """Run ``git`` subprocesses without blocking the event loop."""

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    async def _run(self, args: Sequence[str], cwd: PathLike) -> Tuple[int, str, str]:
        env = os.environ.copy()
        # No TTY is available for a pinentry prompt.
        env.pop("GPG_TTY", None)
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            logger.warning("Unable to run git %s: %s", " ".join(args), exc)
            return 127, "", str(exc)
        stdout, stderr = await process.communicate()
        returncode = process.returncode if process.returncode is not None else -1
        logger.debug(
            "git %s exited with %s",
            " ".join(args),
            returncode,
            extra={"metadata": {"cwd": str(cwd), "returncode": returncode}},
        )
        return (
            returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    @staticmethod
    def _error_text(stdout: str, stderr: str) -> str:
        return stderr.strip() or stdout.strip() or "Git command failed"

    async def branch_exists(self, path: PathLike, name: str) -> bool:
        if not is_valid_ref(name):
            return False
        code, _, _ = await self._run(["rev-parse", "--verify", "--quiet", name], path)
        return code == 0

    async def create_branch(
        self, path: PathLike, name: str, from_branch: Optional[str] = None
    ) -> GitResult:
        if not is_valid_ref(name):
            return GitResult(False, "Invalid branch name")
        if from_branch and not is_valid_ref(from_branch):
            return GitResult(False, "Invalid source branch name")

        args = ["checkout", "-b", name]
        if from_branch:
            args.append(from_branch)
        code, stdout, stderr = await self._run(args, path)
        if code == 0:
            return GitResult(True)
        error = self._error_text(stdout, stderr)
        if "already exists" in error:
            return GitResult(False, f"Branch '{name}' already exists.", already_exists=True)
        if "Your local changes" in error:
            return GitResult(
                False,
                "You have uncommitted changes. Commit or stash them before creating a new branch.",
            )
        return GitResult(False, error)

    async def checkout_branch(self, path: PathLike, name: str) -> GitResult:
        if not is_valid_ref(name):
            return GitResult(False, "Invalid branch name")
        code, stdout, stderr = await self._run(["checkout", name], path)
        if code == 0:
            return GitResult(True)
        error = self._error_text(stdout, stderr)
        if "Your local changes" in error:
            return GitResult(
                False,
                "You have uncommitted changes. Commit or stash them before switching branches.",
            )
        if "did not match any" in error:
            return GitResult(False, f"Branch '{name}' does not exist.")
        return GitResult(False, error)

    async def commit(self, path: PathLike, message: str, force_add: bool = False) -> GitResult:
        if not message or len(message) > 1000:
            return GitResult(False, "Invalid commit message")

        add_args = ["add", "-A", "-f", "."] if force_add else ["add", "-A", "."]
        code, stdout, stderr = await self._run(add_args, path)
        if code != 0:
            return GitResult(False, f"Failed to stage changes: {self._error_text(stdout, stderr)}")

        code, stdout, stderr = await self._run(["commit", "-m", message], path)
        if code == 0:
            return GitResult(True)
        error = self._error_text(stdout, stderr)
        if "nothing to commit" in f"{stdout}\n{stderr}":
            return GitResult(False, "Nothing to commit")
        return GitResult(False, error)

    async def has_changes(self, path: PathLike) -> bool:
        code, stdout, stderr = await self._run(["status", "--porcelain"], path)
        if code != 0:
            logger.warning("Unable to determine git status: %s", self._error_text(stdout, stderr))
            return False
        return bool(stdout.strip())

    async def merge_branch(self, path: PathLike, name: str) -> GitResult:
        if not is_valid_ref(name):
            return GitResult(False, "Invalid branch name")

        code, stdout, stderr = await self._run(["status", "--porcelain"], path)
        if code != 0:
            return GitResult(False, "Failed to check for changes")
        if stdout.strip():
            return GitResult(
                False, "You have uncommitted changes. Commit or stash them before merging."
            )

        code, stdout, stderr = await self._run(["merge", name, "--no-edit", "--no-ff"], path)
        if code == 0:
            return GitResult(True)

        _, unmerged, _ = await self._run(["diff", "--name-only", "--diff-filter=U"], path)
        if await self._merge_in_progress(path):
            # Never leave the base branch mid-merge.
            await self._run(["merge", "--abort"], path)
        if unmerged.strip():
            logger.info("Merge of %s conflicted on %s", name, ", ".join(unmerged.split()))
            return GitResult(
                False, "Merge has conflicts - resolve in terminal", has_conflicts=True
            )
        return GitResult(False, stderr.strip() or "Merge failed")

    async def _merge_in_progress(self, path: PathLike) -> bool:
        code, _, _ = await self._run(["rev-parse", "-q", "--verify", "MERGE_HEAD"], path)
        return code == 0

    async def is_branch_merged(self, path: PathLike, branch: str, target: str) -> bool:
        if not is_valid_ref(branch) or not is_valid_ref(target):
            return False
        code, _, _ = await self._run(["merge-base", "--is-ancestor", branch, target], path)
        return code == 0
