"""Run tokens.

Every run of the pipeline owns a token.  Starting, retrying or cancelling a
run revokes the previous token; work that finishes under a revoked token
drops its result instead of touching shared state.
"""

from __future__ import annotations

import asyncio
import itertools
import time

__all__ = ["RunToken", "mint_run_id"]


_COUNTER = itertools.count(1)


def mint_run_id(story_id: str) -> str:
    return f"{story_id}-{int(time.time() * 1000)}-{next(_COUNTER)}"


class RunToken:
    def __init__(self, story_id: str) -> None:
        self.story_id = story_id
        self.run_id = mint_run_id(story_id)
        self._revoked = asyncio.Event()

    def __repr__(self) -> str:
        state = "active" if self.is_active() else "revoked"
        return f"RunToken({self.run_id!r}, {state})"

    def is_active(self) -> bool:
        return not self._revoked.is_set()

    def revoke(self) -> None:
        self._revoked.set()

    async def wait_revoked(self) -> None:
        await self._revoked.wait()
