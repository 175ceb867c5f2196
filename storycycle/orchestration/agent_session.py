"""One agent step: load or resume the agent, send a command, judge the answer.

The session listens to the channel's events for its agent id.  Each process
exit is judged by the output classifier: an issue prompt earns an automatic
``"1"`` reply and the session keeps waiting; anything else, including output
nobody recognises, finishes the step.  An unrecognised answer counts as done
so the pipeline cannot stall on text it cannot parse.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from storycycle.classifier import (
    DEFAULT_WINDOW,
    StreamTextExtractor,
    Verdict,
    classify,
    fix_is_first_option,
)
from storycycle.domain.outcomes import ErrorKind, StepOutcome
from storycycle.integrations.agent_channel import (
    AgentChannel,
    AgentEvent,
    AgentExit,
    AgentLoaded,
    AgentOutput,
)
from storycycle.integrations.conversation import ChatMessage, ConversationLog, new_message_id
from storycycle.logging import get_logger
from storycycle.orchestration.runs import RunToken

__all__ = ["AgentSession", "SessionSettings"]


logger = get_logger(__name__)

AUTO_REPLY = "1"
_STALE = StepOutcome.failed(ErrorKind.STALE_RUN, "Run superseded")


@dataclass(frozen=True)
class SessionSettings:
    settle_delay: float = 0.15
    recheck_delay: float = 3.0
    minimal_output_chars: int = 200
    classifier_window: int = DEFAULT_WINDOW
    max_auto_replies: Optional[int] = 5
    step_timeout: Optional[float] = None


# Verdicts that get a second look when a reply is short.
_RECHECK_VERDICTS = frozenset({Verdict.UNKNOWN, Verdict.WHAT_NEXT})

_VERDICT_LOGS = {
    Verdict.COMMIT_QUESTION: "asked about committing; the cycle commits itself",
    Verdict.BMAD_MENU: "is showing its menu",
    Verdict.WHAT_NEXT: "suggested follow-ups",
    Verdict.COMPLETION: "reported completion",
    Verdict.UNKNOWN: "finished",
}


class AgentSession:
    """Drive a single agent step to an outcome."""

    def __init__(
        self,
        channel: AgentChannel,
        conversation: ConversationLog,
        token: RunToken,
        *,
        project_path: Union[str, Path],
        profile: str,
        settings: Optional[SessionSettings] = None,
        log: Optional[Callable[[str], None]] = None,
        on_session: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.channel = channel
        self.conversation = conversation
        self.token = token
        self.project_path = Path(project_path)
        self.profile = profile
        self.settings = settings or SessionSettings()
        self._log = log or logger.info
        self._on_session = on_session
        self._queue: "asyncio.Queue[AgentEvent]" = asyncio.Queue()
        self._extractor = StreamTextExtractor()
        self._session_id: Optional[str] = None
        self._placeholder: Optional[str] = None
        self._auto_replies = 0

    @property
    def auto_replies(self) -> int:
        return self._auto_replies

    async def run(
        self, agent_id: str, command: str, story_id: str, branch_name: str
    ) -> StepOutcome:
        def listener(event: AgentEvent) -> None:
            if event.agent_id == agent_id:
                self._queue.put_nowait(event)

        unsubscribe = self.channel.subscribe(listener)
        try:
            interaction = self._interact(agent_id, command, story_id, branch_name)
            if self.settings.step_timeout is None:
                return await interaction
            try:
                return await asyncio.wait_for(interaction, self.settings.step_timeout)
            except asyncio.TimeoutError:
                self.channel.cancel_message(agent_id)
                message = f"{agent_id} timed out after {self.settings.step_timeout:g}s"
                self._log(message)
                self._fail_placeholder(agent_id, message)
                return StepOutcome.failed(ErrorKind.TIMEOUT, message)
        finally:
            unsubscribe()
            self.conversation.set_typing(agent_id, False)

    # ------------------------------------------------------------------
    # Protocol
    # ------------------------------------------------------------------
    async def _interact(
        self, agent_id: str, command: str, story_id: str, branch_name: str
    ) -> StepOutcome:
        self._log(f"Sending to {agent_id}: {command}")
        self.conversation.set_context(agent_id, story_id, branch_name)
        self._session_id = self.conversation.session_id(agent_id)

        self._add_message(agent_id, "user", command)
        self._placeholder = self._add_message(agent_id, "assistant", "", status="pending")
        self.conversation.set_typing(agent_id, True)

        if self._session_id is None:
            self._log(f"Loading {agent_id} agent...")
            loaded = await self.channel.load_agent(agent_id, self.project_path, self.profile)
            if not self.token.is_active():
                return _STALE
            if not loaded.success:
                message = f"Failed to load agent {agent_id}: {loaded.error or 'unknown error'}"
                self._log(message)
                self._fail_placeholder(agent_id, message)
                return StepOutcome.failed(ErrorKind.LOAD_FAILURE, message)
        else:
            self._log("Using existing session, executing command...")
            failure = await self._send(agent_id, command)
            if failure is not None:
                return failure

        while True:
            event = await self._next_event()
            if event is None or not self.token.is_active():
                return _STALE

            if isinstance(event, AgentOutput):
                if not event.is_load_phase:
                    self._extractor.feed(event.chunk, event.stream)
                continue

            if isinstance(event, AgentLoaded):
                outcome = await self._on_loaded(agent_id, command, event)
            else:
                outcome = await self._on_exit(agent_id, event)
            if outcome is not None:
                return outcome

    async def _on_loaded(
        self, agent_id: str, command: str, event: AgentLoaded
    ) -> Optional[StepOutcome]:
        if not event.ok:
            if event.code == 0:
                reason = "no session id was reported"
            else:
                reason = event.error or f"exit code {event.code}, signal {event.signal}"
            message = f"Agent {agent_id} failed to load: {reason}"
            self._log(message)
            self._fail_placeholder(agent_id, message)
            return StepOutcome.failed(ErrorKind.LOAD_FAILURE, message)

        self._remember_session(agent_id, event.session_id)
        self._log(f"Agent {agent_id} ready")
        await asyncio.sleep(self.settings.settle_delay)
        if not self.token.is_active():
            return _STALE
        self._log("Executing command...")
        return await self._send(agent_id, command)

    async def _on_exit(self, agent_id: str, event: AgentExit) -> Optional[StepOutcome]:
        if event.session_id:
            self._remember_session(agent_id, event.session_id)
        if event.cancelled:
            self._log(f"{agent_id} cancelled")
            self._fail_placeholder(agent_id, "Cancelled")
            return StepOutcome.failed(ErrorKind.CANCELLED, f"{agent_id} cancelled")
        if event.code is not None and event.code != 0:
            message = f"{agent_id} failed with code: {event.code}"
            self._log(message)
            self._fail_placeholder(agent_id, event.error or message)
            return StepOutcome.failed(ErrorKind.NON_ZERO_EXIT, message)

        self._extractor.flush()
        text = self._extractor.text
        verdict = classify(text, self.settings.classifier_window)

        if (
            self._auto_replies
            and verdict in _RECHECK_VERDICTS
            and len(text.strip()) < self.settings.minimal_output_chars
        ):
            # A short answer right after an auto reply is often the agent
            # acknowledging before it prints the real result.
            self._log("Short response after auto-reply, re-checking...")
            await asyncio.sleep(self.settings.recheck_delay)
            if not self.token.is_active():
                return _STALE
            self._drain_output()
            text = self._extractor.text
            verdict = classify(text, self.settings.classifier_window)

        self._complete_placeholder(agent_id, text)

        if verdict is Verdict.ISSUE_PROMPT:
            if self._session_id is None:
                self._log(f"{agent_id} asked a question but no session is available to reply")
                return StepOutcome.completed("Question left unanswered")
            return await self._auto_reply(agent_id, text)

        self._log(f"{agent_id} {_VERDICT_LOGS[verdict]}")
        self._log(f"{agent_id} completed successfully")
        return StepOutcome.completed(verdict.value)

    async def _auto_reply(self, agent_id: str, text: str) -> Optional[StepOutcome]:
        limit = self.settings.max_auto_replies
        if limit is not None and self._auto_replies >= limit:
            message = f"{agent_id} kept asking after {self._auto_replies} automatic replies"
            self._log(message)
            return StepOutcome.failed(ErrorKind.AUTO_REPLY_LIMIT, message)

        label = "fix automatically" if fix_is_first_option(text) else "first option"
        self._log(f'Detected question prompt, auto-responding with "{AUTO_REPLY}" ({label})')
        self._auto_replies += 1
        self._add_message(agent_id, "user", AUTO_REPLY)
        self._placeholder = self._add_message(agent_id, "assistant", "", status="pending")
        self.conversation.set_typing(agent_id, True)
        self._extractor.reset()

        await asyncio.sleep(self.settings.settle_delay)
        if not self.token.is_active():
            return _STALE
        return await self._send(agent_id, AUTO_REPLY)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _send(self, agent_id: str, message: str) -> Optional[StepOutcome]:
        result = await self.channel.send_message(
            agent_id, self.project_path, message, self._session_id
        )
        if not self.token.is_active():
            return _STALE
        if not result.success:
            error = f"Failed to send: {result.error or 'unknown error'}"
            self._log(error)
            self._fail_placeholder(agent_id, error)
            return StepOutcome.failed(ErrorKind.SEND_FAILURE, error)
        return None

    async def _next_event(self) -> Optional[AgentEvent]:
        getter = asyncio.ensure_future(self._queue.get())
        revoked = asyncio.ensure_future(self.token.wait_revoked())
        try:
            await asyncio.wait({getter, revoked}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in (getter, revoked):
                if not waiter.done():
                    waiter.cancel()
        if getter.done() and not getter.cancelled():
            return getter.result()
        return None

    def _drain_output(self) -> None:
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if isinstance(event, AgentOutput) and not event.is_load_phase:
                self._extractor.feed(event.chunk, event.stream)
        self._extractor.flush()

    def _remember_session(self, agent_id: str, session_id: Optional[str]) -> None:
        if not session_id:
            return
        self._session_id = session_id
        self.conversation.set_session_id(agent_id, session_id)
        if self._on_session is not None:
            self._on_session(session_id)

    def _add_message(self, agent_id: str, role: str, content: str, status: str = "complete") -> str:
        message = ChatMessage(new_message_id(f"cycle-{role}"), role, content, status)
        self.conversation.add_message(agent_id, message)
        return message.id

    def _complete_placeholder(self, agent_id: str, text: str) -> None:
        if self._placeholder is not None:
            self.conversation.update_message(
                agent_id, self._placeholder, content=text, status="complete"
            )

    def _fail_placeholder(self, agent_id: str, error: str) -> None:
        if self._placeholder is not None:
            self.conversation.update_message(
                agent_id, self._placeholder, content=error, status="error"
            )
