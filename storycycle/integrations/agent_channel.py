"""Agent channel: one CLI process per message, observed through events.

Every message spawns the agent CLI in ``--print`` mode with stream-json
output.  Conversation continuity comes from ``--resume <session id>``; the
session id is captured from the ``result`` frame of the previous process.
Listeners receive :class:`AgentOutput` while a process runs, then exactly
one :class:`AgentLoaded` (load processes) or :class:`AgentExit` (message
processes) when it ends.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set, Union

from storycycle.logging import get_logger

__all__ = [
    "AgentChannel",
    "AgentEvent",
    "AgentExit",
    "AgentLoaded",
    "AgentOutput",
    "ChannelResult",
    "ClaudeAgentChannel",
]


logger = get_logger(__name__)

PathLike = Union[str, Path]
_READ_SIZE = 4096
_CANCEL_SIGNALS = {signal.SIGTERM, getattr(signal, "SIGKILL", signal.SIGTERM)}


@dataclass(frozen=True)
class AgentOutput:
    agent_id: str
    chunk: str
    stream: str = "stdout"
    is_load_phase: bool = False


@dataclass(frozen=True)
class AgentLoaded:
    agent_id: str
    code: Optional[int]
    session_id: Optional[str] = None
    signal: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == 0 and bool(self.session_id)


@dataclass(frozen=True)
class AgentExit:
    agent_id: str
    code: Optional[int]
    signal: Optional[str] = None
    error: Optional[str] = None
    session_id: Optional[str] = None
    cancelled: bool = False


AgentEvent = Union[AgentOutput, AgentLoaded, AgentExit]
Listener = Callable[[AgentEvent], None]


@dataclass(frozen=True)
class ChannelResult:
    success: bool
    error: Optional[str] = None
    session_id: Optional[str] = None


class AgentChannel(Protocol):
    def subscribe(self, listener: Listener) -> Callable[[], None]: ...

    async def load_agent(
        self,
        agent_id: str,
        project_path: PathLike,
        profile: str,
        command: Optional[str] = None,
    ) -> ChannelResult: ...

    async def send_message(
        self,
        agent_id: str,
        project_path: PathLike,
        message: str,
        session_id: Optional[str] = None,
    ) -> ChannelResult: ...

    def cancel_message(self, agent_id: str) -> bool: ...


class ClaudeAgentChannel:
    """:class:`AgentChannel` backed by the ``claude`` command line tool."""

    def __init__(
        self,
        executable: Union[str, Sequence[str]] = "claude",
        *,
        model: Optional[str] = None,
        extra_args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
    ) -> None:
        self._command: List[str] = [executable] if isinstance(executable, str) else list(executable)
        self.model = model
        self.extra_args = list(extra_args)
        self._env = env
        self._listeners: List[Listener] = []
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._watchers: Set[asyncio.Task] = set()
        self._cancelled: Set[str] = set()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: AgentEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Agent event listener failed for %s", event.agent_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def is_running(self, agent_id: str) -> bool:
        return agent_id in self._processes

    async def load_agent(
        self,
        agent_id: str,
        project_path: PathLike,
        profile: str,
        command: Optional[str] = None,
    ) -> ChannelResult:
        prompt = command or f"/bmad:{profile}:agents:{agent_id}"
        return await self._spawn(agent_id, project_path, prompt, None, load_phase=True)

    async def send_message(
        self,
        agent_id: str,
        project_path: PathLike,
        message: str,
        session_id: Optional[str] = None,
    ) -> ChannelResult:
        return await self._spawn(agent_id, project_path, message, session_id, load_phase=False)

    def cancel_message(self, agent_id: str) -> bool:
        process = self._processes.get(agent_id)
        if process is None:
            logger.info("No running process to cancel for agent %s", agent_id)
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        self._cancelled.add(agent_id)
        logger.info("Cancelled agent %s (pid %s)", agent_id, process.pid)
        return True

    async def aclose(self) -> None:
        """Terminate every running process and wait for the watchers."""

        for agent_id in list(self._processes):
            self.cancel_message(agent_id)
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------
    def _build_args(self, prompt: str, session_id: Optional[str]) -> List[str]:
        args = [*self._command, "--output-format", "stream-json", "--print", "--verbose"]
        if self.model:
            args.extend(["--model", self.model])
        args.extend(self.extra_args)
        if session_id:
            args.extend(["--resume", session_id])
        args.extend(["-p", prompt])
        return args

    async def _spawn(
        self,
        agent_id: str,
        project_path: PathLike,
        prompt: str,
        session_id: Optional[str],
        *,
        load_phase: bool,
    ) -> ChannelResult:
        if agent_id in self._processes:
            return ChannelResult(False, f"Agent {agent_id} already has a running process")

        args = self._build_args(prompt, session_id)
        env = os.environ.copy()
        if self._env:
            env.update(self._env)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(project_path),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.error("Failed to start agent %s: %s", agent_id, exc)
            return ChannelResult(False, str(exc))

        logger.info(
            "%s agent %s (pid %s, session %s)",
            "Loading" if load_phase else "Messaging",
            agent_id,
            process.pid,
            session_id or "none",
            extra={"metadata": {"agent": agent_id, "pid": process.pid}},
        )
        self._cancelled.discard(agent_id)
        self._processes[agent_id] = process
        watcher = asyncio.get_running_loop().create_task(
            self._watch(agent_id, process, load_phase)
        )
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return ChannelResult(True)

    async def _watch(
        self, agent_id: str, process: asyncio.subprocess.Process, load_phase: bool
    ) -> None:
        captured: Dict[str, Optional[str]] = {"session_id": None}
        await asyncio.gather(
            self._pump(agent_id, process.stdout, "stdout", load_phase, captured),
            self._pump(agent_id, process.stderr, "stderr", load_phase, captured),
        )
        returncode = await process.wait()

        if self._processes.get(agent_id) is process:
            del self._processes[agent_id]
        was_cancelled = agent_id in self._cancelled
        self._cancelled.discard(agent_id)

        signal_name: Optional[str] = None
        code: Optional[int] = returncode
        if returncode is not None and returncode < 0:
            try:
                received = signal.Signals(-returncode)
            except ValueError:
                received = None
            signal_name = received.name if received else str(-returncode)
            code = None
            was_cancelled = was_cancelled or received in _CANCEL_SIGNALS

        session_id = captured["session_id"]
        logger.info(
            "Agent %s process exited (code=%s, signal=%s, session=%s, cancelled=%s)",
            agent_id,
            code,
            signal_name,
            session_id,
            was_cancelled,
        )
        if load_phase:
            self._emit(AgentLoaded(agent_id, code, session_id=session_id, signal=signal_name))
        else:
            self._emit(
                AgentExit(
                    agent_id,
                    code,
                    signal=signal_name,
                    session_id=session_id,
                    cancelled=was_cancelled,
                )
            )

    async def _pump(
        self,
        agent_id: str,
        stream: Optional[asyncio.StreamReader],
        name: str,
        load_phase: bool,
        captured: Dict[str, Optional[str]],
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        line_buffer = ""
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                break
            chunk = decoder.decode(data)
            if not chunk:
                continue
            if name == "stdout":
                line_buffer += chunk
                *lines, line_buffer = line_buffer.split("\n")
                for line in lines:
                    _capture_session_id(line, captured)
            self._emit(AgentOutput(agent_id, chunk, stream=name, is_load_phase=load_phase))
        tail = decoder.decode(b"", final=True)
        if name == "stdout":
            _capture_session_id(line_buffer + tail, captured)
        if tail:
            self._emit(AgentOutput(agent_id, tail, stream=name, is_load_phase=load_phase))


def _capture_session_id(line: str, captured: Dict[str, Optional[str]]) -> None:
    stripped = line.strip()
    if not stripped.startswith("{"):
        return
    try:
        frame = json.loads(stripped)
    except ValueError:
        return
    if not isinstance(frame, dict) or not frame.get("session_id"):
        return
    if frame.get("type") == "result" or (
        frame.get("type") == "system" and captured.get("session_id") is None
    ):
        captured["session_id"] = str(frame["session_id"])
