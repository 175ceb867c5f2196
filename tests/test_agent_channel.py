import asyncio
import sys

import pytest

from storycycle.classifier import StreamTextExtractor
from storycycle.integrations.agent_channel import (
    AgentExit,
    AgentLoaded,
    AgentOutput,
    ClaudeAgentChannel,
)

FAKE_CLI = r'''
import json
import sys
import time

args = sys.argv[1:]
prompt = args[args.index("-p") + 1]
resume = args[args.index("--resume") + 1] if "--resume" in args else None
print(json.dumps({"type": "system", "subtype": "init", "session_id": "init-session"}), flush=True)
if prompt == "hang":
    time.sleep(30)
if prompt == "fail":
    sys.stderr.write("boom\n")
    sys.exit(3)
text = "echo:%s:%s" % (prompt, resume)
delta = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}
print(json.dumps({"type": "stream_event", "event": delta}), flush=True)
print(json.dumps({"type": "result", "result": text, "session_id": "session-42"}), flush=True)
'''


@pytest.fixture
def channel(tmp_path):
    script = tmp_path / "fake_claude.py"
    script.write_text(FAKE_CLI, encoding="utf-8")
    return ClaudeAgentChannel([sys.executable, str(script)])


async def _collect(channel, start):
    """Run ``start`` and gather events until the process reports its end."""

    events = []
    finished = asyncio.Event()

    def listener(event):
        events.append(event)
        if isinstance(event, (AgentLoaded, AgentExit)):
            finished.set()

    unsubscribe = channel.subscribe(listener)
    try:
        result = await start()
        if result.success:
            await asyncio.wait_for(finished.wait(), timeout=20)
    finally:
        unsubscribe()
    return result, events


def _text(events):
    extractor = StreamTextExtractor()
    for event in events:
        if isinstance(event, AgentOutput):
            extractor.feed(event.chunk, event.stream)
    extractor.flush()
    return extractor.text


def test_load_agent_reports_the_session(channel, tmp_path):
    async def _run():
        return await _collect(channel, lambda: channel.load_agent("dev", tmp_path, "bmm"))

    result, events = asyncio.run(_run())

    assert result.success
    loaded = events[-1]
    assert isinstance(loaded, AgentLoaded)
    assert loaded.ok
    assert loaded.session_id == "session-42"
    outputs = [event for event in events if isinstance(event, AgentOutput)]
    assert outputs and all(event.is_load_phase for event in outputs)
    assert "echo:/bmad:bmm:agents:dev:None" in _text(events)


def test_send_message_resumes_the_session(channel, tmp_path):
    async def _run():
        return await _collect(
            channel, lambda: channel.send_message("dev", tmp_path, "hello", "session-42")
        )

    result, events = asyncio.run(_run())

    exit_event = events[-1]
    assert isinstance(exit_event, AgentExit)
    assert exit_event.code == 0
    assert not exit_event.cancelled
    assert exit_event.session_id == "session-42"
    assert _text(events) == "echo:hello:session-42"
    assert not any(event.is_load_phase for event in events if isinstance(event, AgentOutput))


def test_non_zero_exit_and_stderr(channel, tmp_path):
    async def _run():
        return await _collect(channel, lambda: channel.send_message("dev", tmp_path, "fail"))

    _, events = asyncio.run(_run())

    exit_event = events[-1]
    assert exit_event.code == 3
    assert exit_event.session_id == "init-session"
    assert any(
        event.stream == "stderr" and "boom" in event.chunk
        for event in events
        if isinstance(event, AgentOutput)
    )


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_cancel_message_terminates_the_process(channel, tmp_path):
    async def _run():
        events = []
        finished = asyncio.Event()

        def listener(event):
            events.append(event)
            if isinstance(event, AgentExit):
                finished.set()

        channel.subscribe(listener)
        await channel.send_message("dev", tmp_path, "hang")
        assert channel.is_running("dev")
        busy = await channel.send_message("dev", tmp_path, "second")
        assert channel.cancel_message("dev")
        await asyncio.wait_for(finished.wait(), timeout=20)
        return busy, events

    busy, events = asyncio.run(_run())

    assert not busy.success
    assert "already has a running process" in busy.error
    exit_event = events[-1]
    assert exit_event.cancelled
    assert exit_event.code is None
    assert exit_event.signal == "SIGTERM"
    assert not channel.is_running("dev")


def test_cancel_without_process_returns_false(channel):
    assert not channel.cancel_message("dev")


def test_missing_executable_fails_to_send(tmp_path):
    channel = ClaudeAgentChannel(str(tmp_path / "no-such-cli"))

    result = asyncio.run(channel.send_message("dev", tmp_path, "hello"))

    assert not result.success
    assert result.error


def test_arguments_include_model_and_resume():
    channel = ClaudeAgentChannel("claude", model="opus", extra_args=["--dangerously-skip-permissions"])

    args = channel._build_args("hi", "abc")

    assert args == [
        "claude",
        "--output-format",
        "stream-json",
        "--print",
        "--verbose",
        "--model",
        "opus",
        "--dangerously-skip-permissions",
        "--resume",
        "abc",
        "-p",
        "hi",
    ]
