import asyncio

import pytest

from storycycle.domain.cycle_state import CycleStateStore
from storycycle.domain.outcomes import ErrorKind
from storycycle.domain.steps import StepStatus
from storycycle.errors import CycleAlreadyRunning, NothingToRetry
from storycycle.integrations.agent_channel import AgentExit
from storycycle.integrations.conversation import InMemoryConversationLog
from storycycle.orchestration.agent_session import SessionSettings
from storycycle.orchestration.single_cycle import SingleCycleOrchestrator
from tests.helpers import (
    FakeAgentChannel,
    FakeGit,
    FakeStatusUpdater,
    Reply,
    eventually,
    story_file,
    write_sprint,
)

STORY = "1-1-setup"
C, S, E, P = StepStatus.COMPLETED, StepStatus.SKIPPED, StepStatus.ERROR, StepStatus.PENDING


@pytest.fixture
def project(tmp_path):
    stories = write_sprint(
        tmp_path, {STORY: "ready-for-dev", "1-2-login": "backlog"}, with_files=False
    )
    story_file(stories, STORY)
    return tmp_path


def _cycle(project, **kwargs):
    store = CycleStateStore()
    channel = kwargs.pop("channel", FakeAgentChannel())
    git = kwargs.pop("git", FakeGit())
    updater = kwargs.pop("status_updater", FakeStatusUpdater())
    cycle = SingleCycleOrchestrator(
        store,
        channel=channel,
        git=git,
        status_updater=updater,
        project_path=project,
        session_settings=SessionSettings(settle_delay=0, recheck_delay=0),
        **kwargs,
    )
    return store, cycle, channel, git, updater


def _run_story(cycle, story_id=STORY):
    async def _drive():
        cycle.start(story_id)
        return await cycle.wait()

    return asyncio.run(_drive())


def test_full_cycle_runs_every_step(project):
    store, cycle, channel, git, updater = _cycle(project)

    state = _run_story(cycle)

    # The story file exists, so creation is skipped; nothing changes on disk, so commits skip.
    assert state.step_statuses == [S, C, S, C, S, C, S, C, S, C]
    assert not state.is_running
    assert state.error is None
    assert state.current_step == state.total_steps == 10
    assert channel.loads == ["dev", "dev"]
    assert channel.sent_messages("dev") == [
        f"/bmad-bmm-dev-story {STORY}",
        f"/bmad-bmm-code-review {STORY}",
    ]
    story_path = project / "_bmad-output" / "implementation-artifacts" / f"{STORY}.md"
    assert updater.updates == [(story_path, "done")]
    assert git.merged == [STORY]
    assert state.session_id == "session-1"
    assert state.logs[0] == f"Starting full cycle for {STORY}"
    assert state.logs[-1] == "=== Full cycle complete! ==="


def test_missing_story_file_runs_create_story(project):
    store, cycle, channel, git, updater = _cycle(project)

    state = _run_story(cycle, "1-2-login")

    assert state.step_statuses[0] is C
    assert channel.loads[0] == "sm"
    assert channel.sent_messages("sm") == ["/bmad-bmm-create-story 1-2-login"]
    # Without a story file there is nothing to mark done.
    assert updater.updates == []
    assert state.step_statuses[7] is C


def test_in_progress_story_skips_implementation(tmp_path):
    write_sprint(tmp_path, {STORY: "in-progress"})
    store, cycle, channel, git, updater = _cycle(tmp_path)

    state = _run_story(cycle)

    assert state.step_statuses[3] is S
    assert channel.sent_messages("dev") == [f"/bmad-bmm-code-review {STORY}"]


def test_changes_are_committed_with_story_scope(project):
    store, cycle, channel, git, _ = _cycle(project)
    original_send = channel.send_message

    async def send_and_edit(*args, **kwargs):
        git.dirty = True
        return await original_send(*args, **kwargs)

    channel.send_message = send_and_edit

    state = _run_story(cycle)

    assert state.step_statuses[4] is C
    assert state.step_statuses[6] is C
    assert git.commits == [
        f"feat({STORY}): implement story",
        f"fix({STORY}): address code review feedback",
    ]


def test_other_tools_receive_rewritten_commands(project):
    store, cycle, channel, _, _ = _cycle(project, ai_tool="codex")

    _run_story(cycle)

    assert channel.sent_messages("dev")[0] == f"*dev-story {STORY}"


def test_fresh_context_steps_clear_the_conversation(project):
    conversation = InMemoryConversationLog()
    conversation.set_session_id("dev", "stale-session")
    store, cycle, channel, _, _ = _cycle(project, conversation=conversation)

    _run_story(cycle)

    assert ("dev", f"/bmad-bmm-dev-story {STORY}", "stale-session") not in channel.sent
    assert channel.loads == ["dev", "dev"]
    assert [m.content for m in conversation.thread("dev").messages][0] == (
        f"/bmad-bmm-code-review {STORY}"
    )


def test_merge_conflict_halts_the_cycle(project):
    git = FakeGit()
    git.conflicts.add(STORY)
    store, cycle, _, _, _ = _cycle(project, git=git)

    state = _run_story(cycle)

    assert state.step_statuses[-1] is E
    assert state.failed_step == 9
    assert state.error_kind is ErrorKind.MERGE_CONFLICT
    assert not state.is_running


def test_collaborator_exception_becomes_internal_error(project):
    class BrokenGit(FakeGit):
        async def has_changes(self, path):
            raise RuntimeError("disk on fire")

    store, cycle, _, _, _ = _cycle(project, git=BrokenGit())

    state = _run_story(cycle)

    assert state.error_kind is ErrorKind.INTERNAL
    assert "disk on fire" in state.error
    assert state.failed_step == 2


def test_start_while_running_is_refused(project):
    channel = FakeAgentChannel()
    channel.queue(Reply(hang=True))
    store, cycle, _, _, _ = _cycle(project, channel=channel)

    async def _drive():
        cycle.start(STORY)
        with pytest.raises(CycleAlreadyRunning):
            cycle.start("1-2-login")
        await eventually(lambda: "dev" in channel.hanging)
        cycle.cancel()
        return await cycle.wait()

    state = asyncio.run(_drive())

    assert state.story_id == STORY


def test_retry_resumes_at_the_failed_step(project):
    git = FakeGit()
    git.dirty = True
    git.commit_error = "fatal: Unable to create index.lock"
    store, cycle, channel, _, _ = _cycle(project, git=git)

    async def _drive():
        cycle.start("1-2-login")
        failed = await cycle.wait()

        touched = []
        store.subscribe(
            lambda change: touched.extend(
                index
                for index, status in enumerate(change.current.step_statuses)
                if index < len(change.previous.step_statuses)
                and status is not change.previous.step_statuses[index]
            )
        )
        git.commit_error = None
        cycle.retry()
        return failed, await cycle.wait(), touched

    failed, final, touched = asyncio.run(_drive())

    assert failed.step_statuses[:4] == [C, C, E, P]
    assert failed.failed_step == 2
    assert final.error is None
    assert final.step_statuses[:3] == [C, C, C]
    assert all(status.is_done for status in final.step_statuses)
    assert min(touched) == 2
    assert channel.sent_messages("sm") == ["/bmad-bmm-create-story 1-2-login"]


def test_retry_without_a_failed_run_is_refused(project):
    store, cycle, _, _, _ = _cycle(project)

    async def _drive():
        with pytest.raises(NothingToRetry):
            cycle.retry()
        cycle.start(STORY)
        await cycle.wait()
        with pytest.raises(NothingToRetry):
            cycle.retry()

    asyncio.run(_drive())


def test_cancel_stops_the_run_and_ignores_late_events(project):
    channel = FakeAgentChannel()
    channel.queue(Reply(hang=True))
    store, cycle, _, git, _ = _cycle(project, channel=channel)

    async def _drive():
        cycle.start(STORY)
        await eventually(lambda: "dev" in channel.hanging)
        assert cycle.cancel()
        changes = []
        store.subscribe(changes.append)
        await cycle.wait()
        channel.emit(AgentExit("dev", 0, session_id="late-session"))
        for _ in range(5):
            await asyncio.sleep(0)
        return store.single, changes

    state, changes = asyncio.run(_drive())

    assert state.error == "cancelled"
    assert state.error_kind is ErrorKind.CANCELLED
    assert state.step_statuses[:4] == [S, C, S, E]
    assert state.failed_step == 3
    assert changes == []
    assert channel.cancelled == ["dev"]
    assert git.called("merge_branch") == []
    assert cycle.current_run_id is None
    assert not cycle.cancel()


def test_retry_after_cancel_reruns_the_cancelled_step(project):
    channel = FakeAgentChannel()
    channel.queue(Reply(hang=True))
    store, cycle, _, _, _ = _cycle(project, channel=channel)

    async def _drive():
        cycle.start(STORY)
        await eventually(lambda: "dev" in channel.hanging)
        cycle.cancel()
        await cycle.wait()
        cycle.retry()
        return await cycle.wait()

    state = asyncio.run(_drive())

    assert state.error is None
    assert all(status.is_done for status in state.step_statuses)
    assert channel.sent_messages("dev").count(f"/bmad-bmm-dev-story {STORY}") == 2


def test_retry_immediately_after_cancel_replaces_the_run(project):
    channel = FakeAgentChannel()
    channel.queue(Reply(hang=True))
    store, cycle, _, git, _ = _cycle(project, channel=channel)

    async def _drive():
        cycle.start(STORY)
        await eventually(lambda: "dev" in channel.hanging)
        cancelled_run = cycle.current_run_id
        cycle.cancel()
        cycle.retry()
        assert cycle.current_run_id not in (None, cancelled_run)
        return await cycle.wait()

    state = asyncio.run(_drive())

    assert state.error is None
    assert all(status.is_done for status in state.step_statuses)
    assert git.merged == [STORY]
