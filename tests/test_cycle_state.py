import pytest

from storycycle.domain.cycle_state import (
    CycleStateStore,
    EpicPhase,
    EpicStoryStatus,
)
from storycycle.domain.outcomes import ErrorKind
from storycycle.domain.steps import StepStatus


def test_snapshots_are_copies():
    store = CycleStateStore()
    store.start_cycle("1-1-setup", 3)

    snapshot = store.single
    snapshot.step_statuses[0] = StepStatus.ERROR
    snapshot.logs.append("tampered")

    assert store.single.step_statuses[0] is StepStatus.PENDING
    assert store.single.logs == []


def test_start_cycle_resets_everything_but_minimized():
    store = CycleStateStore()
    store.set_minimized(True)
    store.start_cycle("1-1-setup", 2)
    store.append_log("line")
    store.fail_cycle(1, "boom", ErrorKind.GIT_FAILURE)

    store.start_cycle("1-2-login", 4)
    state = store.single

    assert state.story_id == "1-2-login"
    assert state.step_statuses == [StepStatus.PENDING] * 4
    assert state.logs == []
    assert state.error is None and state.failed_step is None
    assert state.minimized
    assert state.is_running
    assert state.start_time is not None


def test_step_lifecycle_and_failure():
    store = CycleStateStore()
    store.start_cycle("1-1-setup", 3)
    store.begin_step(0, "Create Story File")
    store.finish_step(0, StepStatus.SKIPPED)
    store.begin_step(1, "Create Git Branch")
    store.fail_cycle(1, "checkout failed", ErrorKind.GIT_FAILURE)

    state = store.single

    assert state.step_statuses == [StepStatus.SKIPPED, StepStatus.ERROR, StepStatus.PENDING]
    assert state.failed_step == 1
    assert state.error_kind is ErrorKind.GIT_FAILURE
    assert not state.is_running
    assert state.first_incomplete_step() == 1


def test_finish_step_rejects_non_final_status():
    store = CycleStateStore()
    store.start_cycle("1-1-setup", 1)

    with pytest.raises(ValueError):
        store.finish_step(0, StepStatus.RUNNING)


def test_prepare_retry_keeps_earlier_steps():
    store = CycleStateStore()
    store.start_cycle("1-1-setup", 4)
    for index in range(2):
        store.begin_step(index, "step")
        store.finish_step(index, StepStatus.COMPLETED)
    store.begin_step(2, "step")
    store.fail_cycle(2, "boom", ErrorKind.NON_ZERO_EXIT)

    store.prepare_retry(2)
    state = store.single

    assert state.step_statuses == [
        StepStatus.COMPLETED,
        StepStatus.COMPLETED,
        StepStatus.PENDING,
        StepStatus.PENDING,
    ]
    assert state.current_step == 2
    assert state.is_running
    assert state.error is None and state.error_kind is None


def test_cancel_marks_the_running_step():
    store = CycleStateStore()
    store.start_cycle("1-1-setup", 2)
    store.begin_step(0, "step")

    store.cancel_cycle()
    state = store.single

    assert state.step_statuses == [StepStatus.ERROR, StepStatus.PENDING]
    assert state.error == "cancelled"
    assert state.error_kind is ErrorKind.CANCELLED


def test_complete_cycle_moves_past_the_last_step():
    store = CycleStateStore()
    store.start_cycle("1-1-setup", 1)
    store.begin_step(0, "Merge to Base")
    store.finish_step(0, StepStatus.COMPLETED)
    store.complete_cycle()

    state = store.single

    assert state.current_step == state.total_steps == 1
    assert state.step_name == ""
    assert not state.is_running


def test_subscribers_see_previous_and_current():
    store = CycleStateStore()
    changes = []
    unsubscribe = store.subscribe(changes.append)

    store.start_cycle("1-1-setup", 1)
    store.start_epic(1, ["1-1-setup"])
    unsubscribe()
    store.append_log("unseen")

    assert [change.kind for change in changes] == ["single", "epic"]
    assert not changes[0].previous.is_running
    assert changes[0].current.is_running


def test_failing_listener_does_not_block_others():
    store = CycleStateStore()
    seen = []

    def broken(change):
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.subscribe(seen.append)
    store.append_log("line")

    assert len(seen) == 1


def test_epic_phases():
    store = CycleStateStore()
    assert store.epic.phase is EpicPhase.SETUP

    store.start_epic(2, ["2-1-maps", "2-2-routes"])
    assert store.epic.phase is EpicPhase.RUNNING
    assert store.epic.current_story == "2-1-maps"

    store.mark_story(0, EpicStoryStatus.RUNNING)
    store.advance_story()
    store.fail_epic("Story failed: boom")
    epic = store.epic
    assert epic.phase is EpicPhase.ERROR
    assert epic.story_statuses == [EpicStoryStatus.COMPLETED, EpicStoryStatus.ERROR]

    store.retry_epic()
    assert store.epic.story_statuses[1] is EpicStoryStatus.PENDING
    store.advance_story()
    store.complete_epic()
    assert store.epic.phase is EpicPhase.COMPLETE
    assert store.epic.to_dict()["phase"] == "complete"

    store.reset_epic()
    assert store.epic.phase is EpicPhase.SETUP
