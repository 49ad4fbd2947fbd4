"""Tests for checkpoint system"""
from datetime import datetime, timezone

import pytest

from hive.execution.protocol import TaskTracker
from hive.orchestration.checkpoint import CheckpointStore, resume_action_for
from hive.orchestration.errors import CheckpointNotFoundError
from hive.orchestration.events import EventLog
from hive.orchestration.handoff import HandoffStore


class StaticTracker(TaskTracker):
    def __init__(self, tasks):
        self.tasks = tasks

    def list_tasks(self):
        return self.tasks


@pytest.fixture
def store(hive_dir, state_store, clock):
    return CheckpointStore(hive_dir, state_store, clock=clock)


def test_save_writes_snapshot(hive_dir, state_store, clock):
    handoffs = HandoffStore(hive_dir)
    handoffs.create("architect", "implementer", "Plan ready")
    tracker = StaticTracker([{"id": "bd-1", "title": "Build form", "status": "open"}])
    store = CheckpointStore(hive_dir, state_store, handoffs=handoffs, tracker=tracker, clock=clock)

    checkpoint_id = store.save("before refactor")
    assert checkpoint_id == "20261018_120000"

    checkpoint = store.show(checkpoint_id)
    assert checkpoint.reason == "before refactor"
    assert checkpoint.version == "1.0"
    assert checkpoint.created_at == "2026-10-18T12:00:00Z"
    assert checkpoint.run_state["run_id"] == "run-1"
    assert checkpoint.task_snapshot == [{"id": "bd-1", "title": "Build form", "status": "open"}]
    assert checkpoint.handoff_ids == ["architect-to-implementer-001"]


def test_save_without_live_state(hive_dir, clock):
    from hive.orchestration.state import RunStateStore

    store = CheckpointStore(hive_dir, RunStateStore(hive_dir), clock=clock)
    with pytest.raises(RuntimeError):
        store.save()


def test_checkpoint_is_isolated_from_later_changes(store, state_store):
    checkpoint_id = store.save("snapshot")
    state_store.update(lambda s: s.set_phase("testing"))
    assert store.show(checkpoint_id).phase == "init"


def test_same_second_ids_get_a_suffix(hive_dir, state_store):
    moment = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)
    store = CheckpointStore(hive_dir, state_store, clock=lambda: moment)

    ids = [store.save(f"save {i}") for i in range(3)]
    assert ids == ["20261018_120000", "20261018_120000_01", "20261018_120000_02"]
    assert [s.checkpoint_id for s in store.list()] == list(reversed(ids))
    assert store.latest() == "20261018_120000_02"


def test_list_is_newest_first_with_summaries(store, state_store):
    store.save("first")
    state_store.update(lambda s: s.set_phase("implementation"))
    store.save("second")

    summaries = store.list()
    assert [s.reason for s in summaries] == ["second", "first"]
    assert summaries[0].phase == "implementation"
    assert summaries[0].status == "running"


def test_latest_when_empty(store):
    assert store.latest() is None
    assert store.list() == []


def test_restore_overwrites_live_state(store, state_store):
    def advance(state):
        state.set_phase("testing")
        state.set_agent("tester")

    state_store.update(advance)
    checkpoint_id = store.save("mid run")
    state_store.update(lambda s: s.set_phase("review"))

    context = store.restore(checkpoint_id)
    assert context.to_dict() == {
        "checkpoint_id": checkpoint_id,
        "run_id": "run-1",
        "epic_id": "epic-7",
        "objective": "Build the login page",
        "phase": "testing",
        "agent": "tester",
        "status": "running",
    }
    assert state_store.load().current_phase == "testing"


def test_restore_unknown_checkpoint(store):
    with pytest.raises(CheckpointNotFoundError) as excinfo:
        store.restore("20000101_000000")
    assert "20000101_000000" in str(excinfo.value)
    with pytest.raises(LookupError):
        store.show("nope")


@pytest.mark.parametrize(
    "status, attempt, max_attempts, agent, expected",
    [
        ("complete", 5, 3, "tester", "none"),
        ("complete", 0, 3, None, "none"),
        ("running", 3, 3, "tester", "escalate"),
        ("blocked", 4, 3, None, "escalate"),
        ("running", 1, 3, "tester", "retry_agent"),
        ("running", 1, 3, None, "continue_phase"),
        ("running", 0, 3, "", "continue_phase"),
    ],
)
def test_resume_action_priority(status, attempt, max_attempts, agent, expected):
    assert resume_action_for(status, attempt, max_attempts, agent) == expected


def test_get_resume_action(store, state_store):
    def fail(state):
        state.set_phase("testing")
        state.set_agent("tester")
        state.start_iteration("testing")
        state.increment_attempt()
        state.increment_attempt()

    state_store.update(fail)
    checkpoint_id = store.on_failure("tester", "3 tests failed", 3)
    assert checkpoint_id == "20261018_120000"
    assert store.show(checkpoint_id).reason == "failure_tester_attempt_3"

    action = store.get_resume_action(checkpoint_id)
    assert action.action == "escalate"
    assert action.attempt == 3
    assert action.max_attempts == 3
    assert action.last_failure["error"] == "3 tests failed"
    assert state_store.load().last_failure.agent == "tester"


def test_completed_run_resumes_with_nothing_to_do(store, state_store):
    def finish(state):
        state.iteration.attempt = 9
        state.set_status("complete")

    state_store.update(finish)
    assert store.get_resume_action(store.save("done")).action == "none"


def test_cleanup_keeps_most_recent(store):
    ids = [store.save(f"save {i}") for i in range(15)]

    removed = store.cleanup(10)
    assert removed == ids[:5][::-1]
    assert [s.checkpoint_id for s in store.list()] == ids[5:][::-1]


def test_cleanup_noop_when_under_limit(store):
    store.save()
    store.save()
    assert store.cleanup(10) == []
    assert len(store.list()) == 2


def test_delete(store):
    checkpoint_id = store.save()
    assert store.delete(checkpoint_id) is True
    assert store.delete(checkpoint_id) is False
    assert store.latest() is None


def test_agent_context(store, state_store):
    def work(state):
        state.add_decision("architect", "Use Postgres", "relational")
        state.add_blocker("implementer", "Missing key")
        state.add_pending_task("bd-2", "Write tests", "tester")

    state_store.update(work)
    context = store.agent_context(store.save())
    assert context["objective"] == "Build the login page"
    assert context["epic_id"] == "epic-7"
    assert context["decisions"] == [{"decision": "Use Postgres", "rationale": "relational", "author": "architect"}]
    assert context["open_blockers"] == ["Missing key"]
    assert context["pending_tasks"][0]["task_id"] == "bd-2"
    assert context["last_failure"] is None


def test_events_are_logged(hive_dir, state_store, clock):
    events = EventLog(hive_dir)
    store = CheckpointStore(hive_dir, state_store, events=events, clock=clock)
    checkpoint_id = store.save("manual")
    store.restore(checkpoint_id)
    assert [e.event for e in events.read()] == ["checkpoint_saved", "checkpoint_restored"]


def test_unreadable_checkpoint_is_skipped(store, hive_dir, caplog):
    checkpoint_id = store.save("good")
    (hive_dir / "checkpoints" / "20990101_000000.json").write_text('{"checkpoint_id": ')
    (hive_dir / "checkpoints" / "20990101_000001.json").write_text('{"reason": "no id"}')

    with caplog.at_level("WARNING"):
        assert [s.checkpoint_id for s in store.list()] == [checkpoint_id]
        assert store.latest() == checkpoint_id
        assert store.cleanup(keep=1) == []
    assert "Skipping unreadable checkpoint 20990101_000000.json" in caplog.text
