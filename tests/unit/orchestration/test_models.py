"""Tests for run state models and persistence"""
import json
import threading

import pytest

from hive.orchestration.events import EventLog
from hive.orchestration.models import Iteration, RunState
from hive.orchestration.state import RunStateStore


def test_run_state_defaults():
    state = RunState(run_id="r1", objective="Add search")
    assert state.status == "running"
    assert state.current_phase == "init"
    assert state.iteration.attempt == 0
    assert state.context == {"tech_stack": [], "key_files": [], "patterns_established": []}


def test_run_state_rejects_unknown_status():
    with pytest.raises(ValueError):
        RunState(run_id="r1", objective="x", status="paused")
    state = RunState(run_id="r1", objective="x")
    with pytest.raises(ValueError):
        state.set_status("paused")


def test_running_state_needs_a_phase():
    with pytest.raises(ValueError):
        RunState(run_id="r1", objective="x", current_phase=None)
    assert RunState(run_id="r1", objective="x", status="complete", current_phase=None).status == "complete"


def test_decisions_and_blockers():
    state = RunState(run_id="r1", objective="x")
    state.add_decision("architect", "Use Postgres", "relational data")
    state.add_blocker("implementer", "Missing API key", task_id="bd-3")
    state.add_blocker("tester", "Flaky CI")
    state.resolve_blocker(0, "Key added")

    assert state.decisions[0].author == "architect"
    assert [b.description for b in state.open_blockers()] == ["Flaky CI"]
    assert state.blockers[0].resolution == "Key added"


def test_context_values_are_unique_and_sorted():
    state = RunState(run_id="r1", objective="x")
    for path in ["b.py", "a.py", "b.py"]:
        state.add_key_file(path)
    state.add_tech("nuxt")
    state.add_pattern("repository pattern")
    assert state.context["key_files"] == ["a.py", "b.py"]
    assert state.context["tech_stack"] == ["nuxt"]
    assert state.context["patterns_established"] == ["repository pattern"]


def test_iteration_lifecycle():
    state = RunState(run_id="r1", objective="x", iteration=Iteration(max_attempts=2))
    state.start_iteration("implementation")
    assert state.iteration.attempt == 1
    assert not state.iteration.exhausted

    assert state.increment_attempt() == 2
    assert state.iteration.exhausted
    state.add_iteration_history("implementer", "needs_revision", "lint failed")
    assert state.iteration.history[0]["error"] == "lint failed"

    state.reset_iteration()
    assert state.iteration.attempt == 0
    assert state.iteration.history == []


def test_tasks_and_agents():
    state = RunState(run_id="r1", objective="x")
    state.add_pending_task("bd-1", "Build form", "implementer")
    assert state.complete_task("bd-1") is True
    assert state.complete_task("bd-1") is False
    assert state.completed_tasks[0]["task_id"] == "bd-1"

    state.mark_agent_complete("architect")
    assert state.is_agent_complete("architect")
    assert not state.is_agent_complete("tester")


def test_review_flags_and_injected_phases():
    state = RunState(run_id="r1", objective="x")
    assert state.needs_extra_review is False

    state.flag_low_confidence("tester")
    assert state.needs_extra_review is True
    assert state.low_confidence_agent == "tester"

    state.record_injected_phase("extra_review", "reviewer", "12 files modified")
    assert state.has_injected("extra_review")
    assert not state.has_injected("security_review")

    legacy = state.to_dict()
    for key in ("needs_extra_review", "low_confidence_agent", "injected_phases"):
        del legacy[key]
    restored = RunState.from_dict(legacy)
    assert restored.needs_extra_review is False
    assert restored.injected_phases == []


def test_summary_keeps_last_five_decisions():
    state = RunState(run_id="r1", objective="x")
    for i in range(7):
        state.add_decision("architect", f"d{i}")
    summary = state.summary()
    assert [d["decision"] for d in summary["decisions"]] == ["d2", "d3", "d4", "d5", "d6"]


def test_run_state_round_trip():
    state = RunState(run_id="r1", objective="x", epic_id="e1")
    state.add_decision("architect", "Use Postgres")
    state.add_blocker("tester", "Flaky CI")
    state.record_failure("tester", "3 tests failed", 2)
    state.flag_low_confidence("implementer")
    state.record_injected_phase("security_review", "security", "2 high issues")

    restored = RunState.from_dict(json.loads(json.dumps(state.to_dict())))
    assert restored == state


def test_to_dict_is_a_deep_copy():
    state = RunState(run_id="r1", objective="x")
    snapshot = state.to_dict()
    state.add_key_file("late.py")
    assert snapshot["context"]["key_files"] == []


def test_store_init_and_load(hive_dir):
    store = RunStateStore(hive_dir)
    assert store.load() is None
    assert not store.exists()

    state = store.init("Add search", run_id="run-9", max_attempts=5)
    loaded = store.load()
    assert loaded.run_id == "run-9"
    assert loaded.iteration.max_attempts == 5
    assert state.objective == loaded.objective


def test_store_update_without_state(hive_dir):
    with pytest.raises(RuntimeError):
        RunStateStore(hive_dir).update(lambda s: s.set_phase("x"))


def test_concurrent_updates_are_not_lost(state_store):
    def add_files(prefix):
        for i in range(20):
            state_store.update(lambda s, i=i: s.add_key_file(f"{prefix}{i:02d}.py"))

    threads = [threading.Thread(target=add_files, args=(p,)) for p in "abcd"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(state_store.load().context["key_files"]) == 80


def test_event_log(tmp_path):
    log = EventLog(tmp_path / ".hive", run_id="run-1")
    log.log("checkpoint_saved", checkpoint_id="c1")
    log.log("agent_selfeval", agent="tester", confidence=0.8)
    log.log("agent_selfeval", agent="reviewer", confidence=0.9)

    assert len(log.read()) == 3
    assert [e.data["agent"] for e in log.by_type("agent_selfeval")] == ["tester", "reviewer"]
    assert len(log.by_agent("tester")) == 1
    assert len(log.by_run("run-1")) == 3
    assert log.last(1)[0].data["agent"] == "reviewer"
    assert log.counts() == {"checkpoint_saved": 1, "agent_selfeval": 2}


def test_event_log_missing_file(tmp_path):
    assert EventLog(tmp_path).read() == []


def test_event_log_skips_partial_lines(tmp_path, caplog):
    log = EventLog(tmp_path / ".hive")
    log.log("checkpoint_saved", checkpoint_id="c1")
    with open(log.path, "a") as f:
        f.write('{"ts": "2026-10-18T12:00:00Z", "event": "checkpoint_sa')

    with caplog.at_level("WARNING"):
        events = log.read()
    assert [e.event for e in events] == ["checkpoint_saved"]
    assert "Skipping unreadable event" in caplog.text
