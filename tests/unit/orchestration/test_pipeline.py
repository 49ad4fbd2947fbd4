"""Tests for the reference Pipeline"""
import json

import pytest

from hive.config.schema import HiveConfig
from hive.execution.protocol import AgentWorker
from hive.orchestration.environment import EnvironmentReport
from hive.orchestration.errors import CheckpointNotFoundError
from hive.orchestration.pipeline import Pipeline


def report_block(**report):
    data = {"status": "complete", "confidence": 0.9, "summary": "done"}
    data.update(report)
    return f"<!--HIVE_REPORT\n{json.dumps(data)}\nHIVE_REPORT-->"


PASS = report_block()
NEEDS_REVISION = (
    '<!--HIVE_CRITIQUE\n{"critique_passed": false, "ready_to_submit": false, '
    '"issues_found": [{"issue": "no error handling", "severity": "high", "fixable": true}]}\n'
    "HIVE_CRITIQUE-->\n" + PASS
)


class RoleWorker(AgentWorker):
    """Replies from a per-role script, then with a default"""

    def __init__(self, scripts=None, default=PASS):
        self.scripts = {role: list(replies) for role, replies in (scripts or {}).items()}
        self.default = default
        self.calls = []

    async def invoke(self, role, prompt, context):
        self.calls.append((role, prompt, context))
        script = self.scripts.get(role)
        reply = script.pop(0) if script else self.default
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def roles(self):
        return [role for role, _, _ in self.calls]


def make_pipeline(hive_dir, worker, clock, config=None, **kwargs):
    return Pipeline(
        hive_dir,
        worker,
        config=config or HiveConfig.default(),
        environment=EnvironmentReport(),
        clock=clock,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_happy_path(hive_dir, clock):
    worker = RoleWorker()
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint", run_id="run-1")

    assert result.success is True
    assert result.status == "complete"
    assert worker.roles == ["architect", "implementer", "tester", "reviewer"]
    assert [p.result for p in result.phases] == ["pass"] * 4

    state = pipeline.state_store.load()
    assert state.status == "complete"
    assert [a["agent"] for a in state.completed_agents] == ["architect", "implementer", "tester", "reviewer"]

    assert pipeline.handoffs.list_ids() == [
        "architect-to-implementer-001",
        "implementer-to-tester-001",
        "tester-to-reviewer-001",
    ]
    assert all(pipeline.handoffs.read(h).status == "complete" for h in pipeline.handoffs.list_ids())
    assert [s.reason for s in pipeline.checkpoints.list()] == ["run_complete", "run_start"]


@pytest.mark.asyncio
async def test_worker_sees_handoff_and_run_summary(hive_dir, clock):
    worker = RoleWorker(scripts={"architect": [report_block(summary="Use FastAPI")]})
    pipeline = make_pipeline(hive_dir, worker, clock)
    await pipeline.run("Add a health endpoint")

    _, prompt, context = worker.calls[1]
    assert "Role: implementer" in prompt
    assert "## Before Finalizing: Self-Critique" in prompt
    assert "(no_debug_code)" in prompt
    assert context["run"]["objective"] == "Add a health endpoint"
    assert context["handoff"]["summary"] == "Use FastAPI"


@pytest.mark.asyncio
async def test_critique_triggers_retry_with_feedback(hive_dir, clock):
    worker = RoleWorker(scripts={"implementer": [NEEDS_REVISION, PASS]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.success is True
    implementer = result.phases[1]
    assert implementer.attempts == 2
    retry_prompt = [p for role, p, _ in worker.calls if role == "implementer"][1]
    assert "Your self-critique identified the following issues:" in retry_prompt
    assert "no error handling" in retry_prompt


@pytest.mark.asyncio
async def test_exhausted_attempts_escalate(hive_dir, clock):
    blocked = report_block(status="blocked", confidence=0.2, blockers=["db down"])
    worker = RoleWorker(scripts={"tester": [blocked] * 5})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.success is False
    assert result.status == "blocked"
    assert result.error == "db down"
    assert worker.roles.count("tester") == 3
    assert "reviewer" not in worker.roles

    state = pipeline.state_store.load()
    assert state.status == "blocked"
    assert state.last_failure.agent == "tester"
    assert state.last_failure.attempt == 3

    checkpoint = pipeline.checkpoints.show(result.checkpoint_id)
    assert checkpoint.reason == "failure_tester_attempt_3"
    assert pipeline.checkpoints.get_resume_action(result.checkpoint_id).action == "escalate"


@pytest.mark.asyncio
async def test_build_failure_detours_through_debugger(hive_dir, clock):
    failing = report_block(status="partial", confidence=0.4, blockers=["Build failed: cannot compile"])
    worker = RoleWorker(scripts={"implementer": [failing, PASS]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.success is True
    assert worker.roles[:4] == ["architect", "implementer", "debugger", "implementer"]
    document = pipeline.handoffs.read("implementer-to-debugger-001")
    assert document.status == "complete"
    assert document.results == {"result": "pass"}


@pytest.mark.asyncio
async def test_worker_exception_is_retried(hive_dir, clock):
    worker = RoleWorker(scripts={"reviewer": [RuntimeError("agent crashed"), PASS]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.success is True
    assert result.phases[-1].attempts == 2
    history = pipeline.checkpoints.show(result.checkpoint_id).run_state["completed_agents"]
    assert history[-1]["agent"] == "reviewer"


@pytest.mark.asyncio
async def test_missing_report_is_accepted(hive_dir, clock):
    pipeline = make_pipeline(hive_dir, RoleWorker(default="all done, no report"), clock)
    result = await pipeline.run("Add a health endpoint")
    assert result.success is True
    assert {p.result for p in result.phases} == {"no_report"}


@pytest.mark.asyncio
async def test_resume_retries_the_recorded_agent(hive_dir, clock):
    worker = RoleWorker()
    pipeline = make_pipeline(hive_dir, worker, clock)

    def at_testing(state):
        state.set_phase("testing")
        state.set_agent("tester")
        state.start_iteration("testing")

    pipeline.state_store.init("Add a health endpoint", run_id="run-1")
    pipeline.state_store.update(at_testing)
    pipeline.checkpoints.save("manual")

    result = await pipeline.resume()

    assert result.success is True
    assert worker.roles == ["tester", "reviewer"]


@pytest.mark.asyncio
async def test_resume_after_escalation_does_not_run_agents(hive_dir, clock):
    blocked = report_block(status="blocked", confidence=0.2, blockers=["db down"])
    worker = RoleWorker(scripts={"architect": [blocked] * 3})
    pipeline = make_pipeline(hive_dir, worker, clock)
    await pipeline.run("Add a health endpoint")
    calls = len(worker.calls)

    result = await pipeline.resume()
    assert result.status == "blocked"
    assert len(worker.calls) == calls


@pytest.mark.asyncio
async def test_resume_completed_run(hive_dir, clock):
    pipeline = make_pipeline(hive_dir, RoleWorker(), clock)
    await pipeline.run("Add a health endpoint")

    result = await pipeline.resume()
    assert result.success is True
    assert result.status == "complete"


@pytest.mark.asyncio
async def test_resume_without_checkpoints(hive_dir, clock):
    with pytest.raises(CheckpointNotFoundError):
        await make_pipeline(hive_dir, RoleWorker(), clock).resume()


@pytest.mark.asyncio
async def test_branch_scheduler_shares_the_worker(hive_dir, clock):
    worker = RoleWorker()
    pipeline = make_pipeline(hive_dir, worker, clock)
    scheduler = pipeline.branch_scheduler()
    scheduler.poll_interval = 0.01
    scheduler.init("run-1", [{"name": "api", "phases": [{"name": "build"}]}])

    context = await scheduler.run("run-1", timeout=10)
    assert context["summary"]["completed"] == 1
    assert worker.roles == ["implementer"]


@pytest.mark.asyncio
async def test_agent_output_is_parsed_once_per_attempt(hive_dir, clock):
    pipeline = make_pipeline(hive_dir, RoleWorker(), clock)
    parsed = []
    extract_all = pipeline.protocol.extract_all

    def counting(raw):
        parsed.append(raw)
        return extract_all(raw)

    pipeline.protocol.extract_all = counting
    await pipeline.run("Add a health endpoint")
    assert len(parsed) == 4


@pytest.mark.asyncio
async def test_low_confidence_checkpoints_and_flags_review(hive_dir, clock):
    worker = RoleWorker(scripts={"implementer": [report_block(confidence=0.5)]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.success is True
    implementer = result.phases[1]
    assert implementer.result == "pass_low_confidence"
    assert implementer.confidence == 0.5
    assert implementer.low_confidence is True
    assert pipeline.checkpoints.show(implementer.checkpoint_id).reason == "low_confidence_implementer"
    assert [p.low_confidence for p in result.phases] == [False, True, False, False]

    state = pipeline.state_store.load()
    assert state.needs_extra_review is True
    assert state.low_confidence_agent == "implementer"
    gate = pipeline.events.by_type("confidence_gate")
    assert [(e.data["agent"], e.data["confidence"]) for e in gate] == [("implementer", 0.5)]


@pytest.mark.asyncio
async def test_critique_penalties_count_against_the_gate(hive_dir, clock):
    critiqued = (
        '<!--HIVE_CRITIQUE\n{"critique_passed": true, "ready_to_submit": true, '
        '"issues_found": [{"issue": "racy cache", "severity": "blocker"}]}\nHIVE_CRITIQUE-->\n'
        + report_block(confidence=0.8)
    )
    worker = RoleWorker(scripts={"architect": [critiqued]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.phases[0].confidence == 0.5
    assert result.phases[0].low_confidence is True
    assert pipeline.state_store.load().low_confidence_agent == "architect"


@pytest.mark.asyncio
async def test_many_modified_files_inject_extra_review(hive_dir, clock):
    files = [f"src/module_{i}.py" for i in range(11)]
    worker = RoleWorker(scripts={"implementer": [report_block(files_modified=files)]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.success is True
    assert worker.roles == ["architect", "implementer", "reviewer", "tester", "reviewer"]
    assert [p.phase for p in result.phases][2] == "extra_review"

    injected = pipeline.state_store.load().injected_phases
    assert [(e["phase"], e["agent"]) for e in injected] == [("extra_review", "reviewer")]
    assert injected[0]["reason"] == "Extra review due to 11 files modified"
    assert len(pipeline.events.by_type("phase_injected")) == 1


@pytest.mark.asyncio
async def test_file_count_at_the_limit_injects_nothing(hive_dir, clock):
    files = [f"src/module_{i}.py" for i in range(10)]
    worker = RoleWorker(scripts={"implementer": [report_block(files_modified=files)]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    await pipeline.run("Add a health endpoint")
    assert worker.roles == ["architect", "implementer", "tester", "reviewer"]


@pytest.mark.asyncio
async def test_severe_issues_inject_one_security_review(hive_dir, clock):
    severe = report_block(issues_found=[{"issue": "SQL built from input", "severity": "critical"}])
    worker = RoleWorker(scripts={"tester": [severe], "security": [severe], "reviewer": [severe]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    result = await pipeline.run("Add a health endpoint")

    assert result.success is True
    assert worker.roles == ["architect", "implementer", "tester", "security", "reviewer"]
    assert result.phases[3].phase == "security_review"
    injected = pipeline.state_store.load().injected_phases
    assert [(e["phase"], e["agent"]) for e in injected] == [("security_review", "security")]


@pytest.mark.asyncio
async def test_high_severity_critique_issue_injects_security_review(hive_dir, clock):
    critiqued = (
        '<!--HIVE_CRITIQUE\n{"critique_passed": true, "ready_to_submit": true, '
        '"issues_found": [{"issue": "token in logs", "severity": "high"}]}\nHIVE_CRITIQUE-->\n'
        + PASS
    )
    worker = RoleWorker(scripts={"implementer": [critiqued]})
    pipeline = make_pipeline(hive_dir, worker, clock)

    await pipeline.run("Add a health endpoint")
    assert worker.roles == ["architect", "implementer", "security", "tester", "reviewer"]


@pytest.mark.asyncio
async def test_adaptation_can_be_disabled(hive_dir, clock):
    config = HiveConfig.default()
    config.adapt.enabled = False
    files = [f"src/module_{i}.py" for i in range(20)]
    worker = RoleWorker(scripts={"implementer": [report_block(files_modified=files)]})
    pipeline = make_pipeline(hive_dir, worker, clock, config=config)

    await pipeline.run("Add a health endpoint")
    assert worker.roles == ["architect", "implementer", "tester", "reviewer"]
    assert pipeline.state_store.load().injected_phases == []
