"""Reference orchestrator loop driving one linear run"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hive.config.defaults import SECURITY_TRIGGER_SEVERITIES
from hive.config.manager import ConfigManager
from hive.config.schema import HiveConfig
from hive.execution.protocol import AgentWorker, TaskTracker
from hive.orchestration.branches import BranchScheduler
from hive.orchestration.checkpoint import CheckpointStore
from hive.orchestration.environment import EnvironmentProbe, EnvironmentReport
from hive.orchestration.errors import CheckpointNotFoundError
from hive.orchestration.events import EventLog
from hive.orchestration.handoff import HandoffStore
from hive.orchestration.report import NO_REPORT, AgentCritique, AgentReport, CritiqueIssue, ReportProtocol
from hive.orchestration.router import Router, WorkflowPhase
from hive.orchestration.state import RunStateStore

logger = logging.getLogger(__name__)

PASSING_RESULTS = {"pass", "pass_with_warnings", "pass_low_confidence"}


@dataclass
class PhaseOutcome:
    """How one agent turn (with its retries) ended"""
    agent: str
    phase: str
    result: str
    attempts: int
    passed: bool
    error: str | None = None
    checkpoint_id: str | None = None
    confidence: float | None = None
    low_confidence: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "phase": self.phase,
            "result": self.result,
            "attempts": self.attempts,
            "passed": self.passed,
            "error": self.error,
            "checkpoint_id": self.checkpoint_id,
            "confidence": self.confidence,
            "low_confidence": self.low_confidence,
        }


@dataclass
class PipelineResult:
    """Final result of a run"""
    run_id: str
    success: bool
    status: str
    phases: list[PhaseOutcome] = field(default_factory=list)
    checkpoint_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "status": self.status,
            "phases": [p.to_dict() for p in self.phases],
            "checkpoint_id": self.checkpoint_id,
            "error": self.error,
        }


class Pipeline:
    """Plans a workflow and walks its phases against an AgentWorker.

    Each phase is retried until the agent's report passes or the iteration
    budget is spent. Build and test failures take a detour through the
    debugger before the retry. An exhausted phase is checkpointed with its
    failure context and the run is marked blocked for a human to pick up.
    """

    def __init__(
        self,
        hive_dir: Path,
        worker: AgentWorker,
        config: HiveConfig | None = None,
        tracker: TaskTracker | None = None,
        environment: EnvironmentReport | None = None,
        router: Router | None = None,
        clock=None,
    ):
        self.config = config or ConfigManager.get_config()
        self.hive_dir = hive_dir
        self.worker = worker
        self.tracker = tracker
        self.environment = environment
        self.router = router or Router()

        self.events = EventLog(hive_dir)
        self.state_store = RunStateStore(hive_dir)
        self.handoffs = HandoffStore(hive_dir, events=self.events)
        self.checkpoints = CheckpointStore(
            hive_dir, self.state_store, self.handoffs, tracker, self.events, clock
        )
        self.protocol = ReportProtocol(self.config.report.pass_threshold, events=self.events)

    def branch_scheduler(self) -> BranchScheduler:
        """A scheduler sharing this run's worker, router and event log."""
        branches = self.config.branches
        return BranchScheduler(
            self.hive_dir,
            worker=self.worker,
            protocol=self.protocol,
            router=self.router,
            events=self.events,
            max_phase_attempts=branches.max_phase_attempts,
            poll_interval=branches.poll_interval,
        )

    async def run(
        self,
        objective: str,
        root: Path | None = None,
        run_id: str | None = None,
        epic_id: str = "",
    ) -> PipelineResult:
        """Start a fresh run and drive it to completion or escalation."""
        state = self.state_store.init(
            objective, run_id=run_id, epic_id=epic_id,
            max_attempts=self.config.iteration.max_attempts,
        )
        self.events.run_id = state.run_id

        environment = self.environment or EnvironmentProbe(root).probe()
        plan = self.router.plan_workflow(objective, environment)
        logger.info("Run %s planned: %s", state.run_id, " -> ".join(plan.agents))

        self.checkpoints.save("run_start")
        return await self._run_phases(plan.phases)

    async def resume(self, root: Path | None = None) -> PipelineResult:
        """Restore the latest checkpoint and carry on as its resume action says."""
        checkpoint_id = self.checkpoints.latest()
        if checkpoint_id is None:
            raise CheckpointNotFoundError("latest")

        context = self.checkpoints.restore(checkpoint_id)
        action = self.checkpoints.get_resume_action(checkpoint_id)
        self.events.run_id = context.run_id
        logger.info("Resuming run %s from %s: %s", context.run_id, checkpoint_id, action.action)

        if action.action == "none":
            return PipelineResult(context.run_id, True, "complete", checkpoint_id=checkpoint_id)
        if action.action == "escalate":
            self.state_store.update(lambda s: s.set_status("blocked"))
            return PipelineResult(
                context.run_id, False, "blocked", checkpoint_id=checkpoint_id,
                error=f"Attempts exhausted in phase {action.phase}; needs human attention",
            )

        environment = self.environment or EnvironmentProbe(root).probe()
        phases = self.router.plan_workflow(context.objective, environment).phases
        start = self._resume_index(phases, action.agent if action.action == "retry_agent" else None, action.phase)

        self.state_store.update(lambda s: s.set_status("running"))
        return await self._run_phases(phases[start:])

    @staticmethod
    def _resume_index(phases: list[WorkflowPhase], agent: str | None, phase: str | None) -> int:
        for index, planned in enumerate(phases):
            if agent and planned.agent == agent:
                return index
        for index, planned in enumerate(phases):
            if planned.phase == phase:
                return index
        return 0

    async def _run_phases(self, phases: list[WorkflowPhase]) -> PipelineResult:
        outcomes: list[PhaseOutcome] = []
        previous_report: AgentReport | None = None
        previous_agent: str | None = None
        queue = list(phases)

        while queue:
            planned = queue.pop(0)
            if previous_agent is not None:
                self._hand_off(previous_agent, planned.agent, previous_report)

            outcome, report, critique = await self._run_agent(planned.agent, planned.phase)
            outcomes.append(outcome)
            if not outcome.passed:
                state = self.state_store.load()
                return PipelineResult(
                    state.run_id, False, "blocked", outcomes,
                    checkpoint_id=outcome.checkpoint_id, error=outcome.error,
                )
            # Injected phases run before the rest of the plan
            queue[:0] = self._adapt(planned, report, critique)
            previous_agent, previous_report = planned.agent, report

        state = self.state_store.update(lambda s: s.set_status("complete"))
        checkpoint_id = self.checkpoints.save("run_complete")
        self.checkpoints.cleanup(self.config.checkpoint.keep)
        logger.info("Run %s complete", state.run_id)
        return PipelineResult(state.run_id, True, "complete", outcomes, checkpoint_id=checkpoint_id)

    async def run_agent_with_validation(self, agent: str, phase: str) -> PhaseOutcome:
        """Invoke one agent until its output passes or its attempts run out."""
        outcome, _, _ = await self._run_agent(agent, phase)
        return outcome

    async def _run_agent(
        self, agent: str, phase: str
    ) -> tuple[PhaseOutcome, AgentReport | None, AgentCritique | None]:
        def enter(state):
            state.set_phase(phase)
            state.set_agent(agent)
            state.start_iteration(phase)

        state = self.state_store.update(enter)
        for handoff_id in self.handoffs.pending_for(agent):
            self.handoffs.mark_received(handoff_id)

        feedback = ""
        while True:
            attempt = state.iteration.attempt
            result, error, report, critique = await self._attempt(agent, phase, feedback)
            self.state_store.update(lambda s: s.add_iteration_history(agent, result, error or ""))

            if result in PASSING_RESULTS or result == NO_REPORT:
                if result == NO_REPORT:
                    logger.warning("%s produced no self-report; accepting its output", agent)
                self._finish_agent(agent, report)
                outcome = PhaseOutcome(agent, phase, result, attempt, True)
                if report is not None:
                    self._gate_confidence(outcome, report, critique)
                return outcome, report, critique

            error = error or f"{agent} finished with {result}"
            if attempt >= state.iteration.max_attempts:
                checkpoint_id = self.checkpoints.on_failure(agent, error, attempt)
                self.state_store.update(lambda s: s.set_status("blocked"))
                logger.error("%s exhausted %d attempts in %s; escalating", agent, attempt, phase)
                outcome = PhaseOutcome(agent, phase, result, attempt, False, error, checkpoint_id)
                return outcome, report, critique

            if agent != "debugger" and self.router.route_on_failure(agent, error) == "debugger":
                await self._debug(agent, error)

            if critique is not None and self.protocol.should_retry(critique):
                feedback = self.protocol.retry_feedback(critique)
            else:
                feedback = f"Your previous attempt did not pass ({result}): {error}"
            state = self.state_store.update(lambda s: s.increment_attempt())

    async def _attempt(self, agent: str, phase: str, feedback: str):
        state = self.state_store.load()
        prompt = f"Objective: {state.objective}\nPhase: {phase}\nRole: {agent}"
        if feedback:
            prompt = f"{prompt}\n\n{feedback}"
        prompt = f"{prompt}\n\n{self.protocol.critique_prompt(agent)}"
        context = {"run": state.summary(), "handoff": self._latest_handoff(agent)}

        try:
            output = await self.worker.invoke(agent, prompt, context)
        except Exception as e:
            logger.warning("%s raised during %s: %s", agent, phase, e)
            return "error", str(e), None, None

        blocks = self.protocol.extract_all(output)
        result = self.protocol.overall_result_from(blocks, agent=agent)
        if blocks.report is not None:
            self.state_store.update(
                lambda s: self.protocol.apply_to_run_state(blocks.report, s, agent)
            )

        error = None
        if result == "blocked" and blocks.report is not None:
            error = "; ".join(blocks.report.open_blockers) or blocks.report.summary
        return result, error, blocks.report, blocks.critique

    async def _debug(self, agent: str, error: str) -> None:
        """Send a failure to the debugger before the failing agent retries."""
        handoff_id = self.handoffs.to_debugger(agent, error, {"failed_agent": agent})
        self.handoffs.mark_received(handoff_id)
        state = self.state_store.load()
        prompt = f"Objective: {state.objective}\nRole: debugger\nFix error from {agent}: {error}"
        try:
            output = await self.worker.invoke("debugger", prompt, {"run": state.summary(), "error": error})
        except Exception as e:
            logger.warning("Debugger raised: %s", e)
            return
        result = self.protocol.overall_result(output, agent="debugger")
        self.handoffs.mark_complete(handoff_id, {"result": result})

    def _gate_confidence(
        self, outcome: PhaseOutcome, report: AgentReport, critique: AgentCritique | None
    ) -> None:
        """Checkpoint and flag the run for extra review when an agent passed
        with an adjusted confidence under the configured gate.
        """
        confidence = self.protocol.adjusted_confidence(critique, report.confidence)
        outcome.confidence = confidence
        gate = self.config.report.confidence_gate
        if confidence >= gate:
            return

        agent = outcome.agent
        logger.warning("%s confidence %.2f is below the %.2f gate", agent, confidence, gate)
        self.events.log("confidence_gate", agent=agent, confidence=confidence, threshold=gate)
        self.state_store.update(lambda s: s.flag_low_confidence(agent))
        outcome.low_confidence = True
        outcome.checkpoint_id = self.checkpoints.save(f"low_confidence_{agent}")

    def _adapt(
        self, planned: WorkflowPhase, report: AgentReport | None, critique: AgentCritique | None
    ) -> list[WorkflowPhase]:
        """Phases to insert ahead of the remaining plan after a passing turn."""
        adapt = self.config.adapt
        if not adapt.enabled or report is None:
            return []

        injected: list[tuple[WorkflowPhase, str]] = []
        files = len(report.files_modified)
        if files > adapt.many_files and planned.phase != "extra_review":
            injected.append((
                WorkflowPhase("reviewer", "extra_review"),
                f"Extra review due to {files} files modified",
            ))

        severe = self._severe_issue_count(report, critique)
        state = self.state_store.load()
        if severe and planned.agent != "security" and not state.has_injected("security_review"):
            injected.append((
                WorkflowPhase("security", "security_review"),
                f"Security review due to {severe} high/critical issues",
            ))

        for phase, reason in injected:
            logger.info("Injected phase %s (%s)", phase.phase, reason)
            self.events.log("phase_injected", phase=phase.phase, agent=phase.agent, reason=reason)
            self.state_store.update(
                lambda s, p=phase, r=reason: s.record_injected_phase(p.phase, p.agent, r)
            )
        return [phase for phase, _ in injected]

    @staticmethod
    def _severe_issue_count(report: AgentReport, critique: AgentCritique | None) -> int:
        issues = [CritiqueIssue.from_value(i) for i in report.raw.get("issues_found") or []]
        if critique is not None:
            issues.extend(critique.issues_found)
        return sum(1 for issue in issues if issue.severity in SECURITY_TRIGGER_SEVERITIES)

    def _finish_agent(self, agent: str, report: AgentReport | None) -> None:
        def finish(state):
            state.mark_agent_complete(agent)
            state.reset_iteration()

        self.state_store.update(finish)
        results = {"summary": report.summary} if report is not None else {}
        for handoff_id in self.handoffs.list_ids():
            if f"-to-{agent}-" in handoff_id and self.handoffs.read(handoff_id).status == "in_progress":
                self.handoffs.mark_complete(handoff_id, results)

    def _latest_handoff(self, agent: str) -> dict[str, Any] | None:
        handoff_id = self.handoffs.latest_for(agent)
        return self.handoffs.read(handoff_id).to_dict() if handoff_id else None

    def _hand_off(self, from_agent: str, to_agent: str, report: AgentReport | None) -> str:
        summary = report.summary if report and report.summary else f"{from_agent} finished"
        files = report.files_modified if report else []
        state = self.state_store.load()

        if (from_agent, to_agent) == ("architect", "implementer"):
            return self.handoffs.architect_to_implementer(summary, state, self.tracker)
        if (from_agent, to_agent) == ("implementer", "tester"):
            return self.handoffs.implementer_to_tester(summary, files, state)
        if (from_agent, to_agent) == ("implementer", "ui-designer"):
            return self.handoffs.implementer_to_ui_designer(summary, files, state)
        return self.handoffs.create(from_agent, to_agent, summary, context=dict(state.context))
