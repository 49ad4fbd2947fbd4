"""Parallel branches: independent sub-workflows run side by side, then merged.

Each branch walks its own phase list sequentially; across branches the only
guarantee is the admission cap. State for run `<run_id>` lives under
`<hive_dir>/runs/<run_id>/.parallel_branches/`:

    branches.json          the branch specs as given to `init`
    <name>.state.json      one Branch record per branch
    <name>.output.txt      everything the branch's workers printed
    summary.json           counts by status plus the merge status
    merge_context.json     written by `start_merge` for the merge agent
"""
import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from hive.execution.protocol import AgentWorker
from hive.orchestration.errors import (
    BranchNotFoundError,
    BranchTimeoutError,
    InvalidTransitionError,
)
from hive.orchestration.events import EventLog
from hive.orchestration.models import utc_timestamp
from hive.orchestration.report import ReportProtocol
from hive.orchestration.router import COMPLETE, RETRY_PREVIOUS, UNKNOWN, Router
from hive.orchestration.storage import read_json, write_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 3
DEFAULT_AGENT = "implementer"
TERMINAL_MARKERS = {COMPLETE, RETRY_PREVIOUS, UNKNOWN}

BRANCH_TRANSITIONS = {
    "pending": {"running"},
    "running": {"running", "complete", "failed"},
    "complete": set(),
    "failed": set(),
}
STICKY_MERGE_STATUSES = {"in_progress", "merged", "failed"}

# Outcomes of overall_result that spend another attempt on the same phase
RETRY_OUTCOMES = {"needs_revision", "unknown_status"}

MERGE_INSTRUCTIONS = (
    "Merge the work from all branches. Resolve any conflicts between branches. "
    "Ensure the combined result is coherent and functional."
)


@dataclass
class BranchPhase:
    name: str
    agent: str | None = None
    task: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "agent": self.agent, "task": self.task}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BranchPhase":
        return cls(name=data["name"], agent=data.get("agent"), task=data.get("task", ""))


@dataclass
class Branch:
    """One independent sub-workflow within a parallel split"""
    name: str
    phases: list[BranchPhase] = field(default_factory=list)
    status: str = "pending"
    started_at: str | None = None
    completed_at: str | None = None
    current_phase: str | None = None
    phases_completed: list[str] = field(default_factory=list)
    output_file: str | None = None
    result: str | None = None  # "success" | "failure"
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in ("complete", "failed")

    def transition(self, status: str) -> None:
        if status not in BRANCH_TRANSITIONS:
            raise ValueError(f"Unknown branch status: {status}")
        if status not in BRANCH_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"branch {self.name}", self.status, status)
        self.status = status

    def start(self, output_file: Path) -> None:
        """Admit a pending branch. A branch is started at most once."""
        if self.status != "pending":
            raise InvalidTransitionError(f"branch {self.name}", self.status, "running")
        self.transition("running")
        self.started_at = utc_timestamp()
        self.output_file = str(output_file)

    def enter_phase(self, phase: str) -> None:
        self.transition("running")
        self.current_phase = phase

    def complete_phase(self, phase: str) -> None:
        self.transition("running")
        self.phases_completed.append(phase)

    def finish(self, ok: bool, error: str | None = None) -> None:
        self.transition("complete" if ok else "failed")
        self.completed_at = utc_timestamp()
        self.result = "success" if ok else "failure"
        self.error = error

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "branch": {"name": self.name, "phases": [p.to_dict() for p in self.phases]},
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "current_phase": self.current_phase,
            "phases_completed": self.phases_completed,
            "output_file": self.output_file,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Branch":
        spec = data.get("branch", {})
        return cls(
            name=data["name"],
            phases=[BranchPhase.from_dict(p) for p in spec.get("phases", [])],
            status=data.get("status", "pending"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            current_phase=data.get("current_phase"),
            phases_completed=list(data.get("phases_completed", [])),
            output_file=data.get("output_file"),
            result=data.get("result"),
            error=data.get("error"),
        )

    @classmethod
    def from_spec(cls, spec: dict[str, Any]) -> "Branch":
        return cls(name=spec["name"], phases=[BranchPhase.from_dict(p) for p in spec.get("phases", [])])


@dataclass
class BranchSummary:
    """Counts by status plus the merge status of one branch set"""
    total_branches: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    pending: int = 0
    merge_status: str = "pending"
    merge_completed_at: str | None = None
    merge_result: str | None = None

    @property
    def all_done(self) -> bool:
        return self.running == 0 and self.pending == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_branches": self.total_branches,
            "completed": self.completed,
            "failed": self.failed,
            "running": self.running,
            "pending": self.pending,
            "merge_status": self.merge_status,
            "merge_completed_at": self.merge_completed_at,
            "merge_result": self.merge_result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BranchSummary":
        return cls(**data)


class BranchStore:
    """Single writer for branch records and summaries.

    Every read-modify-write of a branch file or summary happens under one
    lock, so concurrent branches never interleave their updates.
    """

    def __init__(self, hive_dir: Path):
        self.hive_dir = hive_dir
        self._lock = threading.RLock()

    def branch_dir(self, run_id: str) -> Path:
        return self.hive_dir / "runs" / run_id / ".parallel_branches"

    def state_path(self, run_id: str, name: str) -> Path:
        return self.branch_dir(run_id) / f"{name}.state.json"

    def output_path(self, run_id: str, name: str) -> Path:
        return self.branch_dir(run_id) / f"{name}.output.txt"

    def summary_path(self, run_id: str) -> Path:
        return self.branch_dir(run_id) / "summary.json"

    def merge_context_path(self, run_id: str) -> Path:
        return self.branch_dir(run_id) / "merge_context.json"

    def names(self, run_id: str) -> list[str]:
        specs_path = self.branch_dir(run_id) / "branches.json"
        if not specs_path.exists():
            return []
        return [spec["name"] for spec in read_json(specs_path)]

    def create(self, run_id: str, specs: list[dict[str, Any]]) -> list[Branch]:
        names = [spec["name"] for spec in specs]
        if len(set(names)) != len(names):
            raise ValueError(f"Branch names must be unique within a run: {names}")

        branches = [Branch.from_spec(spec) for spec in specs]
        with self._lock:
            write_json(self.branch_dir(run_id) / "branches.json", specs)
            for branch in branches:
                write_json(self.state_path(run_id, branch.name), branch.to_dict())
                self.output_path(run_id, branch.name).unlink(missing_ok=True)
            summary = BranchSummary(total_branches=len(branches), pending=len(branches))
            write_json(self.summary_path(run_id), summary.to_dict())
        return branches

    def load(self, run_id: str, name: str) -> Branch:
        path = self.state_path(run_id, name)
        if not path.exists():
            raise BranchNotFoundError(f"{run_id}/{name}")
        return Branch.from_dict(read_json(path))

    def load_all(self, run_id: str) -> list[Branch]:
        """Every readable branch record of a run. Unreadable records are skipped."""
        branches = []
        for name in self.names(run_id):
            try:
                branches.append(self.load(run_id, name))
            except (json.JSONDecodeError, KeyError) as e:
                logger.warning("Skipping unreadable branch record %s/%s: %s", run_id, name, e)
        return branches

    def update(self, run_id: str, name: str, mutate: Callable[[Branch], None]) -> Branch:
        """Apply `mutate` to one branch, then refresh the summary."""
        with self._lock:
            branch = self.load(run_id, name)
            mutate(branch)
            write_json(self.state_path(run_id, name), branch.to_dict())
            self.refresh_summary(run_id)
            return branch

    def append_output(self, run_id: str, name: str, text: str) -> None:
        with self._lock:
            path = self.output_path(run_id, name)
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(text)
                if not text.endswith("\n"):
                    f.write("\n")

    def read_output(self, run_id: str, name: str) -> str:
        path = self.output_path(run_id, name)
        return path.read_text() if path.exists() else ""

    def read_summary(self, run_id: str) -> BranchSummary:
        path = self.summary_path(run_id)
        if not path.exists():
            raise BranchNotFoundError(run_id)
        return BranchSummary.from_dict(read_json(path))

    def refresh_summary(self, run_id: str) -> BranchSummary:
        """Recount statuses from the branch files, keeping any merge progress."""
        with self._lock:
            previous = self.read_summary(run_id)
            branches = self.load_all(run_id)
            summary = BranchSummary(
                total_branches=len(branches),
                completed=sum(1 for b in branches if b.status == "complete"),
                failed=sum(1 for b in branches if b.status == "failed"),
                running=sum(1 for b in branches if b.status == "running"),
                pending=sum(1 for b in branches if b.status == "pending"),
                merge_completed_at=previous.merge_completed_at,
                merge_result=previous.merge_result,
            )
            if previous.merge_status in STICKY_MERGE_STATUSES:
                summary.merge_status = previous.merge_status
            elif summary.all_done:
                summary.merge_status = "ready"
            write_json(self.summary_path(run_id), summary.to_dict())
            return summary

    def update_summary(self, run_id: str, mutate: Callable[[BranchSummary], None]) -> BranchSummary:
        with self._lock:
            summary = self.read_summary(run_id)
            mutate(summary)
            write_json(self.summary_path(run_id), summary.to_dict())
            return summary


class BranchScheduler:
    """Runs the branches of a run concurrently under an admission cap.

    A branch only becomes `running` after it acquires a slot of the run's
    semaphore and leaves `running` before releasing it, so the number of
    running branches never exceeds `max_parallel`. A failed branch does not
    stop its siblings; failures surface through `has_failures` and the
    merge context.
    """

    def __init__(
        self,
        hive_dir: Path,
        worker: AgentWorker | None = None,
        protocol: ReportProtocol | None = None,
        router: Router | None = None,
        events: EventLog | None = None,
        max_phase_attempts: int = 2,
        poll_interval: float = 2.0,
    ):
        self.store = BranchStore(hive_dir)
        self.worker = worker
        self.protocol = protocol or ReportProtocol()
        self.router = router or Router()
        self.events = events
        self.max_phase_attempts = max_phase_attempts
        self.poll_interval = poll_interval
        self._supervisors: dict[str, asyncio.Task] = {}
        self._running: dict[str, int] = {}
        self.peak_running: dict[str, int] = {}

    def _log_event(self, event: str, **data: Any) -> None:
        if self.events is not None:
            self.events.log(event, **data)

    # --- setup & queries ------------------------------------------------------

    def init(self, run_id: str, specs: list[dict[str, Any]]) -> BranchSummary:
        """Create one pending Branch per spec and a zeroed summary."""
        self.store.create(run_id, specs)
        logger.info("Initialized %d branches for run %s", len(specs), run_id)
        return self.store.read_summary(run_id)

    def get_state(self, run_id: str, name: str) -> Branch:
        return self.store.load(run_id, name)

    def summary(self, run_id: str) -> BranchSummary:
        return self.store.read_summary(run_id)

    def all_complete(self, run_id: str) -> bool:
        return self.summary(run_id).all_done

    def has_failures(self, run_id: str) -> bool:
        return self.summary(run_id).failed > 0

    # --- execution ------------------------------------------------------------

    async def execute(self, run_id: str, max_parallel: int = DEFAULT_MAX_PARALLEL) -> asyncio.Task:
        """Start every pending branch in the background and return at once.

        Call `wait` to block until they are all terminal.
        """
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        if self.worker is None:
            raise RuntimeError("BranchScheduler needs an AgentWorker to execute branches")

        names = self.store.names(run_id)
        if not names:
            raise BranchNotFoundError(run_id)
        active = self._supervisors.get(run_id)
        if active is not None and not active.done():
            raise RuntimeError(f"Branches of run {run_id} are already executing")
        pending = [b.name for b in self.store.load_all(run_id) if b.status == "pending"]

        semaphore = asyncio.Semaphore(max_parallel)
        self._running[run_id] = 0
        self.peak_running.setdefault(run_id, 0)

        logger.info("Executing %d branches for run %s (max_parallel=%d)", len(pending), run_id, max_parallel)
        supervisor = asyncio.create_task(
            self._supervise(run_id, pending, semaphore), name=f"branches-{run_id}"
        )
        self._supervisors[run_id] = supervisor
        return supervisor

    async def _supervise(self, run_id: str, names: list[str], semaphore: asyncio.Semaphore) -> None:
        await asyncio.gather(*(self._run_branch(run_id, name, semaphore) for name in names))

    async def _run_branch(self, run_id: str, name: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            output_file = self.store.output_path(run_id, name)
            try:
                branch = self.store.update(run_id, name, lambda b: b.start(output_file))
            except InvalidTransitionError as e:
                logger.warning("Skipping branch %s: %s", name, e)
                return
            self._running[run_id] += 1
            self.peak_running[run_id] = max(self.peak_running[run_id], self._running[run_id])
            self._log_event("branch_started", run_id=run_id, branch=name)

            ok, error = False, None
            try:
                ok, error = await self._run_phases(run_id, branch)
            except Exception as e:
                logger.exception("Branch %s crashed", name)
                error = str(e)
            finally:
                # Leave `running` before the slot is released
                branch = self.store.update(run_id, name, lambda b: b.finish(ok, error))
                self._running[run_id] -= 1

        logger.info("Branch %s finished: %s", name, branch.status)
        self._log_event("branch_finished", run_id=run_id, branch=name, status=branch.status, error=error)

    def _phase_agent(self, phase: BranchPhase, previous_agent: str | None) -> str:
        if phase.agent:
            return phase.agent
        if previous_agent is None:
            return DEFAULT_AGENT
        following = self.router.next_agent(previous_agent)
        return DEFAULT_AGENT if following in TERMINAL_MARKERS else following

    async def _run_phases(self, run_id: str, branch: Branch) -> tuple[bool, str | None]:
        previous_agent = None
        for phase in branch.phases:
            agent = self._phase_agent(phase, previous_agent)
            self.store.update(run_id, branch.name, lambda b: b.enter_phase(phase.name))

            passed, error = await self._run_phase(run_id, branch, phase, agent)
            if not passed:
                return False, error

            self.store.update(run_id, branch.name, lambda b: b.complete_phase(phase.name))
            previous_agent = agent
        return True, None

    async def _run_phase(self, run_id: str, branch: Branch, phase: BranchPhase, agent: str) -> tuple[bool, str | None]:
        prompt = f"[Branch: {branch.name}] [Phase: {phase.name}]\n{phase.task}"
        error = None
        for attempt in range(1, self.max_phase_attempts + 1):
            context = {
                "run_id": run_id,
                "branch": branch.name,
                "phase": phase.name,
                "attempt": attempt,
            }
            self.store.append_output(
                run_id, branch.name, f"=== {phase.name} ({agent}) attempt {attempt} ==="
            )
            try:
                output = await self.worker.invoke(agent, prompt, context)
            except Exception as e:
                logger.warning("Branch %s phase %s attempt %d raised: %s", branch.name, phase.name, attempt, e)
                error = f"{phase.name}: {e}"
                self.store.append_output(run_id, branch.name, f"ERROR: {e}")
                continue

            self.store.append_output(run_id, branch.name, output)
            outcome = self.protocol.overall_result(output, agent=agent)
            logger.debug("Branch %s phase %s attempt %d: %s", branch.name, phase.name, attempt, outcome)

            if outcome == "blocked":
                return False, f"{phase.name}: blocked"
            if outcome in RETRY_OUTCOMES:
                error = f"{phase.name}: {outcome}"
                continue
            return True, None

        return False, error

    async def wait(self, run_id: str, timeout: float = 3600) -> BranchSummary:
        """Poll the summary until no branch is pending or running.

        On timeout raise `BranchTimeoutError`; running branches carry on.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            summary = self.summary(run_id)
            if summary.all_done:
                supervisor = self._supervisors.pop(run_id, None)
                if supervisor is not None:
                    await supervisor
                return summary
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise BranchTimeoutError(
                    f"Timed out after {timeout}s waiting for branches of {run_id} "
                    f"({summary.running} running, {summary.pending} pending)"
                )
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def run(
        self,
        run_id: str,
        worker: AgentWorker | None = None,
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        timeout: float = 3600,
    ) -> dict[str, Any]:
        """Execute, wait for every branch, and return the merge context."""
        if worker is not None:
            self.worker = worker
        await self.execute(run_id, max_parallel)
        await self.wait(run_id, timeout)
        return self.prepare_merge_context(run_id)

    # --- results & merge ------------------------------------------------------

    def collect_results(self, run_id: str) -> list[dict[str, Any]]:
        results = []
        for branch in self.store.load_all(run_id):
            results.append({
                "name": branch.name,
                "status": branch.status,
                "state": branch.to_dict(),
                "output": self.store.read_output(run_id, branch.name),
            })
        return results

    def prepare_merge_context(self, run_id: str) -> dict[str, Any]:
        summary = self.summary(run_id)
        return {
            "run_id": run_id,
            "merge_type": "parallel_branches",
            "summary": summary.to_dict(),
            "branches": self.collect_results(run_id),
            "has_failures": summary.failed > 0,
            "instructions": MERGE_INSTRUCTIONS,
        }

    def start_merge(self, run_id: str) -> Path:
        """Mark the merge in progress and write the merge context. Returns its path."""
        summary = self.store.update_summary(run_id, lambda s: setattr(s, "merge_status", "in_progress"))
        path = write_json(self.store.merge_context_path(run_id), self.prepare_merge_context(run_id))
        self._log_event("parallel_branches_merge_start", run_id=run_id, summary=summary.to_dict())
        return path

    def mark_merged(self, run_id: str, status: str, result: str = "") -> BranchSummary:
        if status not in ("merged", "failed"):
            raise ValueError(f"Merge outcome must be 'merged' or 'failed', got {status!r}")

        def record(summary: BranchSummary) -> None:
            summary.merge_status = status
            summary.merge_completed_at = utc_timestamp()
            summary.merge_result = result

        summary = self.store.update_summary(run_id, record)
        logger.info("Merge for run %s: %s", run_id, status)
        self._log_event("parallel_branches_merge_complete", run_id=run_id, status=status)
        return summary
