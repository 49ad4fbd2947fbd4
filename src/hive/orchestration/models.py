"""Core data models for a hive run."""
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Literal

RunStatus = Literal["running", "complete", "blocked"]
RUN_STATUSES = {"running", "complete", "blocked"}


def utc_timestamp(moment: datetime | None = None) -> str:
    """Format a moment as a second-resolution UTC ISO timestamp."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Decision:
    """A choice an agent made and why"""
    decision: str
    rationale: str = ""
    author: str = "unknown"
    ts: str = field(default_factory=utc_timestamp)


@dataclass
class Blocker:
    """Something preventing progress"""
    description: str
    author: str = "unknown"
    status: str = "open"  # "open" | "resolved"
    task_id: str = ""
    resolution: str | None = None
    ts: str = field(default_factory=utc_timestamp)


@dataclass
class Iteration:
    """Retry counter for the phase currently being attempted"""
    phase: str | None = None
    attempt: int = 0
    max_attempts: int = 3
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class LastFailure:
    """Failure context captured before escalation"""
    agent: str
    error: str
    attempt: int
    timestamp: str = field(default_factory=utc_timestamp)


def _default_context() -> dict[str, list[str]]:
    return {"tech_stack": [], "key_files": [], "patterns_established": []}


@dataclass
class RunState:
    """Shared state of one workflow execution.

    Mutated by the orchestrator after each agent turn and persisted through
    checkpoints. Exactly one RunState is live per hive directory.
    """
    run_id: str
    objective: str
    epic_id: str = ""
    status: RunStatus = "running"
    current_phase: str | None = "init"
    current_agent: str | None = None
    decisions: list[Decision] = field(default_factory=list)
    blockers: list[Blocker] = field(default_factory=list)
    iteration: Iteration = field(default_factory=Iteration)
    last_failure: LastFailure | None = None
    context: dict[str, Any] = field(default_factory=_default_context)
    pending_tasks: list[dict[str, Any]] = field(default_factory=list)
    completed_tasks: list[dict[str, Any]] = field(default_factory=list)
    completed_agents: list[dict[str, Any]] = field(default_factory=list)
    needs_extra_review: bool = False
    low_confidence_agent: str | None = None
    injected_phases: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    def __post_init__(self) -> None:
        if self.status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {self.status}")
        if self.status != "complete" and not self.current_phase:
            raise ValueError("A run that is not complete needs a current phase")

    # --- status -------------------------------------------------------------

    def set_phase(self, phase: str) -> None:
        if not phase:
            raise ValueError("Phase name must not be empty")
        self.current_phase = phase
        self.touch()

    def set_agent(self, agent: str | None) -> None:
        self.current_agent = agent
        self.touch()

    def set_status(self, status: RunStatus) -> None:
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status}")
        if status != "complete" and not self.current_phase:
            raise ValueError("A run that is not complete needs a current phase")
        self.status = status
        self.touch()

    def touch(self) -> None:
        self.updated_at = utc_timestamp()

    # --- decisions & blockers -------------------------------------------------

    def add_decision(self, author: str, decision: str, rationale: str = "") -> Decision:
        entry = Decision(decision=decision, rationale=rationale, author=author)
        self.decisions.append(entry)
        self.touch()
        return entry

    def add_blocker(self, author: str, description: str, task_id: str = "") -> Blocker:
        entry = Blocker(description=description, author=author, task_id=task_id)
        self.blockers.append(entry)
        self.touch()
        return entry

    def resolve_blocker(self, index: int, resolution: str) -> None:
        blocker = self.blockers[index]
        blocker.status = "resolved"
        blocker.resolution = resolution
        self.touch()

    def open_blockers(self) -> list[Blocker]:
        return [b for b in self.blockers if b.status == "open"]

    # --- context --------------------------------------------------------------

    def _add_unique(self, key: str, value: str) -> None:
        values = self.context.setdefault(key, [])
        if value not in values:
            values.append(value)
            values.sort()
        self.touch()

    def add_key_file(self, path: str) -> None:
        self._add_unique("key_files", path)

    def add_tech(self, tech: str) -> None:
        self._add_unique("tech_stack", tech)

    def add_pattern(self, pattern: str) -> None:
        self.context.setdefault("patterns_established", []).append(pattern)
        self.touch()

    # --- iteration ------------------------------------------------------------

    def start_iteration(self, phase: str) -> None:
        self.iteration.phase = phase
        self.iteration.attempt = 1
        self.touch()

    def increment_attempt(self) -> int:
        self.iteration.attempt += 1
        self.touch()
        return self.iteration.attempt

    def add_iteration_history(self, agent: str, result: str, error: str = "") -> None:
        entry: dict[str, Any] = {"ts": utc_timestamp(), "agent": agent, "result": result}
        if error:
            entry["error"] = error
        self.iteration.history.append(entry)
        self.touch()

    def reset_iteration(self) -> None:
        self.iteration.phase = None
        self.iteration.attempt = 0
        self.iteration.history = []
        self.touch()

    def record_failure(self, agent: str, error: str, attempt: int) -> LastFailure:
        self.last_failure = LastFailure(agent=agent, error=error, attempt=attempt)
        self.touch()
        return self.last_failure

    # --- agents & tasks -------------------------------------------------------

    def mark_agent_complete(self, agent: str) -> None:
        self.completed_agents.append({"agent": agent, "completed_at": utc_timestamp()})
        self.touch()

    def is_agent_complete(self, agent: str) -> bool:
        return any(entry["agent"] == agent for entry in self.completed_agents)

    def flag_low_confidence(self, agent: str) -> None:
        self.needs_extra_review = True
        self.low_confidence_agent = agent
        self.touch()

    def record_injected_phase(self, phase: str, agent: str, reason: str) -> None:
        self.injected_phases.append(
            {"phase": phase, "agent": agent, "reason": reason, "injected_at": utc_timestamp()}
        )
        self.touch()

    def has_injected(self, phase: str) -> bool:
        return any(entry["phase"] == phase for entry in self.injected_phases)

    def add_pending_task(self, task_id: str, title: str, assigned_agent: str = "") -> None:
        self.pending_tasks.append(
            {"task_id": task_id, "title": title, "assigned_agent": assigned_agent}
        )
        self.touch()

    def complete_task(self, task_id: str) -> bool:
        """Move a pending task to completed. Returns False if it was not pending."""
        for index, task in enumerate(self.pending_tasks):
            if task["task_id"] == task_id:
                done = dict(self.pending_tasks.pop(index))
                done["completed_at"] = utc_timestamp()
                self.completed_tasks.append(done)
                self.touch()
                return True
        return False

    def summary(self) -> dict[str, Any]:
        """Condensed view suitable for an agent prompt."""
        return {
            "objective": self.objective,
            "status": self.status,
            "current_phase": self.current_phase,
            "decisions": [
                {"decision": d.decision, "rationale": d.rationale}
                for d in self.decisions[-5:]
            ],
            "open_blockers": [b.description for b in self.open_blockers()],
            "context": self.context,
            "pending_tasks": [t["title"] for t in self.pending_tasks],
            "completed_tasks": len(self.completed_tasks),
        }

    # --- serialization --------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict (always a fresh, unaliased structure)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunState":
        """Load from dict"""
        last_failure = data.get("last_failure")
        return cls(
            run_id=data["run_id"],
            objective=data.get("objective", ""),
            epic_id=data.get("epic_id") or "",
            status=data.get("status", "running"),
            current_phase=data.get("current_phase"),
            current_agent=data.get("current_agent"),
            decisions=[Decision(**d) for d in data.get("decisions", [])],
            blockers=[Blocker(**b) for b in data.get("blockers", [])],
            iteration=Iteration(**data.get("iteration", {})),
            last_failure=LastFailure(**last_failure) if last_failure else None,
            context=data.get("context") or _default_context(),
            pending_tasks=list(data.get("pending_tasks", [])),
            completed_tasks=list(data.get("completed_tasks", [])),
            completed_agents=list(data.get("completed_agents", [])),
            needs_extra_review=bool(data.get("needs_extra_review", False)),
            low_confidence_agent=data.get("low_confidence_agent"),
            injected_phases=list(data.get("injected_phases", [])),
            created_at=data.get("created_at") or utc_timestamp(),
            updated_at=data.get("updated_at") or utc_timestamp(),
        )
