"""Checkpoint system for orchestration resilience"""
import copy
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from hive.execution.protocol import TaskTracker
from hive.orchestration.errors import CheckpointNotFoundError
from hive.orchestration.events import EventLog
from hive.orchestration.handoff import HandoffStore
from hive.orchestration.models import RunState, utc_timestamp
from hive.orchestration.state import RunStateStore
from hive.orchestration.storage import read_json, write_json

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = "1.0"
ID_FORMAT = "%Y%m%d_%H%M%S"
MAX_SAME_SECOND = 99


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of the run state at one moment"""
    checkpoint_id: str
    created_at: str
    reason: str
    run_state: dict[str, Any]
    task_snapshot: list[dict[str, Any]] = field(default_factory=list)
    handoff_ids: list[str] = field(default_factory=list)
    version: str = CHECKPOINT_VERSION

    @property
    def phase(self) -> str | None:
        return self.run_state.get("current_phase")

    @property
    def status(self) -> str:
        return self.run_state.get("status", "running")

    def state(self) -> RunState:
        """A fresh RunState built from the embedded copy."""
        return RunState.from_dict(copy.deepcopy(self.run_state))

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization"""
        return {
            "checkpoint_id": self.checkpoint_id,
            "created_at": self.created_at,
            "reason": self.reason,
            "phase": self.phase,
            "status": self.status,
            "run_state": self.run_state,
            "task_snapshot": self.task_snapshot,
            "handoff_ids": self.handoff_ids,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        return cls(
            checkpoint_id=data["checkpoint_id"],
            created_at=data["created_at"],
            reason=data.get("reason", ""),
            run_state=data["run_state"],
            task_snapshot=data.get("task_snapshot", []),
            handoff_ids=data.get("handoff_ids", []),
            version=data.get("version", CHECKPOINT_VERSION),
        )

    @classmethod
    def from_file(cls, path: Path) -> "Checkpoint":
        return cls.from_dict(read_json(path))


@dataclass
class CheckpointSummary:
    """What `list()` shows without rebuilding the full state"""
    checkpoint_id: str
    created_at: str
    reason: str
    phase: str | None
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "created_at": self.created_at,
            "reason": self.reason,
            "phase": self.phase,
            "status": self.status,
        }


@dataclass
class ResumeContext:
    """Handed back to the orchestrator after a restore"""
    checkpoint_id: str
    run_id: str
    epic_id: str
    objective: str
    phase: str | None
    agent: str | None
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "run_id": self.run_id,
            "epic_id": self.epic_id,
            "objective": self.objective,
            "phase": self.phase,
            "agent": self.agent,
            "status": self.status,
        }


@dataclass
class ResumeAction:
    phase: str | None
    agent: str | None
    status: str
    attempt: int
    max_attempts: int
    last_failure: dict[str, Any] | None
    action: str  # "none" | "escalate" | "retry_agent" | "continue_phase"

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "agent": self.agent,
            "status": self.status,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "last_failure": self.last_failure,
            "action": self.action,
        }


def resume_action_for(status: str, attempt: int, max_attempts: int, agent: str | None) -> str:
    """Completion beats exhaustion beats a known agent beats plain continuation."""
    if status == "complete":
        return "none"
    if attempt >= max_attempts:
        return "escalate"
    if agent:
        return "retry_agent"
    return "continue_phase"


class CheckpointStore:
    """Creates, lists, restores and garbage-collects checkpoints.

    Records live in `<hive_dir>/checkpoints/<checkpoint_id>.json`. Ids are
    derived from the creation time with second resolution; a second save
    within the same second gets a `_01`, `_02`... suffix instead of
    overwriting, so ids stay unique and sort in creation order.
    """

    def __init__(
        self,
        hive_dir: Path,
        state_store: RunStateStore,
        handoffs: HandoffStore | None = None,
        tracker: TaskTracker | None = None,
        events: EventLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.checkpoint_dir = hive_dir / "checkpoints"
        self.state_store = state_store
        self.handoffs = handoffs
        self.tracker = tracker
        self.events = events
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def _path(self, checkpoint_id: str) -> Path:
        return self.checkpoint_dir / f"{checkpoint_id}.json"

    def _allocate_id(self, moment: datetime) -> str:
        base = moment.astimezone(timezone.utc).strftime(ID_FORMAT)
        if not self._path(base).exists():
            return base
        for counter in range(1, MAX_SAME_SECOND + 1):
            candidate = f"{base}_{counter:02d}"
            if not self._path(candidate).exists():
                return candidate
        raise RuntimeError(f"Too many checkpoints within one second: {base}")

    def _load(self, checkpoint_id: str) -> Checkpoint:
        path = self._path(checkpoint_id)
        if not path.exists():
            raise CheckpointNotFoundError(checkpoint_id)
        return Checkpoint.from_file(path)

    def _live_state(self) -> RunState:
        state = self.state_store.load()
        if state is None:
            raise RuntimeError("No live run state to checkpoint")
        return state

    def save(self, reason: str = "manual") -> str:
        """Snapshot the live state, tracker tasks and handoff ids. Returns the id."""
        state = self._live_state()
        tasks = self.tracker.list_tasks() if self.tracker is not None else []
        handoff_ids = self.handoffs.list_ids() if self.handoffs is not None else []

        with self._lock:
            moment = self.clock()
            checkpoint = Checkpoint(
                checkpoint_id=self._allocate_id(moment),
                created_at=utc_timestamp(moment),
                reason=reason,
                run_state=state.to_dict(),
                task_snapshot=copy.deepcopy(tasks),
                handoff_ids=handoff_ids,
            )
            write_json(self._path(checkpoint.checkpoint_id), checkpoint.to_dict())

        logger.info("Saved checkpoint %s (%s)", checkpoint.checkpoint_id, reason)
        if self.events is not None:
            self.events.log(
                "checkpoint_saved",
                checkpoint_id=checkpoint.checkpoint_id,
                reason=reason,
                phase=checkpoint.phase,
            )
        return checkpoint.checkpoint_id

    def latest(self) -> str | None:
        summaries = self.list()
        return summaries[0].checkpoint_id if summaries else None

    def show(self, checkpoint_id: str) -> Checkpoint:
        return self._load(checkpoint_id)

    def restore(self, checkpoint_id: str) -> ResumeContext:
        """Overwrite the live state with the checkpoint's copy."""
        checkpoint = self._load(checkpoint_id)
        state = checkpoint.state()
        self.state_store.save(state)

        logger.info("Restored checkpoint %s", checkpoint_id)
        if self.events is not None:
            self.events.log("checkpoint_restored", checkpoint_id=checkpoint_id, phase=state.current_phase)

        return ResumeContext(
            checkpoint_id=checkpoint_id,
            run_id=state.run_id,
            epic_id=state.epic_id,
            objective=state.objective,
            phase=state.current_phase,
            agent=state.current_agent,
            status=state.status,
        )

    def get_resume_action(self, checkpoint_id: str) -> ResumeAction:
        state = self._load(checkpoint_id).state()
        iteration = state.iteration
        last_failure = None
        if state.last_failure is not None:
            last_failure = {
                "agent": state.last_failure.agent,
                "error": state.last_failure.error,
                "attempt": state.last_failure.attempt,
                "timestamp": state.last_failure.timestamp,
            }
        return ResumeAction(
            phase=state.current_phase,
            agent=state.current_agent,
            status=state.status,
            attempt=iteration.attempt,
            max_attempts=iteration.max_attempts,
            last_failure=last_failure,
            action=resume_action_for(
                state.status, iteration.attempt, iteration.max_attempts, state.current_agent
            ),
        )

    def agent_context(self, checkpoint_id: str) -> dict[str, Any]:
        """The parts of a checkpoint an agent needs to pick the work back up."""
        state = self._load(checkpoint_id).state()
        return {
            "objective": state.objective,
            "epic_id": state.epic_id,
            "current_phase": state.current_phase,
            "decisions": [
                {"decision": d.decision, "rationale": d.rationale, "author": d.author}
                for d in state.decisions
            ],
            "open_blockers": [b.description for b in state.open_blockers()],
            "context": state.context,
            "pending_tasks": state.pending_tasks,
            "completed_tasks": state.completed_tasks,
            "last_failure": (
                {"agent": state.last_failure.agent, "error": state.last_failure.error}
                if state.last_failure else None
            ),
        }

    def delete(self, checkpoint_id: str) -> bool:
        path = self._path(checkpoint_id)
        if not path.exists():
            return False
        path.unlink()
        logger.debug("Deleted checkpoint %s", checkpoint_id)
        return True

    def cleanup(self, keep: int = 10) -> list[str]:
        """Delete all but the `keep` newest checkpoints. Returns the deleted ids."""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        with self._lock:
            stale = self.list()[keep:]
            for summary in stale:
                self._path(summary.checkpoint_id).unlink(missing_ok=True)
        if stale:
            logger.info("Removed %d old checkpoints", len(stale))
        return [s.checkpoint_id for s in stale]

    def on_failure(self, agent: str, error: str, attempt: int) -> str:
        """Record the failure on the live state, then checkpoint it."""
        self.state_store.update(lambda state: state.record_failure(agent, error, attempt))
        return self.save(f"failure_{agent}_attempt_{attempt}")

    def list(self) -> list[CheckpointSummary]:
        """Summaries sorted newest first."""
        if not self.checkpoint_dir.exists():
            return []

        summaries = []
        for path in self.checkpoint_dir.glob("*.json"):
            try:
                data = read_json(path)
                summaries.append(CheckpointSummary(
                    checkpoint_id=data["checkpoint_id"],
                    created_at=data["created_at"],
                    reason=data.get("reason", ""),
                    phase=data.get("phase"),
                    status=data.get("status", "running"),
                ))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable checkpoint %s: %s", path.name, e)
        summaries.sort(key=lambda s: (s.created_at, s.checkpoint_id), reverse=True)
        return summaries
