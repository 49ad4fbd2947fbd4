"""Structured handoff documents passed between agent roles"""
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hive.execution.protocol import TaskTracker
from hive.orchestration.errors import HandoffNotFoundError, InvalidTransitionError
from hive.orchestration.events import EventLog
from hive.orchestration.models import RunState, utc_timestamp
from hive.orchestration.storage import read_json, write_json

logger = logging.getLogger(__name__)

HANDOFF_STATUSES = ("pending", "in_progress", "complete")

UI_PATH_MARKERS = (".vue", ".tsx", ".jsx", "/pages/", "/components/")

ARCHITECT_TO_IMPLEMENTER_EXPECTATIONS = [
    "All code should compile without errors",
    "Follow existing patterns in the codebase",
    "Use design system components where applicable",
    "Update task status in the tracker (in_progress -> closed)",
]
ARCHITECT_TO_IMPLEMENTER_CRITERIA = [
    "Build passes",
    "All assigned tasks in the tracker are closed",
    "No new lint errors introduced",
]
IMPLEMENTER_TO_TESTER_EXPECTATIONS = [
    "Write unit tests for new functionality",
    "Write integration tests for workflows",
    "Achieve reasonable test coverage",
    "All tests should pass",
]
IMPLEMENTER_TO_TESTER_CRITERIA = [
    "Test suite passes",
    "No decrease in coverage",
    "Edge cases are tested",
]
IMPLEMENTER_TO_UI_EXPECTATIONS = [
    "Ensure design system consistency",
    "Fix spacing, typography, color issues",
    "Add missing states (loading, empty, error)",
    "Ensure responsive design works",
    "Ensure dark mode works",
]
IMPLEMENTER_TO_UI_CRITERIA = [
    "UI looks polished and professional",
    "Consistent use of design system components",
    "Responsive on mobile, tablet, desktop",
    "All interactive elements have proper states",
]
DEBUGGER_EXPECTATIONS = [
    "Diagnose the root cause",
    "Implement minimal fix",
    "Verify the fix works",
    "Document findings",
]
DEBUGGER_CRITERIA = [
    "Error no longer occurs",
    "Build passes",
    "No regressions introduced",
]


@dataclass
class HandoffDocument:
    """Work context handed from one role to the next"""
    handoff_id: str
    from_agent: str
    to_agent: str
    sequence: int
    summary: str
    tasks: list[dict[str, Any]] = field(default_factory=list)
    decisions: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    expectations: list[str] = field(default_factory=list)
    success_criteria: list[str] = field(default_factory=list)
    status: str = "pending"
    created_at: str = field(default_factory=utc_timestamp)
    received_at: str | None = None
    completed_at: str | None = None
    results: dict[str, Any] | None = None

    def advance(self, status: str) -> None:
        """Move forward through pending -> in_progress -> complete."""
        if status not in HANDOFF_STATUSES:
            raise ValueError(f"Unknown handoff status: {status}")
        if HANDOFF_STATUSES.index(status) <= HANDOFF_STATUSES.index(self.status):
            raise InvalidTransitionError(self.handoff_id, self.status, status)
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "handoff_id": self.handoff_id,
            "from_agent": self.from_agent,
            "to_agent": self.to_agent,
            "sequence": self.sequence,
            "summary": self.summary,
            "tasks": self.tasks,
            "decisions": self.decisions,
            "context": self.context,
            "expectations": self.expectations,
            "success_criteria": self.success_criteria,
            "status": self.status,
            "created_at": self.created_at,
            "received_at": self.received_at,
            "completed_at": self.completed_at,
            "results": self.results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HandoffDocument":
        return cls(**data)


def handoff_id_for(from_agent: str, to_agent: str, sequence: int) -> str:
    return f"{from_agent}-to-{to_agent}-{sequence:03d}"


class HandoffStore:
    """One JSON record per handoff under `<hive_dir>/handoffs`"""

    def __init__(self, hive_dir: Path, events: EventLog | None = None):
        self.handoffs_dir = hive_dir / "handoffs"
        self.events = events
        self._lock = threading.Lock()

    def _path(self, handoff_id: str) -> Path:
        return self.handoffs_dir / f"{handoff_id}.json"

    def _sequences(self, from_agent: str, to_agent: str) -> list[int]:
        if not self.handoffs_dir.exists():
            return []
        pattern = re.compile(
            rf"^{re.escape(from_agent)}-to-{re.escape(to_agent)}-(\d+)\.json$"
        )
        found = []
        for path in self.handoffs_dir.glob("*.json"):
            match = pattern.match(path.name)
            if match:
                found.append(int(match.group(1)))
        return found

    def next_sequence(self, from_agent: str, to_agent: str) -> int:
        return max(self._sequences(from_agent, to_agent), default=0) + 1

    def create(
        self,
        from_agent: str,
        to_agent: str,
        summary: str,
        tasks: list[dict[str, Any]] | None = None,
        decisions: list[dict[str, Any]] | None = None,
        context: dict[str, Any] | None = None,
        expectations: list[str] | None = None,
        success_criteria: list[str] | None = None,
    ) -> str:
        """Write a new pending handoff and return its id."""
        with self._lock:
            sequence = self.next_sequence(from_agent, to_agent)
            document = HandoffDocument(
                handoff_id=handoff_id_for(from_agent, to_agent, sequence),
                from_agent=from_agent,
                to_agent=to_agent,
                sequence=sequence,
                summary=summary,
                tasks=list(tasks or []),
                decisions=list(decisions or []),
                context=dict(context or {}),
                expectations=list(expectations or []),
                success_criteria=list(success_criteria or []),
            )
            write_json(self._path(document.handoff_id), document.to_dict())

        logger.info("Created handoff %s", document.handoff_id)
        if self.events is not None:
            self.events.log(
                "handoff_created",
                from_agent=from_agent,
                to_agent=to_agent,
                handoff_id=document.handoff_id,
            )
        return document.handoff_id

    def read(self, handoff_id: str) -> HandoffDocument:
        path = self._path(handoff_id)
        if not path.exists():
            raise HandoffNotFoundError(handoff_id)
        return HandoffDocument.from_dict(read_json(path))

    def mark_received(self, handoff_id: str) -> HandoffDocument:
        with self._lock:
            document = self.read(handoff_id)
            document.advance("in_progress")
            document.received_at = utc_timestamp()
            write_json(self._path(handoff_id), document.to_dict())
        return document

    def mark_complete(self, handoff_id: str, results: dict[str, Any] | None = None) -> HandoffDocument:
        with self._lock:
            document = self.read(handoff_id)
            document.advance("complete")
            document.completed_at = utc_timestamp()
            document.results = dict(results or {})
            write_json(self._path(handoff_id), document.to_dict())
        return document

    def list_ids(self) -> list[str]:
        """All handoff ids, sorted."""
        if not self.handoffs_dir.exists():
            return []
        return sorted(path.stem for path in self.handoffs_dir.glob("*.json"))

    def _addressed_to(self, agent: str) -> list[HandoffDocument]:
        marker = f"-to-{agent}-"
        return [self.read(h) for h in self.list_ids() if marker in h]

    def latest_for(self, agent: str) -> str | None:
        """Most recently created handoff addressed to `agent`."""
        documents = self._addressed_to(agent)
        if not documents:
            return None
        latest = max(documents, key=lambda d: (d.created_at, d.sequence))
        return latest.handoff_id

    def pending_for(self, agent: str) -> list[str]:
        return [d.handoff_id for d in self._addressed_to(agent) if d.status == "pending"]

    # --- builders for the common transitions ---------------------------------

    def architect_to_implementer(
        self,
        summary: str,
        state: RunState | None = None,
        tracker: TaskTracker | None = None,
    ) -> str:
        tasks = []
        if tracker is not None:
            tasks = [
                {
                    "task_id": t.get("id"),
                    "title": t.get("title"),
                    "priority": t.get("priority"),
                    "status": t.get("status"),
                    "type": t.get("type"),
                }
                for t in tracker.list_tasks()
            ]
        decisions = []
        context: dict[str, Any] = {}
        if state is not None:
            decisions = [{"decision": d.decision, "rationale": d.rationale} for d in state.decisions]
            context = dict(state.context)
        return self.create(
            "architect", "implementer", summary, tasks, decisions, context,
            ARCHITECT_TO_IMPLEMENTER_EXPECTATIONS, ARCHITECT_TO_IMPLEMENTER_CRITERIA,
        )

    def implementer_to_tester(
        self, summary: str, files_modified: list[str], state: RunState | None = None
    ) -> str:
        tasks = [
            {"type": "test", "file": path, "action": "write tests for this file"}
            for path in files_modified
        ]
        context = dict(state.context) if state is not None else {}
        context["files_modified"] = list(files_modified)
        return self.create(
            "implementer", "tester", summary, tasks, [], context,
            IMPLEMENTER_TO_TESTER_EXPECTATIONS, IMPLEMENTER_TO_TESTER_CRITERIA,
        )

    def implementer_to_ui_designer(
        self, summary: str, files_modified: list[str], state: RunState | None = None
    ) -> str:
        ui_files = [f for f in files_modified if any(m in f for m in UI_PATH_MARKERS)]
        tasks = [
            {"type": "ui_review", "file": path, "action": "review and improve UI quality"}
            for path in ui_files
        ]
        context = dict(state.context) if state is not None else {}
        return self.create(
            "implementer", "ui-designer", summary, tasks, [], context,
            IMPLEMENTER_TO_UI_EXPECTATIONS, IMPLEMENTER_TO_UI_CRITERIA,
        )

    def to_debugger(self, from_agent: str, error: str, context: dict[str, Any] | None = None) -> str:
        tasks = [{"type": "debug", "error": error, "action": "diagnose and fix"}]
        return self.create(
            from_agent, "debugger", f"Fix error: {error}", tasks, [], context,
            DEBUGGER_EXPECTATIONS, DEBUGGER_CRITERIA,
        )
