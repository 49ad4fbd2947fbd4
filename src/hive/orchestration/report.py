"""Parsing and interpretation of agent self-report blocks.

Agents end their turn with a structured report, optionally preceded by a
self-critique:

    <!--HIVE_CRITIQUE
    {"critique_passed": true, "checks_completed": ["builds"], "checks_failed": [],
     "issues_found": [{"issue": "Missing error handling", "severity": "medium", "fixable": true}],
     "confidence_adjustment": 0, "ready_to_submit": true}
    HIVE_CRITIQUE-->

    <!--HIVE_REPORT
    {"status": "complete", "confidence": 0.9, "tasks_created": [], "tasks_closed": ["bd-1"],
     "files_modified": ["src/app.vue"], "decisions": [{"decision": "Use pnpm", "rationale": "..."}],
     "blockers": [], "summary": "Added the dashboard", "next_agent_hint": "tester"}
    HIVE_REPORT-->

A fenced block tagged ``hive_report`` / ``hive_critique`` is accepted as well.
Nothing in this module raises on bad agent output: a missing block is `None`
and a malformed one is reported through `validate`.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from hive.config.defaults import CRITIQUE_CHECKLISTS, GENERIC_CHECKLIST
from hive.orchestration.events import EventLog
from hive.orchestration.models import RunState

logger = logging.getLogger(__name__)

ReportDecision = Literal["pass", "pass_low_confidence", "partial", "blocked", "unknown_status"]
OverallResult = Literal[
    "pass", "pass_with_warnings", "needs_revision", "blocked", "no_report",
    "unknown_status", "pass_low_confidence", "partial",
]

NO_REPORT = "no_report"
DEFAULT_PASS_THRESHOLD = 0.7

REPORT_REQUIRED_FIELDS = ("status", "confidence", "summary")
CRITIQUE_REQUIRED_FIELDS = ("critique_passed", "ready_to_submit")

SEVERITIES = ("blocker", "high", "medium", "low")
SEVERITY_PENALTIES = {"blocker": 0.3, "high": 0.1, "medium": 0.05}


def _marker_pattern(tag: str) -> re.Pattern[str]:
    return re.compile(rf"<!--{tag}[ \t]*\r?\n?(.*?)\r?\n?[ \t]*{tag}-->", re.DOTALL)


def _fence_pattern(label: str) -> re.Pattern[str]:
    return re.compile(rf"```{label}[ \t]*\r?\n(.*?)```", re.DOTALL)


REPORT_MARKERS = _marker_pattern("HIVE_REPORT")
REPORT_FENCE = _fence_pattern("hive_report")
CRITIQUE_MARKERS = _marker_pattern("HIVE_CRITIQUE")
CRITIQUE_FENCE = _fence_pattern("hive_critique")


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    # json.loads accepts NaN and Infinity
    return number if math.isfinite(number) else default


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() not in ("false", "no", "0", "")
    return bool(value)


@dataclass
class AgentReport:
    """An agent's own account of its turn"""
    status: str
    confidence: float
    summary: str = ""
    tasks_created: list[str] = field(default_factory=list)
    tasks_closed: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    decisions: list[Any] = field(default_factory=list)
    blockers: list[Any] = field(default_factory=list)
    next_agent_hint: str | None = None
    agent: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.confidence = clamp(self.confidence)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentReport":
        return cls(
            status=str(data.get("status", "unknown")),
            confidence=_as_float(data.get("confidence")),
            summary=str(data.get("summary") or ""),
            tasks_created=[str(t) for t in _as_list(data.get("tasks_created"))],
            tasks_closed=[str(t) for t in _as_list(data.get("tasks_closed"))],
            files_modified=[str(f) for f in _as_list(data.get("files_modified"))],
            decisions=_as_list(data.get("decisions")),
            blockers=_as_list(data.get("blockers")),
            next_agent_hint=data.get("next_agent_hint") or None,
            agent=data.get("agent") or None,
            raw=dict(data),
        )

    @property
    def open_blockers(self) -> list[str]:
        """Blocker entries that actually say something."""
        found = []
        for blocker in self.blockers:
            if isinstance(blocker, dict):
                blocker = blocker.get("description") or blocker.get("blocker") or ""
            if blocker is not None and str(blocker).strip():
                found.append(str(blocker).strip())
        return found


@dataclass
class CritiqueIssue:
    issue: str
    severity: str = "medium"  # "blocker" | "high" | "medium" | "low"
    fixable: bool = False

    @classmethod
    def from_value(cls, value: Any) -> "CritiqueIssue":
        if isinstance(value, dict):
            severity = str(value.get("severity", "medium")).lower()
            return cls(
                issue=str(value.get("issue") or value.get("description") or ""),
                severity=severity,
                fixable=value.get("fixable") is True,
            )
        return cls(issue=str(value))


@dataclass
class AgentCritique:
    """An agent's self-review before it reports"""
    critique_passed: bool = True
    ready_to_submit: bool = True
    checks_completed: list[str] = field(default_factory=list)
    checks_failed: list[str] = field(default_factory=list)
    issues_found: list[CritiqueIssue] = field(default_factory=list)
    confidence_adjustment: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentCritique":
        return cls(
            critique_passed=_as_bool(data.get("critique_passed"), True),
            ready_to_submit=_as_bool(data.get("ready_to_submit"), True),
            checks_completed=[str(c) for c in _as_list(data.get("checks_completed"))],
            checks_failed=[str(c) for c in _as_list(data.get("checks_failed"))],
            issues_found=[CritiqueIssue.from_value(i) for i in _as_list(data.get("issues_found"))],
            confidence_adjustment=_as_float(data.get("confidence_adjustment")),
            raw=dict(data),
        )

    @property
    def not_ready(self) -> bool:
        return not self.critique_passed or not self.ready_to_submit


@dataclass
class ValidationResult:
    valid: bool
    reason: str = ""
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        if self.valid:
            return {"valid": True}
        return {"valid": False, "reason": self.reason, "missing": list(self.missing)}


@dataclass
class ExtractedBlocks:
    report: AgentReport | None
    critique: AgentCritique | None

    @property
    def has_report(self) -> bool:
        return self.report is not None

    @property
    def has_critique(self) -> bool:
        return self.critique is not None


def _load_object(text: str) -> dict[str, Any] | None:
    """Parse text as a single JSON object."""
    try:
        value = json.loads(text.strip())
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _delimited(raw: str, patterns: tuple[re.Pattern[str], ...]) -> dict[str, Any] | None:
    for pattern in patterns:
        for match in pattern.finditer(raw):
            obj = _load_object(match.group(1))
            if obj is not None:
                return obj
    return None


def scan_json_object(text: str, required_keys: tuple[str, ...]) -> dict[str, Any] | None:
    """Find the first top-level JSON object in free text holding `required_keys`.

    Uses the JSON decoder to find object boundaries, so braces inside string
    literals do not confuse the scan.
    """
    decoder = json.JSONDecoder()
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict) and all(key in obj for key in required_keys):
            return obj
        idx = text.find("{", end)
    return None


class ReportProtocol:
    """Turns raw agent output into pass/retry/escalate signals."""

    def __init__(
        self,
        pass_threshold: float = DEFAULT_PASS_THRESHOLD,
        events: EventLog | None = None,
    ) -> None:
        self.pass_threshold = pass_threshold
        self.events = events

    # --- extraction -----------------------------------------------------------

    def extract_report(self, raw_output: str) -> AgentReport | None:
        """Find the report block in agent output, or None when there is none."""
        if not raw_output:
            return None
        data = _delimited(raw_output, (REPORT_MARKERS, REPORT_FENCE))
        if data is None:
            data = scan_json_object(raw_output, ("status", "confidence"))
        if data is None:
            return None
        return AgentReport.from_dict(data)

    def extract_critique(self, raw_output: str) -> AgentCritique | None:
        """Find the critique block in agent output, or None when there is none."""
        if not raw_output:
            return None
        data = _delimited(raw_output, (CRITIQUE_MARKERS, CRITIQUE_FENCE))
        if data is None:
            return None
        return AgentCritique.from_dict(data)

    def extract_all(self, raw_output: str) -> ExtractedBlocks:
        return ExtractedBlocks(
            report=self.extract_report(raw_output),
            critique=self.extract_critique(raw_output),
        )

    # --- validation -----------------------------------------------------------

    @staticmethod
    def _validate_fields(
        data: dict[str, Any] | None, required: tuple[str, ...], what: str
    ) -> ValidationResult:
        if data is None:
            return ValidationResult(False, f"No {what} found", list(required))
        missing = [name for name in required if name not in data]
        if missing:
            return ValidationResult(False, "Missing fields", missing)
        return ValidationResult(True)

    def validate(self, report: AgentReport | dict[str, Any] | None) -> ValidationResult:
        """Check that a report carries status, confidence and summary."""
        data = report.raw if isinstance(report, AgentReport) else report
        return self._validate_fields(data, REPORT_REQUIRED_FIELDS, "report")

    def validate_critique(self, critique: AgentCritique | dict[str, Any] | None) -> ValidationResult:
        data = critique.raw if isinstance(critique, AgentCritique) else critique
        return self._validate_fields(data, CRITIQUE_REQUIRED_FIELDS, "critique")

    # --- checklists -----------------------------------------------------------

    @staticmethod
    def checklist(agent: str | None) -> list[dict[str, str]]:
        """The self-critique checks expected from a role."""
        items = CRITIQUE_CHECKLISTS.get(agent or "", GENERIC_CHECKLIST)
        return [{"id": check_id, "check": check} for check_id, check in items]

    def checklist_gaps(self, critique: AgentCritique | None, agent: str | None) -> dict[str, list[str]]:
        """Check ids the critique names that the role does not define, and
        role checks the critique neither completed nor failed.
        """
        known = [item["id"] for item in self.checklist(agent)]
        if critique is None:
            return {"unknown": [], "unchecked": known}
        named = critique.checks_completed + critique.checks_failed
        return {
            "unknown": [c for c in dict.fromkeys(named) if c not in known],
            "unchecked": [c for c in known if c not in named],
        }

    def critique_prompt(self, agent: str | None) -> str:
        """Prompt section asking an agent to critique its work before reporting."""
        lines = [
            "## Before Finalizing: Self-Critique",
            "",
            "Review your work against this checklist before you submit:",
            "",
        ]
        lines.extend(f"- [ ] {item['check']} ({item['id']})" for item in self.checklist(agent))
        lines.extend([
            "",
            "Then output a critique block ahead of your report, naming the check ids above:",
            "",
            "<!--HIVE_CRITIQUE",
            '{"critique_passed": true, "checks_completed": [], "checks_failed": [],'
            ' "issues_found": [], "confidence_adjustment": 0, "ready_to_submit": true}',
            "HIVE_CRITIQUE-->",
        ])
        return "\n".join(lines)

    # --- decisions ------------------------------------------------------------

    def decide(self, report: AgentReport | None) -> ReportDecision | str:
        """Map a report to a decision. None yields `no_report`."""
        if report is None:
            return NO_REPORT
        if report.status == "complete":
            return "pass" if report.confidence >= self.pass_threshold else "pass_low_confidence"
        if report.status == "partial":
            return "blocked" if report.open_blockers else "partial"
        if report.status == "blocked":
            return "blocked"
        return "unknown_status"

    @staticmethod
    def should_retry(critique: AgentCritique | None) -> bool:
        """Whether the agent's own critique asks for another attempt."""
        if critique is None:
            return False
        if critique.not_ready:
            return True
        return any(i.fixable and i.severity != "low" for i in critique.issues_found)

    def overall_result(self, raw_output: str, agent: str | None = None) -> OverallResult | str:
        """Combine critique and report into one outcome."""
        return self.overall_result_from(self.extract_all(raw_output), agent)

    def overall_result_from(self, blocks: ExtractedBlocks, agent: str | None = None) -> OverallResult | str:
        """Same as `overall_result` for blocks that were already extracted."""
        if blocks.report is None:
            logger.warning("No self-report found in output of %s", agent or "agent")
            return NO_REPORT

        self.log(agent, blocks)
        report_result = self.decide(blocks.report)
        critique = blocks.critique
        if critique is None:
            return report_result
        if critique.not_ready:
            return "needs_revision"
        if critique.issues_found and report_result == "pass":
            return "pass_with_warnings"
        return report_result

    # --- confidence -----------------------------------------------------------

    @staticmethod
    def issue_counts(critique: AgentCritique | None) -> dict[str, int]:
        counts = {severity: 0 for severity in SEVERITIES}
        if critique is not None:
            for issue in critique.issues_found:
                if issue.severity in counts:
                    counts[issue.severity] += 1
        counts["total"] = sum(counts.values())
        return counts

    def adjusted_confidence(self, critique: AgentCritique | None, base_confidence: float) -> float:
        """Base confidence moved by the critique's adjustment and issue penalties."""
        base_confidence = _as_float(base_confidence)
        if critique is None:
            return round(clamp(base_confidence), 2)
        counts = self.issue_counts(critique)
        penalty = sum(counts[s] * weight for s, weight in SEVERITY_PENALTIES.items())
        final = base_confidence + critique.confidence_adjustment - penalty
        return round(clamp(final), 2)

    @staticmethod
    def retry_feedback(critique: AgentCritique | None) -> str:
        """Prompt text telling an agent what its own critique flagged."""
        if critique is None:
            return "No critique available."

        lines = ["Your self-critique identified the following issues:"]
        if critique.checks_failed:
            lines.append(f"- Failed checks: {', '.join(critique.checks_failed)}")
        issues = [i.issue for i in critique.issues_found if i.issue]
        if issues:
            lines.append(f"- Issues found: {'; '.join(issues)}")
        lines.append("")
        lines.append("Please address these issues before submitting your final output.")
        return "\n".join(lines)

    # --- side effects -----------------------------------------------------------

    @staticmethod
    def apply_to_run_state(report: AgentReport, state: RunState, agent: str | None = None) -> None:
        """Fold a report's decisions, files and blockers into the run state."""
        author = agent or report.agent or "unknown"

        for entry in report.decisions:
            if isinstance(entry, str):
                decision, rationale = entry, ""
            elif isinstance(entry, dict):
                decision = str(entry.get("decision") or "")
                rationale = str(entry.get("rationale") or "")
            else:
                continue
            if decision:
                state.add_decision(author, decision, rationale)

        for path in report.files_modified:
            state.add_key_file(path)

        for blocker in report.open_blockers:
            state.add_blocker(author, blocker)

    def log(self, agent: str | None, blocks: ExtractedBlocks) -> None:
        if self.events is None:
            return
        agent = agent or "unknown"
        if blocks.critique is not None:
            critique = blocks.critique
            self.events.log(
                "agent_critique",
                agent=agent,
                critique_passed=critique.critique_passed,
                ready_to_submit=critique.ready_to_submit,
                **self.issue_counts(critique),
            )
        if blocks.report is not None:
            report = blocks.report
            self.events.log(
                "agent_selfeval",
                agent=agent,
                status=report.status,
                confidence=report.confidence,
                summary=report.summary,
                tasks_created=len(report.tasks_created),
                tasks_closed=len(report.tasks_closed),
                files_modified=len(report.files_modified),
            )
