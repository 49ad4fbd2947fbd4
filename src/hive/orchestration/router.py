"""Routing of tasks to agent roles and phase transitions."""

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Callable, Literal, Mapping

from hive.config import defaults
from hive.orchestration.environment import EnvironmentReport, TestStrategy

COMPLETE = "complete"
RETRY_PREVIOUS = "retry_previous"
UNKNOWN = "unknown"

TESTER_ROLES = {"tester", "e2e-tester", "component-tester"}

FailureRoute = Literal["debugger", "retry"]


@dataclass(frozen=True)
class TaskInfo:
    """The task fields routing looks at."""

    type: str = ""
    file: str = ""
    title: str = ""

    @classmethod
    def from_mapping(cls, task: Mapping[str, Any]) -> "TaskInfo":
        return cls(
            type=str(task.get("type") or "").strip().lower(),
            file=str(task.get("file") or ""),
            title=str(task.get("title") or task.get("action") or ""),
        )


@dataclass(frozen=True)
class RoutingRule:
    """One entry of the ordered routing table."""

    name: str
    role: str
    matches: Callable[[TaskInfo], bool]


@dataclass
class WorkflowPhase:
    agent: str
    phase: str

    def to_dict(self) -> dict[str, str]:
        return {"agent": self.agent, "phase": self.phase}


@dataclass
class WorkflowPlan:
    """Canonical phase sequence for one objective."""

    objective: str
    phases: list[WorkflowPhase]
    has_frontend: bool
    test_strategy: TestStrategy = field(default_factory=TestStrategy)

    @property
    def agents(self) -> list[str]:
        return [p.agent for p in self.phases]

    def to_dict(self) -> dict[str, Any]:
        return {
            "objective": self.objective,
            "workflow": [p.to_dict() for p in self.phases],
            "has_frontend": self.has_frontend,
            "test_strategy": self.test_strategy.to_dict(),
        }


def _prefix_pattern(keywords: list[str]) -> re.Pattern[str]:
    """Match any keyword starting at a word boundary."""
    return re.compile(r"\b(?:" + "|".join(re.escape(kw) for kw in keywords) + ")")


def _search(pattern: str) -> Callable[[str], bool]:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda text: compiled.search(text) is not None


def _file_matches(globs: list[str]) -> Callable[[TaskInfo], bool]:
    def check(task: TaskInfo) -> bool:
        if not task.file:
            return False
        name = task.file.lower()
        basename = name.rsplit("/", 1)[-1]
        return any(fnmatch(basename, g) or fnmatch(name, g) for g in globs)
    return check


def build_rules() -> list[RoutingRule]:
    """Assemble the routing table from the defaults, highest priority first."""
    rules: list[RoutingRule] = []

    # 1. Explicit type
    type_e2e = _search(defaults.TEST_TYPE_E2E_PATTERN)
    type_component = _search(defaults.TEST_TYPE_COMPONENT_PATTERN)

    def is_test_type(task: TaskInfo) -> bool:
        return task.type in defaults.TEST_TYPES

    rules.append(RoutingRule(
        "type:test:e2e", "e2e-tester",
        lambda t: is_test_type(t) and type_e2e(t.title),
    ))
    rules.append(RoutingRule(
        "type:test:component", "component-tester",
        lambda t: is_test_type(t) and type_component(t.title),
    ))
    rules.append(RoutingRule("type:test", "tester", is_test_type))

    for task_type, role in defaults.TYPE_ROLES.items():
        rules.append(RoutingRule(
            f"type:{task_type}", role,
            lambda t, task_type=task_type: t.type == task_type,
        ))

    # 2. File heuristics
    rules.append(RoutingRule("file:ui", "implementer", _file_matches(defaults.UI_FILE_GLOBS)))
    rules.append(RoutingRule("file:test", "tester", _file_matches(defaults.TEST_FILE_GLOBS)))
    rules.append(RoutingRule("file:e2e", "e2e-tester", _file_matches(defaults.E2E_FILE_GLOBS)))

    # 3. Title keywords
    title_e2e = _search(defaults.TEST_TITLE_E2E_PATTERN)
    title_component = _search(defaults.TEST_TITLE_COMPONENT_PATTERN)

    for role, keywords in defaults.TITLE_KEYWORDS:
        pattern = _prefix_pattern(keywords)

        def title_matches(t: TaskInfo, pattern: re.Pattern[str] = pattern) -> bool:
            return pattern.search(t.title.lower()) is not None

        if role == "tester":
            rules.append(RoutingRule(
                "title:test:e2e", "e2e-tester",
                lambda t, m=title_matches: m(t) and title_e2e(t.title),
            ))
            rules.append(RoutingRule(
                "title:test:component", "component-tester",
                lambda t, m=title_matches: m(t) and title_component(t.title),
            ))
        rules.append(RoutingRule(f"title:{role}", role, title_matches))

    # 4. Default
    rules.append(RoutingRule("default", defaults.DEFAULT_ROLE, lambda t: True))
    return rules


class Router:
    """Decides which agent owns a task and what comes after each agent.

    Everything here is a pure function of its arguments; environment
    detection is done by `EnvironmentProbe` and passed in.
    """

    def __init__(self, rules: list[RoutingRule] | None = None) -> None:
        self.rules = rules if rules is not None else build_rules()

    def match(self, task: Mapping[str, Any] | TaskInfo) -> RoutingRule:
        """Return the first rule that accepts the task."""
        info = task if isinstance(task, TaskInfo) else TaskInfo.from_mapping(task)
        for rule in self.rules:
            if rule.matches(info):
                return rule
        raise LookupError("Routing table has no default rule")

    def classify(self, task: Mapping[str, Any] | TaskInfo) -> str:
        """Classify a task into the agent role that should handle it."""
        return self.match(task).role

    def route_tasks(self, tasks: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Classify a batch of tracker tasks."""
        routed = []
        for task in tasks:
            task_id = task.get("beads_id") or task.get("task_id") or task.get("id") or "unknown"
            routed.append({"agent": self.classify(task), "task_id": task_id, "task": dict(task)})
        return routed

    @staticmethod
    def next_agent(current_agent: str, has_frontend: bool = False, has_tests: bool = True) -> str:
        """Next role in the canonical pipeline, or a terminal marker.

        Returns `complete` after review and `retry_previous` after debugging;
        the orchestrator resolves the latter from its own phase history.
        """
        if current_agent == "architect":
            return "implementer"
        if current_agent == "implementer":
            if has_frontend:
                return "ui-designer"
            return "tester" if has_tests else "reviewer"
        if current_agent == "ui-designer":
            return "tester" if has_tests else "reviewer"
        if current_agent in TESTER_ROLES:
            return "reviewer"
        if current_agent == "reviewer":
            return COMPLETE
        if current_agent == "debugger":
            return RETRY_PREVIOUS
        return UNKNOWN

    @staticmethod
    def route_on_failure(agent: str, error: str) -> FailureRoute:
        """Send build and test failures to the debugger, retry anything else."""
        error_lower = (error or "").lower()
        for route, pattern in defaults.FAILURE_BUCKETS:
            if re.search(pattern, error_lower):
                return route  # type: ignore[return-value]
        return "retry"

    @staticmethod
    def plan_workflow(objective: str, environment: EnvironmentReport) -> WorkflowPlan:
        """Build the phase sequence for an objective."""
        phases = [
            WorkflowPhase("architect", "design"),
            WorkflowPhase("implementer", "implementation"),
        ]
        if environment.has_frontend:
            phases.append(WorkflowPhase("ui-designer", "ui_review"))
        if defaults.E2E_FRAMEWORKS & set(environment.test_strategy.frameworks):
            phases.append(WorkflowPhase("e2e-tester", "testing"))
        phases.append(WorkflowPhase("tester", "testing"))
        phases.append(WorkflowPhase("reviewer", "review"))

        return WorkflowPlan(
            objective=objective,
            phases=phases,
            has_frontend=environment.has_frontend,
            test_strategy=environment.test_strategy,
        )

    @staticmethod
    def parallel_agents(phase: str) -> list[str]:
        """Roles that may run concurrently within a phase."""
        return list(defaults.PARALLEL_AGENTS.get(phase, []))
