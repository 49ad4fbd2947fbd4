"""Core orchestration logic."""
from hive.orchestration.branches import Branch, BranchPhase, BranchScheduler, BranchSummary
from hive.orchestration.checkpoint import (
    Checkpoint,
    CheckpointStore,
    CheckpointSummary,
    ResumeAction,
    ResumeContext,
)
from hive.orchestration.environment import EnvironmentProbe, EnvironmentReport, TestStrategy
from hive.orchestration.errors import (
    BranchNotFoundError,
    BranchTimeoutError,
    CheckpointNotFoundError,
    HandoffNotFoundError,
    HiveError,
    InvalidTransitionError,
    RecordNotFoundError,
)
from hive.orchestration.events import EventLog
from hive.orchestration.handoff import HandoffDocument, HandoffStore
from hive.orchestration.models import RunState
from hive.orchestration.pipeline import Pipeline, PipelineResult
from hive.orchestration.report import AgentCritique, AgentReport, ReportProtocol
from hive.orchestration.router import Router, WorkflowPlan
from hive.orchestration.state import RunStateStore

__all__ = [
    "AgentCritique",
    "AgentReport",
    "Branch",
    "BranchNotFoundError",
    "BranchPhase",
    "BranchScheduler",
    "BranchSummary",
    "BranchTimeoutError",
    "Checkpoint",
    "CheckpointNotFoundError",
    "CheckpointStore",
    "CheckpointSummary",
    "EnvironmentProbe",
    "EnvironmentReport",
    "EventLog",
    "HandoffDocument",
    "HandoffNotFoundError",
    "HandoffStore",
    "HiveError",
    "InvalidTransitionError",
    "Pipeline",
    "PipelineResult",
    "RecordNotFoundError",
    "ReportProtocol",
    "ResumeAction",
    "ResumeContext",
    "Router",
    "RunState",
    "RunStateStore",
    "TestStrategy",
    "WorkflowPlan",
]
