"""Pydantic models for the autonomous operation system.

Defines the run-state machine, the task/approval/pipeline/deployment
domain models, the frozen run-settings snapshot taken at Start, and the
report/status shapes exposed to humans.

Domain models (stored in DB):
    Task, ApprovalRequest, DeploymentRun, OutcomeEvent, CycleReport,
    QualityReport

Transient models (handed between components by value):
    ProjectGoal, CodebaseSignal, RiskAssessment, PipelineRun,
    SuiteResult, StatusSnapshot

Settings (immutable for the lifetime of a run):
    WorkingHours, RiskThresholds, RunSettings

Enums:
    RunState, PauseReason, ControlSignal, AutonomyLevel, TaskKind,
    TaskStatus, RiskLevel, ApprovalDecision, PipelineStage,
    PipelineResult, Environment, DeploymentStage, DeploymentOutcome
"""

import uuid
from datetime import datetime, time
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .exceptions import InvalidTransitionError


class RunState(str, Enum):
    """State of the autonomous run.

    Flow: INACTIVE -> ACTIVE <-> PAUSED, ACTIVE|PAUSED -> STOPPED,
    STOPPED -> ACTIVE (new Start).
    """
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"


class PauseReason(str, Enum):
    """Why a run is paused."""
    HUMAN_OVERRIDE = "human_override"
    CIRCUIT_BREAKER = "circuit_breaker"


class ControlSignal(str, Enum):
    """Atomic control signals accepted by the run-state machine."""
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"


_RUN_STATE_GRAPH: Dict[Tuple[RunState, ControlSignal], RunState] = {
    (RunState.INACTIVE, ControlSignal.START): RunState.ACTIVE,
    (RunState.STOPPED, ControlSignal.START): RunState.ACTIVE,
    (RunState.ACTIVE, ControlSignal.PAUSE): RunState.PAUSED,
    (RunState.PAUSED, ControlSignal.RESUME): RunState.ACTIVE,
    (RunState.ACTIVE, ControlSignal.STOP): RunState.STOPPED,
    (RunState.PAUSED, ControlSignal.STOP): RunState.STOPPED,
}


def next_run_state(current: RunState, signal: ControlSignal) -> RunState:
    """Return the state reached by applying ``signal`` to ``current``.

    Raises:
        InvalidTransitionError: If the edge is not in the run-state graph.
    """
    try:
        return _RUN_STATE_GRAPH[(current, signal)]
    except KeyError:
        raise InvalidTransitionError(
            current=current.value, signal=signal.value
        ) from None


class AutonomyLevel(str, Enum):
    """How much work proceeds without human sign-off."""
    ROUTINE = "routine"
    ESCALATION = "escalation"
    HUMAN_APPROVAL = "human_approval"


class TaskKind(str, Enum):
    """Where a task came from. Declaration order is ranking order."""
    FIX_BUILD = "fix_build"
    MARKER_BACKLOG = "marker_backlog"
    GOAL_FEATURE = "goal_feature"


class TaskStatus(str, Enum):
    """Lifecycle status of a task.

    Flow: GENERATED -> (APPROVAL_PENDING -> APPROVED | REJECTED) ->
    EXECUTING -> SUCCEEDED | FAILED.
    """
    GENERATED = "generated"
    APPROVAL_PENDING = "approval_pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.REJECTED}
)


class RiskLevel(str, Enum):
    """Coarse risk label carried on approval requests."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalDecision(str, Enum):
    """Resolution of an approval request."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class PipelineStage(str, Enum):
    """Stages of the per-task development pipeline, in order."""
    BRANCHING = "branching"
    MODIFYING = "modifying"
    TESTING = "testing"
    COMMITTING = "committing"
    INTEGRATING = "integrating"


class PipelineResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Environment(str, Enum):
    STAGING = "staging"
    PRODUCTION = "production"


class DeploymentStage(str, Enum):
    """Stages of the deployment pipeline, in order."""
    BUILDING = "building"
    PACKAGING = "packaging"
    STAGING_DEPLOY = "staging_deploy"
    SMOKE_TEST = "smoke_test"
    PRODUCTION_DEPLOY = "production_deploy"
    VERIFY = "verify"


class DeploymentOutcome(str, Enum):
    """Terminal outcome of a deployment run.

    PENDING_PROMOTION means staging succeeded and production waits for
    a human to promote the version (``auto_deploy`` disabled).
    """
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    PENDING_PROMOTION = "pending_promotion"


# ---------------------------------------------------------------------------
# Settings snapshot
# ---------------------------------------------------------------------------


class WorkingHours(BaseModel):
    """Window in which the scheduler may run a cycle.

    ``start`` is inclusive, ``end`` exclusive. Weekdays use
    ``datetime.weekday()`` numbering (0 = Monday).
    """

    model_config = ConfigDict(frozen=True)

    start: time = Field(default=time(9, 0))
    end: time = Field(default=time(18, 0))
    timezone: str = Field(default="UTC", description="IANA timezone name")
    weekdays: Tuple[int, ...] = Field(default=(0, 1, 2, 3, 4))


class RiskThresholds(BaseModel):
    """Limits beyond which a task counts as risky.

    The ``allow_*`` gates mirror the original ``risk_thresholds``
    booleans: ``False`` means that kind of change is risky.
    """

    model_config = ConfigDict(frozen=True)

    max_change_size: int = Field(default=1000, ge=0, description="Max changed lines")
    allow_database_changes: bool = False
    allow_external_api_calls: bool = False
    allow_security_sensitive: bool = False


class RunSettings(BaseModel):
    """Immutable configuration snapshot captured when a run starts."""

    model_config = ConfigDict(frozen=True)

    autonomy_level: AutonomyLevel = AutonomyLevel.ESCALATION
    working_hours: WorkingHours = Field(default_factory=WorkingHours)
    risk_thresholds: RiskThresholds = Field(default_factory=RiskThresholds)
    cycle_minutes: float = Field(default=30, gt=0)
    max_tasks_per_cycle: int = Field(default=3, ge=1)
    approval_timeout_minutes: float = Field(default=60, gt=0)
    approval_timeout_status: TaskStatus = TaskStatus.REJECTED
    breaker_window_size: int = Field(default=100, ge=1)
    breaker_failure_ratio: float = Field(default=0.05, gt=0.0, le=1.0)
    auto_merge: bool = False
    auto_deploy: bool = False
    deployment_enabled: bool = True
    main_branch: str = "main"
    branch_prefix: str = "yolo/"

    @field_validator("approval_timeout_status")
    @classmethod
    def _timeout_never_approves(cls, value: TaskStatus) -> TaskStatus:
        if value not in (TaskStatus.REJECTED, TaskStatus.FAILED):
            raise ValueError("approval timeout outcome must be rejected or failed")
        return value


# ---------------------------------------------------------------------------
# Task generation and risk
# ---------------------------------------------------------------------------


class RiskFlags(BaseModel):
    """Risk attributes declared on a goal and copied onto its tasks."""

    model_config = ConfigDict(frozen=True)

    touches_database: bool = False
    calls_external_api: bool = False
    security_sensitive: bool = False


class ProjectGoal(BaseModel):
    """Externally supplied project goal (``goals.yaml``)."""

    id: str = Field(..., description="Stable goal identifier")
    description: str = Field(..., description="What the goal asks for")
    priority: int = Field(default=0, description="Higher = earlier among goals")
    estimated_change_size: int = Field(default=0, ge=0)
    risk_flags: RiskFlags = Field(default_factory=RiskFlags)
    enabled: bool = True


class CodebaseSignal(BaseModel):
    """Snapshot of repository health used to generate tasks."""

    verification_passed: bool = Field(..., description="Build + tests currently green")
    lint_passed: Optional[bool] = Field(default=None, description="None if no linter")
    outstanding_markers: int = Field(default=0, ge=0, description="TODO/FIXME/XXX count")
    details: str = Field(default="", description="Tail of failing tool output")


class Task(BaseModel):
    """A unit of autonomous work.

    Status transitions are owned by exactly one component per stage:
    RiskGate (GENERATED), ApprovalWorkflow (APPROVAL_PENDING ->
    APPROVED/REJECTED), PipelineExecutor (EXECUTING -> SUCCEEDED/FAILED).
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    description: str = Field(..., description="What the task changes")
    origin_goal: str = Field(..., description="Goal id or built-in source name")
    kind: TaskKind = Field(default=TaskKind.GOAL_FEATURE)
    priority: int = Field(default=0)
    estimated_change_size: int = Field(default=0, ge=0)
    risk_flags: RiskFlags = Field(default_factory=RiskFlags)
    status: TaskStatus = Field(default=TaskStatus.GENERATED)
    requires_approval: Optional[bool] = Field(
        default=None, description="Set once by the risk gate, never re-evaluated"
    )
    risk_reasons: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    error_message: Optional[str] = None

    @property
    def identity(self) -> Tuple[str, str]:
        """Deduplication key: (origin goal, description)."""
        return (self.origin_goal, self.description)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class RiskAssessment(BaseModel):
    """Risk gate decision for one task. Pure function of its inputs."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    autonomy_level: AutonomyLevel
    flags: Tuple[str, ...] = ()
    oversize: bool = False
    requires_approval: bool
    reasons: Tuple[str, ...] = ()

    @property
    def risky(self) -> bool:
        return bool(self.flags) or self.oversize

    @property
    def risk_level(self) -> RiskLevel:
        if "security_sensitive" in self.flags or len(self.reasons) >= 2:
            return RiskLevel.HIGH
        if self.reasons:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


class ApprovalRequest(BaseModel):
    """Human approval request, one-to-one with an APPROVAL_PENDING task."""

    task_id: str
    description: str = ""
    risk_level: RiskLevel = RiskLevel.MEDIUM
    reasons: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    expires_at: datetime
    decision: ApprovalDecision = ApprovalDecision.PENDING
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.decision == ApprovalDecision.PENDING


# ---------------------------------------------------------------------------
# Verification and pipeline
# ---------------------------------------------------------------------------


class SuiteResult(BaseModel):
    """Outcome of one verification suite (build, lint, unit, integration)."""

    name: str
    passed: bool
    command: List[str] = Field(default_factory=list)
    output: str = Field(default="", description="Output tail")
    duration_seconds: float = 0.0


class QualityReport(BaseModel):
    """Result of a full verification run.

    ``deployment_ready`` is the "Deployment Ready: YES" line of the
    original test report: every suite that ran passed.
    """

    suites: List[SuiteResult] = Field(default_factory=list)
    deployment_ready: bool = False
    generated_at: datetime = Field(default_factory=datetime.now)
    task_id: Optional[str] = None
    revision: Optional[str] = None

    @property
    def passed(self) -> bool:
        return all(s.passed for s in self.suites)

    @property
    def failed_suites(self) -> List[str]:
        return [s.name for s in self.suites if not s.passed]

    def summary(self) -> str:
        if not self.suites:
            return "no verification suites configured"
        if self.passed:
            return f"all {len(self.suites)} suites passed"
        return f"{len(self.failed_suites)} suite(s) failed: {', '.join(self.failed_suites)}"


class PipelineRun(BaseModel):
    """Record of one task's trip through the development pipeline."""

    task_id: str
    branch: Optional[str] = None
    original_branch: Optional[str] = None
    stage: PipelineStage = PipelineStage.BRANCHING
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    result: Optional[PipelineResult] = None
    committed: bool = Field(default=False, description="Commit point reached")
    integrated: bool = Field(default=False, description="Merged into main")
    review_branch: Optional[str] = Field(
        default=None, description="Branch handed off for human review"
    )
    commit_revision: Optional[str] = None
    quality_report: Optional[QualityReport] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.result == PipelineResult.SUCCEEDED


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class DeploymentRun(BaseModel):
    """Record of one version's trip through the deployment pipeline."""

    id: Optional[int] = None
    version_tag: str
    task_id: Optional[str] = None
    environment: Environment = Environment.STAGING
    stage: DeploymentStage = DeploymentStage.BUILDING
    outcome: Optional[DeploymentOutcome] = None
    package: Optional[str] = None
    previous_versions: Dict[str, Optional[str]] = Field(default_factory=dict)
    rolled_back: List[str] = Field(
        default_factory=list, description="Environments restored after failure"
    )
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Reports and status
# ---------------------------------------------------------------------------


class OutcomeEvent(BaseModel):
    """One entry in the circuit breaker's error window."""

    succeeded: bool
    source: str = Field(..., description="e.g. 'task:<id>' or 'deploy:<tag>'")
    detail: str = ""
    recorded_at: datetime = Field(default_factory=datetime.now)


class CycleReport(BaseModel):
    """Summary of one scheduler cycle, persisted for audit."""

    cycle_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = Field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    skipped_reason: Optional[str] = None
    tasks_generated: int = 0
    auto_executed: List[str] = Field(default_factory=list)
    approval_requested: List[str] = Field(default_factory=list)
    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    rejected: List[str] = Field(default_factory=list)
    cancelled: bool = False
    deployment: Optional[DeploymentRun] = None
    error_message: Optional[str] = None


class StatusSnapshot(BaseModel):
    """Read-only status exposed to humans (``yolo status``)."""

    run_state: RunState = RunState.INACTIVE
    pause_reason: Optional[PauseReason] = None
    autonomy_level: Optional[AutonomyLevel] = None
    started_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    pending_approvals: int = 0
    recent_error_rate: float = 0.0
    outcomes_in_window: int = 0
    active_tasks: int = 0
    deploy_hold: bool = False
    last_deployment: Optional[DeploymentRun] = None
    last_quality_report: Optional[QualityReport] = None
    recently_rejected: List[Task] = Field(default_factory=list)

    @property
    def breaker_tripped(self) -> bool:
        return (
            self.run_state == RunState.PAUSED
            and self.pause_reason == PauseReason.CIRCUIT_BREAKER
        )
