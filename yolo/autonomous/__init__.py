"""Autonomous development loop: run state, gating, pipeline and deployment.

``AutonomousManager`` and ``AutonomousCommands`` live in
``yolo.autonomous.manager`` and ``yolo.autonomous.commands``; they
depend on ``yolo.config`` and are not re-exported here.
"""

from .models import (
    ApprovalDecision,
    ApprovalRequest,
    AutonomyLevel,
    ControlSignal,
    CycleReport,
    DeploymentOutcome,
    DeploymentRun,
    PauseReason,
    PipelineRun,
    ProjectGoal,
    QualityReport,
    RunSettings,
    RunState,
    StatusSnapshot,
    Task,
    TaskStatus,
    next_run_state,
)
from .database import StateStore
from .circuit_breaker import CircuitBreaker
from .approval import ApprovalWorkflow
from .pipeline import PipelineExecutor
from .deployment import DeploymentPipeline
from .quality_gates import QualityGateRunner
from .loop import ControlLoop

__all__ = [
    # Models
    "ApprovalDecision",
    "ApprovalRequest",
    "AutonomyLevel",
    "ControlSignal",
    "CycleReport",
    "DeploymentOutcome",
    "DeploymentRun",
    "PauseReason",
    "PipelineRun",
    "ProjectGoal",
    "QualityReport",
    "RunSettings",
    "RunState",
    "StatusSnapshot",
    "Task",
    "TaskStatus",
    "next_run_state",
    # State
    "StateStore",
    # Components
    "CircuitBreaker",
    "ApprovalWorkflow",
    "PipelineExecutor",
    "DeploymentPipeline",
    "QualityGateRunner",
    "ControlLoop",
]
