"""Exception hierarchy for the autonomous operation subsystem.

Exception design principles:
- AutonomousError is the base for all autonomous subsystem exceptions
- Subclasses map to natural failure domains: run state, risk, approval,
  pipeline (git, verification), deployment (rollback)
- All exceptions support 'from e' chaining for full traceability
- Exceptions preserve structured context (task_id, stage, version_tag)
"""

from typing import Any, Optional

from ..exceptions import ConfigurationError, ErrorCategory, YoloError

__all__ = [
    "AutonomousError",
    "ConfigurationError",
    "InvalidTransitionError",
    "RiskAssessmentError",
    "ApprovalError",
    "PipelineError",
    "GitOperationError",
    "VerificationFailedError",
    "PipelineCancelledError",
    "DeploymentError",
    "DeploymentPreconditionError",
    "RollbackError",
]


class AutonomousError(YoloError):
    """Base exception for all autonomous system errors."""

    def __init__(
        self,
        message: str = "",
        *,
        task_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.task_id = task_id
        super().__init__(
            message, category=category, module=module or "autonomous", **context
        )


# --- Run state ---


class InvalidTransitionError(AutonomousError):
    """A control signal is not legal from the current run state."""

    def __init__(self, message: str = "", *, current: str = "", signal: str = "") -> None:
        self.current = current
        self.signal = signal
        super().__init__(
            message or f"Cannot {signal} while {current}",
            module="autonomous.state",
        )


# --- Risk gate ---


class RiskAssessmentError(AutonomousError):
    """A task was assessed twice or is in a state that cannot be assessed."""


# --- Approval workflow ---


class ApprovalError(AutonomousError):
    """Approval request could not be created or resolved."""


# --- Pipeline ---


class PipelineError(AutonomousError):
    """A pipeline stage failed.

    Attributes:
        stage: PipelineStage value where the failure happened.
    """

    def __init__(
        self,
        message: str = "",
        *,
        task_id: Optional[str] = None,
        stage: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        **context: Any,
    ) -> None:
        self.stage = stage
        super().__init__(
            message,
            task_id=task_id,
            category=category,
            module="autonomous.pipeline",
            **context,
        )


class GitOperationError(PipelineError):
    """A git command failed (branch, commit, merge, stash)."""


class VerificationFailedError(PipelineError):
    """The verification suite did not pass."""


class PipelineCancelledError(PipelineError):
    """Run state left Active before the commit point."""


# --- Deployment ---


class DeploymentError(AutonomousError):
    """A deployment stage failed.

    Attributes:
        stage: DeploymentStage value where the failure happened.
        version_tag: Version being deployed.
    """

    def __init__(
        self,
        message: str = "",
        *,
        stage: Optional[str] = None,
        version_tag: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        **context: Any,
    ) -> None:
        self.stage = stage
        self.version_tag = version_tag
        super().__init__(
            message, category=category, module="autonomous.deployment", **context
        )


class DeploymentPreconditionError(DeploymentError):
    """Deployment refused: no verified candidate, stale report, or a human hold."""

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message, category=ErrorCategory.PERMANENT, **context)


class RollbackError(DeploymentError):
    """Rollback itself failed. Never auto-remediated."""

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message, category=ErrorCategory.INFRASTRUCTURE, **context)
