"""Risk gate and escalation policy.

Decision table:

    ROUTINE                      -> auto
    ESCALATION, nothing risky    -> auto
    ESCALATION, risky            -> approval
    HUMAN_APPROVAL               -> approval

A risk flag only counts when its threshold gate disallows it
(``allow_database_changes=False`` makes database changes risky).
"""

from datetime import datetime
from typing import List

import structlog

from .exceptions import RiskAssessmentError
from .models import (
    AutonomyLevel,
    RiskAssessment,
    RiskThresholds,
    Task,
    TaskStatus,
)

logger = structlog.get_logger("yolo.loop")


def assess(task: Task, level: AutonomyLevel, thresholds: RiskThresholds) -> RiskAssessment:
    """Assess a task. Pure: same inputs, same answer."""
    flags: List[str] = []
    reasons: List[str] = []

    if task.risk_flags.touches_database and not thresholds.allow_database_changes:
        flags.append("touches_database")
        reasons.append("modifies the database schema or data")
    if task.risk_flags.calls_external_api and not thresholds.allow_external_api_calls:
        flags.append("calls_external_api")
        reasons.append("calls an external API")
    if task.risk_flags.security_sensitive and not thresholds.allow_security_sensitive:
        flags.append("security_sensitive")
        reasons.append("touches security-sensitive code")

    oversize = task.estimated_change_size > thresholds.max_change_size
    if oversize:
        reasons.append(
            f"estimated change of {task.estimated_change_size} lines exceeds "
            f"{thresholds.max_change_size}"
        )

    if level == AutonomyLevel.ROUTINE:
        requires_approval = False
    elif level == AutonomyLevel.ESCALATION:
        requires_approval = bool(flags) or oversize
    else:
        requires_approval = True
        if not reasons:
            reasons.append("autonomy level requires human approval")

    return RiskAssessment(
        task_id=task.id,
        autonomy_level=level,
        flags=tuple(flags),
        oversize=oversize,
        requires_approval=requires_approval,
        reasons=tuple(reasons),
    )


def apply(task: Task, assessment: RiskAssessment) -> Task:
    """Stamp an assessment onto a GENERATED task.

    ``requires_approval`` is set exactly once per task.

    Raises:
        RiskAssessmentError: If the task was already assessed, is not
            GENERATED, or the assessment belongs to another task.
    """
    if assessment.task_id != task.id:
        raise RiskAssessmentError(
            f"Assessment for {assessment.task_id} applied to {task.id}", task_id=task.id
        )
    if task.requires_approval is not None:
        raise RiskAssessmentError("Task was already assessed", task_id=task.id)
    if task.status != TaskStatus.GENERATED:
        raise RiskAssessmentError(
            f"Cannot assess a task in status {task.status.value}", task_id=task.id
        )

    stamped = task.model_copy(
        update={
            "requires_approval": assessment.requires_approval,
            "risk_reasons": list(assessment.reasons),
            "updated_at": datetime.now(),
        }
    )
    logger.info(
        "risk_assessed",
        task_id=task.id,
        autonomy_level=assessment.autonomy_level.value,
        flags=list(assessment.flags),
        oversize=assessment.oversize,
        requires_approval=assessment.requires_approval,
    )
    return stamped
