"""Task generation from project goals and codebase health."""

from typing import Iterable, List, Sequence

import structlog

from .models import CodebaseSignal, ProjectGoal, RiskFlags, Task, TaskKind

logger = structlog.get_logger("yolo.loop")

FIX_BUILD_ORIGIN = "codebase:verification"
MARKER_ORIGIN = "codebase:markers"

_KIND_RANK = {kind: rank for rank, kind in enumerate(TaskKind)}


def rank_key(task: Task):
    """Sort key: kind first, then higher priority first."""
    return (_KIND_RANK[task.kind], -task.priority)


def _candidates(goals: Sequence[ProjectGoal], signal: CodebaseSignal) -> List[Task]:
    candidates: List[Task] = []

    if not signal.verification_passed or signal.lint_passed is False:
        failing = []
        if not signal.verification_passed:
            failing.append("verification suite")
        if signal.lint_passed is False:
            failing.append("lint")
        candidates.append(
            Task(
                description=f"Fix failing {' and '.join(failing)}",
                origin_goal=FIX_BUILD_ORIGIN,
                kind=TaskKind.FIX_BUILD,
                priority=100,
            )
        )

    if signal.outstanding_markers > 0:
        candidates.append(
            Task(
                description="Resolve outstanding TODO/FIXME/XXX markers",
                origin_goal=MARKER_ORIGIN,
                kind=TaskKind.MARKER_BACKLOG,
                priority=50,
            )
        )

    for goal in goals:
        if not goal.enabled:
            continue
        candidates.append(
            Task(
                description=goal.description,
                origin_goal=goal.id,
                kind=TaskKind.GOAL_FEATURE,
                priority=goal.priority,
                estimated_change_size=goal.estimated_change_size,
                risk_flags=RiskFlags(**goal.risk_flags.model_dump()),
            )
        )
    return candidates


def generate_tasks(
    goals: Sequence[ProjectGoal],
    signal: CodebaseSignal,
    tracked: Iterable[Task] = (),
) -> List[Task]:
    """Produce the ranked, deduplicated task list for one cycle.

    Ranking: FIX_BUILD, then MARKER_BACKLOG, then GOAL_FEATURE; within
    goals by priority (higher first), then goal order. A candidate whose
    (origin goal, description) matches a tracked non-terminal task is
    dropped. Every task gets a fresh id, so a goal whose last task
    failed comes back as a new task.
    """
    active = {t.identity for t in tracked if not t.is_terminal}

    seen = set()
    tasks = []
    skipped = 0
    for candidate in _candidates(goals, signal):
        if candidate.identity in active or candidate.identity in seen:
            skipped += 1
            continue
        seen.add(candidate.identity)
        tasks.append(candidate)

    # sort() is stable, so goal order breaks ties
    tasks.sort(key=rank_key)

    logger.info(
        "tasks_generated",
        count=len(tasks),
        skipped_duplicates=skipped,
        verification_passed=signal.verification_passed,
        outstanding_markers=signal.outstanding_markers,
    )
    return tasks
