"""Tests for task generation."""

from yolo.autonomous.models import CodebaseSignal, ProjectGoal, RiskFlags, TaskKind, TaskStatus
from yolo.autonomous.task_generator import FIX_BUILD_ORIGIN, generate_tasks

GOALS = [
    ProjectGoal(id="docs", description="Write docs", priority=1),
    ProjectGoal(id="auth", description="Harden auth", priority=5, risk_flags=RiskFlags(security_sensitive=True)),
    ProjectGoal(id="perf", description="Speed up search", priority=1),
]
HEALTHY = CodebaseSignal(verification_passed=True, lint_passed=True, outstanding_markers=0)


def test_ranking_fix_build_then_markers_then_goals():
    signal = CodebaseSignal(verification_passed=False, lint_passed=True, outstanding_markers=4)
    tasks = generate_tasks(GOALS, signal)
    assert [t.kind for t in tasks] == [
        TaskKind.FIX_BUILD,
        TaskKind.MARKER_BACKLOG,
        TaskKind.GOAL_FEATURE,
        TaskKind.GOAL_FEATURE,
        TaskKind.GOAL_FEATURE,
    ]
    # Goals by priority, ties in file order
    assert [t.origin_goal for t in tasks[2:]] == ["auth", "docs", "perf"]


def test_healthy_codebase_yields_only_goals():
    tasks = generate_tasks(GOALS, HEALTHY)
    assert {t.kind for t in tasks} == {TaskKind.GOAL_FEATURE}


def test_lint_failure_alone_creates_fix_task():
    tasks = generate_tasks([], CodebaseSignal(verification_passed=True, lint_passed=False))
    assert len(tasks) == 1
    assert tasks[0].origin_goal == FIX_BUILD_ORIGIN
    assert "lint" in tasks[0].description


def test_goal_attributes_copied():
    auth = next(t for t in generate_tasks(GOALS, HEALTHY) if t.origin_goal == "auth")
    assert auth.risk_flags.security_sensitive is True
    assert auth.status == TaskStatus.GENERATED
    assert auth.requires_approval is None


def test_tracked_non_terminal_task_is_not_regenerated():
    first = generate_tasks(GOALS, HEALTHY)
    pending = first[0].model_copy(update={"status": TaskStatus.APPROVAL_PENDING})
    second = generate_tasks(GOALS, HEALTHY, tracked=[pending])
    assert pending.identity not in {t.identity for t in second}
    assert len(second) == len(first) - 1


def test_failed_goal_gets_a_fresh_task():
    first = generate_tasks(GOALS, HEALTHY)
    failed = first[0].model_copy(update={"status": TaskStatus.FAILED})
    second = generate_tasks(GOALS, HEALTHY, tracked=[failed])
    retry = next(t for t in second if t.identity == failed.identity)
    assert retry.id != failed.id
    assert retry.status == TaskStatus.GENERATED


def test_disabled_goals_skipped():
    goals = [ProjectGoal(id="off", description="Disabled", enabled=False)]
    assert generate_tasks(goals, HEALTHY) == []


def test_duplicate_goals_collapse():
    goals = [ProjectGoal(id="a", description="Same"), ProjectGoal(id="a", description="Same")]
    assert len(generate_tasks(goals, HEALTHY)) == 1
