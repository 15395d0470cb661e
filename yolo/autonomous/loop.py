"""Scheduler and per-cycle control loop.

Runs as a background asyncio task. Each tick checks the run state and
the working-hours gate; when both allow it, one cycle runs under the
working-copy lock:

    expire overdue approvals -> codebase snapshot -> generate tasks ->
    risk gate -> {pipeline | approval} -> deployment -> report

The run state is re-read at every stage boundary, so Pause or Stop
takes effect before the next pipeline stage. A cycle that fails
unexpectedly is logged and recorded as a failure; the loop keeps going.

Classes:
    ControlLoop: Background scheduler and cycle runner.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

import structlog

from ..notifications import NotificationDispatcher
from .approval import ApprovalWorkflow
from .circuit_breaker import CircuitBreaker
from .collaborators import CodeCollaborator
from .database import StateStore
from .deployment import DeploymentPipeline
from .exceptions import DeploymentPreconditionError
from .models import (
    ApprovalDecision,
    CodebaseSignal,
    CycleReport,
    DeploymentOutcome,
    OutcomeEvent,
    PipelineResult,
    ProjectGoal,
    RunSettings,
    RunState,
    Task,
    TaskStatus,
)
from .pipeline import PipelineExecutor
from .risk_gate import apply, assess
from .task_generator import generate_tasks, rank_key
from .working_hours import is_working_time, next_window_start

logger = structlog.get_logger("yolo.loop")

# Poll interval while the run is not Active (picks up Start from the CLI)
IDLE_POLL_SECONDS = 30

_FAILED_DEPLOYMENTS = (DeploymentOutcome.FAILED, DeploymentOutcome.ROLLED_BACK)


class ControlLoop:
    """Background scheduler that runs one development cycle per period."""

    def __init__(
        self,
        store: StateStore,
        breaker: CircuitBreaker,
        approvals: ApprovalWorkflow,
        executor: PipelineExecutor,
        deployment: DeploymentPipeline,
        code: CodeCollaborator,
        goals_provider: Callable[[], Sequence[ProjectGoal]],
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
        idle_poll: float = IDLE_POLL_SECONDS,
    ):
        self.store = store
        self.breaker = breaker
        self.approvals = approvals
        self.executor = executor
        self.deployment = deployment
        self.code = code
        self.goals_provider = goals_provider
        self.notifier = notifier
        self.clock = clock
        self.idle_poll = idle_poll

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        # One pipeline or deployment at a time touches the working copy
        self.work_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Spawn the background scheduler. No-op if already running."""
        if self._running:
            logger.warning("control_loop_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("control_loop_started")

    async def stop(self) -> None:
        """Cancel the scheduler. An in-flight cycle discards its uncommitted work."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("control_loop_stopped")

    def wake(self) -> None:
        """Run the next tick now instead of waiting out the period."""
        self._wake.set()

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                state, _ = await self.store.get_run_state()
                settings = await self.store.get_run_settings()
                if state == RunState.ACTIVE and settings is not None:
                    delay = settings.cycle_minutes * 60
                else:
                    delay = self.idle_poll
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("control_loop_error", error=str(e), exc_type=type(e).__name__)
                delay = self.idle_poll

            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break

    async def tick(self, now: Optional[datetime] = None) -> Optional[CycleReport]:
        """One scheduler tick.

        Returns None when the run is not Active, a skipped report when
        outside working hours, or the report of the cycle that ran.
        """
        state, _ = await self.store.get_run_state()
        if state != RunState.ACTIVE:
            return None

        settings = await self.store.get_run_settings() or RunSettings()
        now = now or self.clock()
        if not is_working_time(now, settings.working_hours):
            logger.info("cycle_skipped", reason="outside_working_hours", at=now.isoformat())
            return CycleReport(started_at=now, finished_at=now, skipped_reason="outside_working_hours")

        async with self.work_lock:
            return await self.run_cycle(settings, now)

    async def run_cycle(self, settings: RunSettings, now: Optional[datetime] = None) -> CycleReport:
        """Run one full cycle and persist its report."""
        now = now or self.clock()
        report = CycleReport(started_at=now)
        logger.info("cycle_started", cycle_id=report.cycle_id, autonomy_level=settings.autonomy_level.value)

        try:
            await self._cycle(report, settings, now)
        except asyncio.CancelledError:
            report.cancelled = True
            raise
        except Exception as e:
            report.error_message = f"{type(e).__name__}: {e}"
            logger.exception("cycle_error", cycle_id=report.cycle_id, error=str(e))
            await self.breaker.record(
                OutcomeEvent(succeeded=False, source=f"cycle:{report.cycle_id}", detail=str(e)[:500]),
                settings,
            )
        finally:
            report.finished_at = self.clock()
            await self.store.touch_last_run(now)
            await self.store.save_cycle_report(report)
            logger.info(
                "cycle_finished",
                cycle_id=report.cycle_id,
                generated=report.tasks_generated,
                executed=len(report.auto_executed),
                gated=len(report.approval_requested),
                succeeded=len(report.succeeded),
                failed=len(report.failed),
                rejected=len(report.rejected),
                cancelled=report.cancelled,
                deployment=report.deployment.outcome.value
                if report.deployment and report.deployment.outcome
                else None,
            )
        return report

    async def _still_active(self, report: CycleReport, boundary: str) -> bool:
        state, _ = await self.store.get_run_state()
        if state != RunState.ACTIVE:
            report.cancelled = True
            logger.info("cycle_interrupted", cycle_id=report.cycle_id, at=boundary, run_state=state.value)
            return False
        return True

    async def snapshot(self) -> CodebaseSignal:
        """Current repository health, used to generate fix tasks."""
        quality = await self.code.run_verification_suite()
        markers = await self.code.list_outstanding_markers()
        lint = next((s for s in quality.suites if s.name == "lint"), None)
        others = [s for s in quality.suites if s.name != "lint"]
        failing = [s for s in quality.suites if not s.passed]
        return CodebaseSignal(
            verification_passed=all(s.passed for s in others),
            lint_passed=lint.passed if lint else None,
            outstanding_markers=markers,
            details=failing[0].output[-500:] if failing else "",
        )

    async def _cycle(self, report: CycleReport, settings: RunSettings, now: datetime) -> None:
        expired = await self.approvals.expire_overdue(now, timeout_status=settings.approval_timeout_status)
        timed_out = [r.task_id for r in expired if r.decision == ApprovalDecision.TIMED_OUT]
        if settings.approval_timeout_status == TaskStatus.REJECTED:
            report.rejected.extend(timed_out)
        else:
            report.failed.extend(timed_out)

        if not await self._still_active(report, "snapshot"):
            return
        signal = await self.snapshot()

        if not await self._still_active(report, "generate"):
            return
        tracked = await self.store.list_tasks()
        new_tasks = generate_tasks(self.goals_provider(), signal, tracked)
        report.tasks_generated = len(new_tasks)

        for task in new_tasks:
            assessment = assess(task, settings.autonomy_level, settings.risk_thresholds)
            task = apply(task, assessment)
            if assessment.requires_approval:
                await self.approvals.submit(task, assessment, settings.approval_timeout_minutes)
                report.approval_requested.append(task.id)
            else:
                await self.store.save_task(task)

        queue = await self._execution_queue()
        for task in queue[: settings.max_tasks_per_cycle]:
            if not await self._still_active(report, "pipeline"):
                return
            tripped = await self._execute(task, report, settings)
            if tripped or report.cancelled:
                return

    async def _execution_queue(self) -> List[Task]:
        """Approved tasks first (oldest first), then auto tasks by rank."""
        approved = await self.approvals.approved_tasks()
        pending = [
            t for t in await self.store.list_tasks(status=TaskStatus.GENERATED)
            if t.requires_approval is False
        ]
        pending.sort(key=lambda t: t.created_at)
        pending.sort(key=rank_key)
        return approved + pending

    async def _execute(self, task: Task, report: CycleReport, settings: RunSettings) -> bool:
        """Run one task (and its deployment). Returns True if the breaker tripped."""
        task, run = await self.executor.execute(task, settings)
        report.auto_executed.append(task.id)

        if run.result == PipelineResult.CANCELLED:
            report.cancelled = True
            return False

        if run.succeeded:
            report.succeeded.append(task.id)
        else:
            report.failed.append(task.id)

        tripped = await self.breaker.record(
            OutcomeEvent(
                succeeded=run.succeeded,
                source=f"task:{task.id}",
                detail=run.error_message or "",
            ),
            settings,
        )
        if tripped:
            return True

        # Past the commit point: the cycle completes even if paused meanwhile
        if run.succeeded and run.integrated and settings.deployment_enabled:
            try:
                deployment = await self.deployment.deploy(run, settings)
            except DeploymentPreconditionError as e:
                logger.info("deployment_skipped", task_id=task.id, reason=e.message)
                return False
            report.deployment = deployment
            ok = deployment.outcome not in _FAILED_DEPLOYMENTS
            tripped = await self.breaker.record(
                OutcomeEvent(
                    succeeded=ok,
                    source=f"deploy:{deployment.version_tag}",
                    detail=deployment.error_message or "",
                ),
                settings,
            )
        return tripped

    async def next_run_at(self, settings: Optional[RunSettings]) -> Optional[datetime]:
        """Estimate of the next cycle for the status surface."""
        if settings is None:
            return None
        last = await self.store.get_last_run()
        candidate = self.clock()
        if last is not None:
            candidate = max(candidate, last + timedelta(minutes=settings.cycle_minutes))
        window = next_window_start(candidate, settings.working_hours)
        return window or candidate
