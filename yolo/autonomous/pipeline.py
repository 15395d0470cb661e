"""Per-task development pipeline.

Branching -> Modifying -> Testing -> Committing -> Integrating.

Everything before the commit is undoable: on failure or cancellation
the pipeline discards changes, deletes its branch, checks out the
original branch and restores the stash, so the working copy looks
exactly as it did before the attempt. The branch being mutated is
persisted as an in-progress marker; if cleanup itself fails, the next
Start uses the marker to finish it (``recover_stale``).
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

import structlog

from ..exceptions import (
    ErrorCategory,
    YoloError,
    error_category,
    error_detail,
    error_message,
    error_output,
)
from ..notifications import Channel, NotificationDispatcher
from .collaborators import CodeCollaborator, VCSCollaborator
from .database import StateStore
from .exceptions import (
    GitOperationError,
    PipelineCancelledError,
    VerificationFailedError,
)
from .models import (
    AutonomyLevel,
    PipelineResult,
    PipelineRun,
    PipelineStage,
    RunSettings,
    RunState,
    Task,
    TaskStatus,
)

logger = structlog.get_logger("yolo.pipeline")

_SUBJECT_MAX = 72

T = TypeVar("T")


def commit_message(task: Task) -> str:
    """``yolo: <description>`` subject plus a ``Task-Id`` trailer."""
    subject = task.description.splitlines()[0].strip() if task.description else task.id
    subject = f"yolo: {subject}"
    if len(subject) > _SUBJECT_MAX:
        subject = subject[: _SUBJECT_MAX - 3] + "..."
    return f"{subject}\n\nTask-Id: {task.id}"


def branch_name(prefix: str, task: Task, now: datetime) -> str:
    return f"{prefix}{task.id[:12]}-{now:%Y%m%d%H%M%S}"


class PipelineExecutor:
    """Runs one task through branch, change, verification, commit and merge."""

    def __init__(
        self,
        store: StateStore,
        vcs: VCSCollaborator,
        code: CodeCollaborator,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
        state_poll: float = 2.0,
    ):
        self.store = store
        self.vcs = vcs
        self.code = code
        self.notifier = notifier
        self.clock = clock
        self.state_poll = state_poll

    async def execute(self, task: Task, settings: RunSettings) -> Tuple[Task, PipelineRun]:
        """Run ``task`` through the pipeline.

        Returns the task in its final status and the PipelineRun record.
        Tool failures never escape; ``asyncio.CancelledError`` is
        re-raised after cleanup.
        """
        run = PipelineRun(task_id=task.id, started_at=self.clock())
        task = await self._set_status(task, TaskStatus.EXECUTING)
        stashed = False
        branch_created = False

        logger.info("pipeline_started", task_id=task.id, kind=task.kind.value)

        try:
            # Branching
            run.original_branch = await self.vcs.current_branch()
            run.branch = branch_name(settings.branch_prefix, task, self.clock())
            stashed = await self.vcs.stash_push(f"yolo: before task {task.id}")
            await self.vcs.create_branch(run.branch)
            branch_created = True
            await self.store.set_in_progress(
                {
                    "task_id": task.id,
                    "branch": run.branch,
                    "original_branch": run.original_branch,
                    "stashed": stashed,
                    "committed": False,
                }
            )

            await self._checkpoint(run, task, PipelineStage.MODIFYING)
            await self._while_active(self.code.apply_task(task), run, task)

            await self._checkpoint(run, task, PipelineStage.TESTING)
            report = await self._while_active(
                self.code.run_verification_suite(task_id=task.id), run, task
            )
            run.quality_report = report
            if not report.passed:
                raise VerificationFailedError(
                    f"Verification failed: {report.summary()}",
                    task_id=task.id,
                    stage=PipelineStage.TESTING.value,
                    output="\n".join(
                        f"[{s.name}] {s.output.strip()}" for s in report.suites if not s.passed
                    ),
                )

            await self._checkpoint(run, task, PipelineStage.COMMITTING)
            revision = await self.vcs.commit(commit_message(task))

        except PipelineCancelledError as e:
            await self._discard(run, stashed, branch_created)
            return await self._finish(run, task, PipelineResult.CANCELLED, TaskStatus.FAILED, e.message)
        except asyncio.CancelledError:
            await self._discard(run, stashed, branch_created)
            await self._finish(run, task, PipelineResult.CANCELLED, TaskStatus.FAILED, "cancelled")
            raise
        except (YoloError, OSError) as e:
            await self._discard(run, stashed, branch_created)
            return await self._fail(run, task, e)
        except Exception as e:
            # Collaborators are opaque: whatever they raise fails this task only
            await self._discard(run, stashed, branch_created)
            return await self._fail(run, task, e, unexpected=True)

        if revision is None:
            # Nothing changed: drop the empty branch
            logger.info("pipeline_no_changes", task_id=task.id)
            await self._discard(run, stashed, branch_created)
            return await self._finish(run, task, PipelineResult.SUCCEEDED, TaskStatus.SUCCEEDED, None)

        # Commit point: from here on the cycle completes even if paused
        run.committed = True
        run.commit_revision = revision
        run.quality_report = run.quality_report.model_copy(update={"revision": revision})
        await self.store.save_quality_report(run.quality_report)
        await self.store.set_in_progress(
            {
                "task_id": task.id,
                "branch": run.branch,
                "original_branch": run.original_branch,
                "stashed": stashed,
                "committed": True,
            }
        )
        logger.info("pipeline_committed", task_id=task.id, revision=revision[:12])

        run.stage = PipelineStage.INTEGRATING
        status = TaskStatus.SUCCEEDED
        error = None
        if settings.autonomy_level == AutonomyLevel.ROUTINE and settings.auto_merge:
            try:
                run.commit_revision = await self.vcs.merge_to_main(
                    run.branch, settings.main_branch, f"Merge {run.branch}: {task.description[:60]}"
                )
                run.integrated = True
                run.quality_report = run.quality_report.model_copy(
                    update={"revision": run.commit_revision}
                )
                await self.store.save_quality_report(run.quality_report)
                await self.vcs.delete_branch(run.branch)
                logger.info("pipeline_merged", task_id=task.id, branch=run.branch)
            except GitOperationError as e:
                status = TaskStatus.FAILED
                error = f"Merge failed: {error_detail(e)}"
                run.review_branch = run.branch
                logger.warning(
                    "pipeline_merge_failed",
                    task_id=task.id,
                    branch=run.branch,
                    error=e.message,
                    output=error_output(e),
                )
                self._notify(
                    Channel.REVIEW,
                    f"Merge of {run.branch} failed for task {task.id}; branch kept for review.",
                )
        else:
            run.review_branch = run.branch
            self._notify(
                Channel.REVIEW,
                f"Task {task.id} is ready for review on branch {run.branch}: {task.description}",
            )

        restored = await self._restore(run, stashed)
        if restored:
            await self.store.set_in_progress(None)
        result = PipelineResult.SUCCEEDED if status == TaskStatus.SUCCEEDED else PipelineResult.FAILED
        return await self._finish(run, task, result, status, error)

    async def recover_stale(self) -> bool:
        """Clean up after a pipeline that never finished. True if one was found."""
        marker = await self.store.get_in_progress()
        if not marker:
            return False

        branch = marker.get("branch")
        original = marker.get("original_branch")
        logger.warning("stale_pipeline_found", task_id=marker.get("task_id"), branch=branch)

        run = PipelineRun(
            task_id=marker.get("task_id") or "unknown",
            branch=branch,
            original_branch=original,
        )
        try:
            current = await self.vcs.current_branch()
        except (YoloError, OSError) as e:
            logger.error("stale_pipeline_recovery_failed", branch=branch, error=str(e))
            return True

        if current != branch:
            # Cleanup got as far as leaving the branch; only the branch may remain
            if branch and not marker.get("committed"):
                try:
                    await self.vcs.delete_branch(branch)
                except (YoloError, OSError) as e:
                    logger.info("stale_branch_not_deleted", branch=branch, error=str(e))
            ok = True
        elif marker.get("committed"):
            # Committed work is kept for review
            ok = await self._restore(run, bool(marker.get("stashed")))
        else:
            ok = await self._discard(run, bool(marker.get("stashed")), branch_created=bool(branch))

        task_id = marker.get("task_id")
        if task_id:
            task = await self.store.get_task(task_id)
            if task is not None and task.status == TaskStatus.EXECUTING:
                await self._set_status(task, TaskStatus.FAILED, "interrupted by unclean stop")
        if ok:
            await self.store.set_in_progress(None)
        logger.info("stale_pipeline_recovered", branch=branch, clean=ok)
        return True

    async def _checkpoint(self, run: PipelineRun, task: Task, stage: PipelineStage) -> None:
        run.stage = stage
        state, _ = await self.store.get_run_state()
        if state != RunState.ACTIVE:
            raise PipelineCancelledError(
                f"Run state is {state.value}; discarding before {stage.value}",
                task_id=task.id,
                stage=stage.value,
            )

    async def _while_active(self, work: Awaitable[T], run: PipelineRun, task: Task) -> T:
        """Await ``work``, cancelling it as soon as the run leaves ACTIVE.

        The run state is polled from the store, so a Stop or Pause from
        another process also interrupts a long command; cancelling the
        await kills its child process.
        """
        job = asyncio.ensure_future(work)
        try:
            while True:
                done, _ = await asyncio.wait({job}, timeout=self.state_poll)
                if done:
                    return job.result()
                state, _ = await self.store.get_run_state()
                if state != RunState.ACTIVE:
                    job.cancel()
                    await asyncio.wait({job})
                    if not job.cancelled() and job.exception() is not None:
                        logger.info(
                            "interrupted_work_raised", task_id=task.id, error=str(job.exception())
                        )
                    logger.info(
                        "pipeline_interrupted",
                        task_id=task.id,
                        stage=run.stage.value,
                        run_state=state.value,
                    )
                    raise PipelineCancelledError(
                        f"Run state is {state.value}; interrupted during {run.stage.value}",
                        task_id=task.id,
                        stage=run.stage.value,
                    )
        finally:
            if not job.done():
                # Outer cancellation: let the child be killed before cleanup starts
                job.cancel()
                await asyncio.wait({job})

    async def _fail(
        self, run: PipelineRun, task: Task, error: BaseException, unexpected: bool = False
    ) -> Tuple[Task, PipelineRun]:
        category = error_category(error)
        fields = dict(
            task_id=task.id,
            stage=run.stage.value,
            error=error_message(error),
            output=error_output(error),
            category=category.value,
            exc_type=type(error).__name__,
        )
        if unexpected:
            logger.error("pipeline_stage_failed", exc_info=True, **fields)
        elif category == ErrorCategory.TRANSIENT:
            logger.warning("pipeline_stage_failed", **fields)
        else:
            logger.error("pipeline_stage_failed", **fields)
        return await self._finish(
            run, task, PipelineResult.FAILED, TaskStatus.FAILED, error_detail(error)
        )

    async def _discard(self, run: PipelineRun, stashed: bool, branch_created: bool) -> bool:
        """Put the working copy back the way it was. Best effort, never raises."""
        ok = True
        steps = []
        # Only our own branch is ever reset; the user's work is in the stash
        if branch_created and run.branch:
            steps.append(("discard_changes", self.vcs.discard_changes, ()))
            if run.original_branch:
                steps.append(("checkout", self.vcs.checkout, (run.original_branch,)))
            steps.append(("delete_branch", self.vcs.delete_branch, (run.branch,)))
        if stashed:
            steps.append(("stash_pop", self.vcs.stash_pop, ()))

        for name, step, args in steps:
            try:
                await step(*args)
            except Exception as e:
                ok = False
                logger.error(
                    "pipeline_cleanup_failed",
                    step=name,
                    branch=run.branch,
                    error=str(e),
                    exc_type=type(e).__name__,
                )
        if ok:
            try:
                await self.store.set_in_progress(None)
            except Exception as e:
                # The marker stays; the next Start finds the branch already gone
                logger.error("in_progress_marker_not_cleared", branch=run.branch, error=str(e))
                ok = False
        return ok

    async def _restore(self, run: PipelineRun, stashed: bool) -> bool:
        ok = True
        try:
            if run.original_branch:
                await self.vcs.checkout(run.original_branch)
            if stashed:
                await self.vcs.stash_pop()
        except (YoloError, OSError) as e:
            ok = False
            logger.error("pipeline_restore_failed", branch=run.original_branch, error=str(e))
        return ok

    async def _finish(
        self,
        run: PipelineRun,
        task: Task,
        result: PipelineResult,
        status: TaskStatus,
        error: Optional[str],
    ) -> Tuple[Task, PipelineRun]:
        run.result = result
        run.finished_at = self.clock()
        run.error_message = error
        task = await self._set_status(task, status, error)
        logger.info(
            "pipeline_finished",
            task_id=task.id,
            result=result.value,
            stage=run.stage.value,
            integrated=run.integrated,
            error=error,
        )
        return task, run

    async def _set_status(self, task: Task, status: TaskStatus, error: Optional[str] = None) -> Task:
        task = task.model_copy(
            update={"status": status, "error_message": error, "updated_at": self.clock()}
        )
        await self.store.save_task(task)
        return task

    def _notify(self, channel: Channel, message: str) -> None:
        if self.notifier:
            self.notifier.notify(channel, message)
