"""Central coordinator for YOLO mode.

Wires the state store, collaborators and loop components together and
exposes the human control surface: Start, Pause, Resume, Stop, status,
approve/reject, promote and the deployment hold.
"""

from datetime import datetime
from typing import Callable, List, Optional

import structlog

from ..config import Config
from ..exceptions import ConfigurationError
from ..notifications import Channel, LogNotifier, NotificationDispatcher, WebhookNotifier
from .approval import ApprovalWorkflow
from .circuit_breaker import CircuitBreaker
from .collaborators import (
    CodeCollaborator,
    DeploymentCollaborator,
    GitRepository,
    ShellCodebase,
    ShellDeployer,
    VCSCollaborator,
)
from .database import StateStore
from .deployment import DeploymentPipeline
from .loop import ControlLoop
from .models import (
    ApprovalRequest,
    ControlSignal,
    DeploymentOutcome,
    DeploymentRun,
    OutcomeEvent,
    PauseReason,
    RunSettings,
    RunState,
    StatusSnapshot,
    Task,
    TaskStatus,
    next_run_state,
)
from .pipeline import PipelineExecutor
from .quality_gates import QualityGateRunner

logger = structlog.get_logger("yolo.loop")


def build_notifier(config: Config) -> NotificationDispatcher:
    sinks = [LogNotifier()]
    if config.webhook_url:
        sinks.append(WebhookNotifier(config.webhook_url, timeout=config.webhook_timeout))
    return NotificationDispatcher(sinks)


class AutonomousManager:
    """Central coordinator for all YOLO mode components."""

    def __init__(
        self,
        config: Config,
        store: Optional[StateStore] = None,
        vcs: Optional[VCSCollaborator] = None,
        code: Optional[CodeCollaborator] = None,
        deployer: Optional[DeploymentCollaborator] = None,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize the manager.

        Collaborators default to the subprocess-backed implementations
        built from ``config``; tests pass fakes instead.
        """
        self.config = config
        self.clock = clock
        self.store = store or StateStore(config.state_db_path)
        self.notifier = notifier or build_notifier(config)

        self.quality_runner = QualityGateRunner(
            config.project_path, config.verification_commands, timeout=config.command_timeout
        )
        self.vcs = vcs or GitRepository(config.project_path)
        self.code = code or ShellCodebase(
            config.project_path,
            self.quality_runner,
            task_command=config.task_command,
            format_commands=config.format_commands,
            marker_paths=config.marker_paths,
            timeout=config.command_timeout,
        )
        self.deployer = deployer or ShellDeployer(
            config.project_path, config.deployment_commands, timeout=config.deploy_timeout
        )

        self.breaker = CircuitBreaker(self.store, self.notifier)
        self.approvals = ApprovalWorkflow(self.store, self.notifier, clock=clock)
        self.executor = PipelineExecutor(self.store, self.vcs, self.code, self.notifier, clock=clock)
        self.deployment = DeploymentPipeline(
            self.store, self.vcs, self.deployer, self.notifier, self.breaker, clock=clock
        )
        self.loop = ControlLoop(
            store=self.store,
            breaker=self.breaker,
            approvals=self.approvals,
            executor=self.executor,
            deployment=self.deployment,
            code=self.code,
            goals_provider=lambda: config.goals,
            notifier=self.notifier,
            clock=clock,
        )

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        await self.loop.stop()
        await self.notifier.close()
        await self.store.close()

    # ========== Run control ==========

    async def start(self) -> RunSettings:
        """Start a run with a fresh settings snapshot.

        Raises:
            ConfigurationError: With every problem found; the run stays
                in its current state.
            InvalidTransitionError: If a run is already Active or Paused.
        """
        state, _ = await self.store.get_run_state()
        next_run_state(state, ControlSignal.START)

        problems = self.config.validate()
        if problems:
            raise ConfigurationError(
                f"Refusing to start: {len(problems)} configuration problem(s)",
                problems=problems,
            )
        settings = self.config.run_settings()

        async with self.loop.work_lock:
            if await self.executor.recover_stale():
                logger.info("recovered_unclean_stop")

        await self.store.apply_signal(ControlSignal.START, settings=settings)
        self.notifier.notify(
            Channel.INFO,
            f"YOLO mode started ({settings.autonomy_level.value}, every {settings.cycle_minutes:g} min).",
        )
        self.loop.wake()
        return settings

    async def pause(self) -> RunState:
        state = await self.store.apply_signal(ControlSignal.PAUSE, reason=PauseReason.HUMAN_OVERRIDE)
        self.notifier.notify(Channel.INFO, "YOLO mode paused by operator.")
        return state

    async def resume(self) -> RunState:
        """Resume a paused run.

        The breaker's error window is cleared only when the breaker
        caused the pause; after an operator pause the window carries on.
        """
        _, reason = await self.store.get_run_state()
        state = await self.store.apply_signal(ControlSignal.RESUME)
        if reason == PauseReason.CIRCUIT_BREAKER:
            await self.breaker.reset()
        self.notifier.notify(Channel.INFO, "YOLO mode resumed.")
        self.loop.wake()
        return state

    async def stop(self) -> RunState:
        state = await self.store.apply_signal(ControlSignal.STOP)
        self.notifier.notify(Channel.INFO, "YOLO mode stopped.")
        return state

    # ========== Status ==========

    async def status(self) -> StatusSnapshot:
        """Read-only snapshot for humans."""
        state, reason = await self.store.get_run_state()
        settings = await self.store.get_run_settings()
        window = await self.breaker.window(settings or self.config.run_settings())
        rejected = await self.store.list_tasks(
            status=TaskStatus.REJECTED, include_archived=True, limit=5
        )
        return StatusSnapshot(
            run_state=state,
            pause_reason=reason,
            autonomy_level=settings.autonomy_level if settings else None,
            started_at=await self.store.get_started_at(),
            last_run_at=await self.store.get_last_run(),
            next_run_at=await self.loop.next_run_at(settings) if state == RunState.ACTIVE else None,
            pending_approvals=await self.store.count_pending_approvals(),
            recent_error_rate=window.failure_ratio,
            outcomes_in_window=len(window.outcomes),
            active_tasks=len(await self.store.list_tasks()),
            deploy_hold=await self.store.get_deploy_hold(),
            last_deployment=await self.store.last_deployment(),
            last_quality_report=await self.store.get_quality_report(),
            recently_rejected=rejected,
        )

    async def list_tasks(
        self, status: Optional[TaskStatus] = None, include_archived: bool = False
    ) -> List[Task]:
        return await self.store.list_tasks(status=status, include_archived=include_archived)

    # ========== Approvals ==========

    async def approve(self, task_id: str, decided_by: Optional[str] = None) -> Optional[ApprovalRequest]:
        return await self._decide(task_id, True, decided_by)

    async def reject(self, task_id: str, decided_by: Optional[str] = None) -> Optional[ApprovalRequest]:
        return await self._decide(task_id, False, decided_by)

    async def _decide(
        self, task_id: str, approved: bool, decided_by: Optional[str]
    ) -> Optional[ApprovalRequest]:
        # Overdue requests expire with the outcome the run was started with
        settings = await self.store.get_run_settings() or self.config.run_settings()
        return await self.approvals.decide(
            task_id,
            approved,
            decided_by=decided_by,
            timeout_status=settings.approval_timeout_status,
        )

    # ========== Deployment ==========

    async def promote(self, version_tag: str) -> DeploymentRun:
        """Deploy a PENDING_PROMOTION version to production."""
        settings = await self.store.get_run_settings() or self.config.run_settings()
        async with self.loop.work_lock:
            run = await self.deployment.promote(version_tag)
        await self.breaker.record(
            OutcomeEvent(
                succeeded=run.outcome == DeploymentOutcome.SUCCESS,
                source=f"deploy:{version_tag}",
                detail=run.error_message or "",
            ),
            settings,
        )
        return run

    async def hold_deployments(self) -> None:
        await self.store.set_deploy_hold(True)
        logger.info("deploy_hold_set")
        self.notifier.notify(Channel.INFO, "Deployments on hold.")

    async def release_deployments(self) -> None:
        await self.store.set_deploy_hold(False)
        logger.info("deploy_hold_released")
        self.notifier.notify(Channel.INFO, "Deployment hold released.")
