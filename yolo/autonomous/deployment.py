"""Deployment pipeline with rollback on failure.

Building -> Packaging -> StagingDeploy -> SmokeTest -> ProductionDeploy
-> Verify.

A failure before StagingDeploy ends FAILED and touches nothing. A
failure at or after StagingDeploy rolls every environment this run
touched back to its last known-good version and ends ROLLED_BACK. If
the rollback itself fails the breaker trips and the run pauses.
"""

from datetime import datetime
from typing import Callable, List, Optional

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
from .circuit_breaker import CircuitBreaker
from .collaborators import DeploymentCollaborator, VCSCollaborator
from .database import StateStore
from .exceptions import DeploymentError, DeploymentPreconditionError, RollbackError
from .models import (
    DeploymentOutcome,
    DeploymentRun,
    DeploymentStage,
    Environment,
    PipelineRun,
    RunSettings,
)

logger = structlog.get_logger("yolo.deploy")


def version_tag(now: datetime) -> str:
    return f"v{now:%Y.%m.%d.%H%M%S}"


class DeploymentPipeline:
    """Deploys an integrated, verified change to staging then production."""

    def __init__(
        self,
        store: StateStore,
        vcs: VCSCollaborator,
        deployer: DeploymentCollaborator,
        notifier: Optional[NotificationDispatcher] = None,
        breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.vcs = vcs
        self.deployer = deployer
        self.notifier = notifier
        self.breaker = breaker
        self.clock = clock

    async def check_preconditions(self, pipeline_run: PipelineRun) -> None:
        """Raise DeploymentPreconditionError unless the candidate may ship."""
        if not pipeline_run.succeeded or not pipeline_run.integrated:
            raise DeploymentPreconditionError(
                "Change was not integrated into the main branch", task_id=pipeline_run.task_id
            )
        report = await self.store.get_quality_report()
        if report is None or not report.deployment_ready:
            raise DeploymentPreconditionError(
                "Latest quality report is not deployment-ready", task_id=pipeline_run.task_id
            )
        if report.task_id != pipeline_run.task_id or (
            pipeline_run.commit_revision and report.revision != pipeline_run.commit_revision
        ):
            raise DeploymentPreconditionError(
                "Quality report does not cover the integrated revision",
                task_id=pipeline_run.task_id,
            )
        if await self.store.get_deploy_hold():
            raise DeploymentPreconditionError("Deployment is on hold", task_id=pipeline_run.task_id)

    async def deploy(self, pipeline_run: PipelineRun, settings: RunSettings) -> DeploymentRun:
        """Deploy the change produced by ``pipeline_run``.

        Raises:
            DeploymentPreconditionError: If the candidate may not ship.
                Nothing is tagged or deployed in that case.
        """
        await self.check_preconditions(pipeline_run)

        tag = version_tag(self.clock())
        run = DeploymentRun(
            version_tag=tag,
            task_id=pipeline_run.task_id,
            started_at=self.clock(),
            previous_versions={
                env.value: await self.store.get_known_good(env) for env in Environment
            },
        )
        run = await self.store.save_deployment(run)
        logger.info("deployment_started", version=tag, task_id=run.task_id)

        touched: List[Environment] = []
        try:
            run.stage = DeploymentStage.BUILDING
            await self.vcs.tag(tag, f"yolo deployment {tag} (task {pipeline_run.task_id})")
            artifact = await self.deployer.build_artifact()

            run.stage = DeploymentStage.PACKAGING
            run.package = await self.deployer.package(artifact)

            run.stage = DeploymentStage.STAGING_DEPLOY
            run.environment = Environment.STAGING
            touched.append(Environment.STAGING)
            await self.deployer.deploy(Environment.STAGING, run.package, tag)

            run.stage = DeploymentStage.SMOKE_TEST
            if not await self.deployer.run_smoke_tests(Environment.STAGING):
                raise DeploymentError(
                    "Smoke tests failed on staging", stage=run.stage.value, version_tag=tag
                )
            await self.store.set_known_good(Environment.STAGING, tag)

            if not settings.auto_deploy:
                run.outcome = DeploymentOutcome.PENDING_PROMOTION
                run.finished_at = self.clock()
                run = await self.store.save_deployment(run)
                logger.info("deployment_pending_promotion", version=tag)
                self._notify(
                    Channel.APPROVAL,
                    f"Version {tag} passed staging. Run `yolo promote {tag}` to deploy to production.",
                )
                return run

            await self._production(run, touched)
        except (YoloError, OSError) as e:
            return await self._fail(run, e, touched)

        return await self._succeed(run)

    async def promote(self, tag: str) -> DeploymentRun:
        """Continue a PENDING_PROMOTION deployment into production.

        Raises:
            DeploymentPreconditionError: If the version is not awaiting
                promotion or deployment is on hold.
        """
        run = await self.store.get_deployment_by_tag(tag)
        if run is None or run.outcome != DeploymentOutcome.PENDING_PROMOTION:
            raise DeploymentPreconditionError(
                f"Version {tag} is not awaiting promotion", version_tag=tag
            )
        if await self.store.get_deploy_hold():
            raise DeploymentPreconditionError("Deployment is on hold", version_tag=tag)

        run = run.model_copy(
            update={
                "outcome": None,
                "previous_versions": {
                    **run.previous_versions,
                    Environment.PRODUCTION.value: await self.store.get_known_good(
                        Environment.PRODUCTION
                    ),
                },
            }
        )
        logger.info("deployment_promoted", version=tag)

        touched: List[Environment] = []
        try:
            await self._production(run, touched)
        except (YoloError, OSError) as e:
            return await self._fail(run, e, touched)
        return await self._succeed(run)

    async def _production(self, run: DeploymentRun, touched: List[Environment]) -> None:
        run.stage = DeploymentStage.PRODUCTION_DEPLOY
        run.environment = Environment.PRODUCTION
        touched.append(Environment.PRODUCTION)
        await self.deployer.deploy(Environment.PRODUCTION, run.package or "", run.version_tag)

        run.stage = DeploymentStage.VERIFY
        if not await self.deployer.run_smoke_tests(Environment.PRODUCTION):
            raise DeploymentError(
                "Production verification failed",
                stage=run.stage.value,
                version_tag=run.version_tag,
            )
        await self.store.set_known_good(Environment.PRODUCTION, run.version_tag)

    async def _succeed(self, run: DeploymentRun) -> DeploymentRun:
        run.outcome = DeploymentOutcome.SUCCESS
        run.finished_at = self.clock()
        run = await self.store.save_deployment(run)
        logger.info("deployment_succeeded", version=run.version_tag)
        self._notify(Channel.INFO, f"Deployed {run.version_tag} to production.")
        return run

    async def _fail(
        self, run: DeploymentRun, error: Exception, touched: List[Environment]
    ) -> DeploymentRun:
        message = error_message(error)
        category = error_category(error)
        # Notifications carry the short message; the output tail stays in the audit trail
        run.error_message = f"{run.stage.value}: {error_detail(error)}"
        run.finished_at = self.clock()
        log = logger.warning if category == ErrorCategory.TRANSIENT and not touched else logger.error
        log(
            "deployment_failed",
            version=run.version_tag,
            stage=run.stage.value,
            error=message,
            output=error_output(error),
            category=category.value,
            exc_type=type(error).__name__,
        )

        if not touched:
            run.outcome = DeploymentOutcome.FAILED
            run = await self.store.save_deployment(run)
            self._notify(
                Channel.INFO, f"Deployment {run.version_tag} failed at {run.stage.value}: {message}"
            )
            return run

        try:
            await self._rollback(run, touched)
        except RollbackError as rb_err:
            run.outcome = DeploymentOutcome.FAILED
            run.error_message = f"{run.error_message}; rollback failed: {rb_err.message}"
            run = await self.store.save_deployment(run)
            logger.critical(
                "rollback_failed",
                version=run.version_tag,
                error=rb_err.message,
                output=error_output(rb_err),
            )
            self._notify(
                Channel.CRITICAL,
                f"ROLLBACK FAILED for {run.version_tag}: {rb_err.message}. Manual intervention required.",
            )
            if self.breaker:
                await self.breaker.trip(f"rollback of {run.version_tag} failed")
            return run

        run.outcome = DeploymentOutcome.ROLLED_BACK
        run = await self.store.save_deployment(run)
        self._notify(
            Channel.CRITICAL,
            f"Deployment {run.version_tag} failed at {run.stage.value} and was rolled back "
            f"({', '.join(run.rolled_back)}): {message}",
        )
        return run

    async def _rollback(self, run: DeploymentRun, touched: List[Environment]) -> None:
        for env in reversed(touched):
            previous = run.previous_versions.get(env.value)
            logger.warning("rolling_back", env=env.value, to_version=previous)
            try:
                await self.deployer.rollback(env, previous)
            except (YoloError, OSError) as e:
                raise RollbackError(
                    f"{env.value} rollback to {previous or 'nothing'} failed: {e}",
                    stage=run.stage.value,
                    version_tag=run.version_tag,
                    output=error_output(e),
                ) from e
            if previous:
                await self.store.set_known_good(env, previous)
            else:
                # First deployment: nothing this run shipped is known-good
                await self.store.clear_known_good(env)
            run.rolled_back.append(env.value)

    def _notify(self, channel: Channel, message: str) -> None:
        if self.notifier:
            self.notifier.notify(channel, message)
