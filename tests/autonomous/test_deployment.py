"""Tests for the deployment pipeline and rollback."""

import pytest

from yolo.autonomous.circuit_breaker import CircuitBreaker
from yolo.autonomous.deployment import DeploymentPipeline, version_tag
from yolo.autonomous.exceptions import DeploymentPreconditionError
from yolo.autonomous.models import (
    ControlSignal,
    DeploymentOutcome,
    DeploymentStage,
    Environment,
    PauseReason,
    PipelineResult,
    PipelineRun,
    QualityReport,
    RunState,
)
from yolo.notifications import Channel

from fakes import make_settings

AUTO = make_settings(auto_deploy=True)
MANUAL = make_settings(auto_deploy=False)


@pytest.fixture
def pipeline(store, vcs, deployer, notifier, clock):
    store.apply_signal_sync(ControlSignal.START, settings=AUTO)
    breaker = CircuitBreaker(store, notifier)
    return DeploymentPipeline(store, vcs, deployer, notifier, breaker=breaker, clock=clock)


async def candidate(store, task_id="t1", revision="rev0001", ready=True) -> PipelineRun:
    await store.save_quality_report(
        QualityReport(deployment_ready=ready, task_id=task_id, revision=revision)
    )
    return PipelineRun(
        task_id=task_id,
        result=PipelineResult.SUCCEEDED,
        integrated=True,
        commit_revision=revision,
    )


async def seed_known_good(store, deployer, version="v1"):
    for env in Environment:
        await store.set_known_good(env, version)
        deployer.active[env] = version


def test_version_tag(clock):
    assert version_tag(clock.now) == "v2024.03.05.100000"


class TestPreconditions:

    @pytest.mark.asyncio
    async def test_hold_blocks_deployment(self, pipeline, store, deployer, vcs):
        run = await candidate(store)
        await store.set_deploy_hold(True)

        with pytest.raises(DeploymentPreconditionError):
            await pipeline.deploy(run, AUTO)
        assert deployer.calls == []
        assert vcs.tags == []

    @pytest.mark.asyncio
    async def test_not_integrated(self, pipeline, store):
        run = await candidate(store)
        run.integrated = False
        with pytest.raises(DeploymentPreconditionError):
            await pipeline.deploy(run, AUTO)

    @pytest.mark.asyncio
    async def test_report_not_ready(self, pipeline, store):
        run = await candidate(store, ready=False)
        with pytest.raises(DeploymentPreconditionError):
            await pipeline.deploy(run, AUTO)

    @pytest.mark.asyncio
    async def test_stale_report(self, pipeline, store):
        run = await candidate(store, revision="rev0001")
        run.commit_revision = "rev0002"
        with pytest.raises(DeploymentPreconditionError):
            await pipeline.deploy(run, AUTO)

    @pytest.mark.asyncio
    async def test_report_for_other_task(self, pipeline, store):
        await candidate(store, task_id="other")
        run = PipelineRun(
            task_id="t1", result=PipelineResult.SUCCEEDED, integrated=True, commit_revision="rev0001"
        )
        with pytest.raises(DeploymentPreconditionError):
            await pipeline.deploy(run, AUTO)


@pytest.mark.asyncio
async def test_successful_deployment(pipeline, store, deployer, vcs, notifier, sink):
    await seed_known_good(store, deployer)

    result = await pipeline.deploy(await candidate(store), AUTO)

    assert result.outcome == DeploymentOutcome.SUCCESS
    assert result.previous_versions == {"staging": "v1", "production": "v1"}
    assert vcs.tags == [result.version_tag]
    assert deployer.active[Environment.PRODUCTION] == result.version_tag
    assert await store.get_known_good(Environment.PRODUCTION) == result.version_tag
    assert (await store.last_deployment()).outcome == DeploymentOutcome.SUCCESS
    assert deployer.calls == [
        "build", "package", "deploy:staging", "smoke:staging", "deploy:production", "smoke:production",
    ]


@pytest.mark.asyncio
async def test_failure_before_staging_touches_nothing(pipeline, store, deployer):
    await seed_known_good(store, deployer)
    deployer.fail_at.add("package")

    result = await pipeline.deploy(await candidate(store), AUTO)

    assert result.outcome == DeploymentOutcome.FAILED
    assert result.stage == DeploymentStage.PACKAGING
    assert result.rolled_back == []
    assert not any(c.startswith("rollback") for c in deployer.calls)
    assert deployer.active == {Environment.STAGING: "v1", Environment.PRODUCTION: "v1"}


@pytest.mark.asyncio
async def test_smoke_failure_rolls_back_staging(pipeline, store, deployer, notifier, sink):
    await seed_known_good(store, deployer)
    deployer.smoke_failures.add(Environment.STAGING)

    result = await pipeline.deploy(await candidate(store), AUTO)

    assert result.outcome == DeploymentOutcome.ROLLED_BACK
    assert result.rolled_back == ["staging"]
    assert deployer.active == {Environment.STAGING: "v1", Environment.PRODUCTION: "v1"}
    assert "deploy:production" not in deployer.calls
    assert await store.get_known_good(Environment.STAGING) == "v1"
    await notifier.drain()
    assert any("rolled back" in m for m in sink.on(Channel.CRITICAL))


@pytest.mark.asyncio
async def test_production_failure_rolls_back_both(pipeline, store, deployer):
    await seed_known_good(store, deployer)
    deployer.smoke_failures.add(Environment.PRODUCTION)

    result = await pipeline.deploy(await candidate(store), AUTO)

    assert result.outcome == DeploymentOutcome.ROLLED_BACK
    assert result.rolled_back == ["production", "staging"]
    assert deployer.active == {Environment.STAGING: "v1", Environment.PRODUCTION: "v1"}
    assert await store.get_known_good(Environment.STAGING) == "v1"


@pytest.mark.asyncio
async def test_first_deployment_rollback_clears_known_good(pipeline, store, deployer):
    deployer.smoke_failures.add(Environment.PRODUCTION)

    result = await pipeline.deploy(await candidate(store), AUTO)

    assert result.outcome == DeploymentOutcome.ROLLED_BACK
    assert result.previous_versions == {"staging": None, "production": None}
    assert result.rolled_back == ["production", "staging"]
    assert deployer.active == {Environment.STAGING: None, Environment.PRODUCTION: None}
    assert await store.get_known_good(Environment.STAGING) is None
    assert await store.get_known_good(Environment.PRODUCTION) is None


@pytest.mark.asyncio
async def test_failed_command_output_is_recorded(pipeline, store, deployer, notifier, sink):
    await seed_known_good(store, deployer)
    deployer.fail_at.add("deploy:staging")
    deployer.fail_output["deploy:staging"] = "rsync: write failed: No space left on device\n"

    result = await pipeline.deploy(await candidate(store), AUTO)

    assert result.outcome == DeploymentOutcome.ROLLED_BACK
    assert result.error_message.startswith("staging_deploy: injected deploy:staging failure")
    assert "No space left on device" in result.error_message
    stored = await store.get_deployment_by_tag(result.version_tag)
    assert "No space left on device" in stored.error_message
    await notifier.drain()
    assert all("No space left" not in m for _, m in sink.sent)


@pytest.mark.asyncio
async def test_rollback_failure_trips_breaker(pipeline, store, deployer, notifier, sink):
    await seed_known_good(store, deployer)
    deployer.smoke_failures.add(Environment.STAGING)
    deployer.fail_at.add("rollback:staging")

    result = await pipeline.deploy(await candidate(store), AUTO)

    assert result.outcome == DeploymentOutcome.FAILED
    assert "rollback failed" in result.error_message
    assert await store.get_run_state() == (RunState.PAUSED, PauseReason.CIRCUIT_BREAKER)
    await notifier.drain()
    assert any("ROLLBACK FAILED" in m for m in sink.on(Channel.CRITICAL))


class TestPromotion:

    @pytest.mark.asyncio
    async def test_manual_promotion(self, pipeline, store, deployer, notifier, sink):
        await seed_known_good(store, deployer)

        staged = await pipeline.deploy(await candidate(store), MANUAL)

        assert staged.outcome == DeploymentOutcome.PENDING_PROMOTION
        assert deployer.active[Environment.STAGING] == staged.version_tag
        assert deployer.active[Environment.PRODUCTION] == "v1"
        await notifier.drain()
        assert any(f"yolo promote {staged.version_tag}" in m for m in sink.on(Channel.APPROVAL))

        promoted = await pipeline.promote(staged.version_tag)

        assert promoted.outcome == DeploymentOutcome.SUCCESS
        assert deployer.active[Environment.PRODUCTION] == staged.version_tag

    @pytest.mark.asyncio
    async def test_failed_promotion_rolls_back_production_only(self, pipeline, store, deployer):
        await seed_known_good(store, deployer)
        staged = await pipeline.deploy(await candidate(store), MANUAL)
        deployer.smoke_failures.add(Environment.PRODUCTION)

        result = await pipeline.promote(staged.version_tag)

        assert result.outcome == DeploymentOutcome.ROLLED_BACK
        assert result.rolled_back == ["production"]
        assert deployer.active[Environment.PRODUCTION] == "v1"
        assert deployer.active[Environment.STAGING] == staged.version_tag

    @pytest.mark.asyncio
    async def test_promote_unknown_version(self, pipeline):
        with pytest.raises(DeploymentPreconditionError):
            await pipeline.promote("v0.0.0")

    @pytest.mark.asyncio
    async def test_promote_respects_hold(self, pipeline, store, deployer):
        staged = await pipeline.deploy(await candidate(store), MANUAL)
        await store.set_deploy_hold(True)
        with pytest.raises(DeploymentPreconditionError):
            await pipeline.promote(staged.version_tag)
