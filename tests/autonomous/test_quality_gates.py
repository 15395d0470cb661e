"""Tests for the verification suite runner."""

import sys

import pytest

from yolo.autonomous.process import run_command
from yolo.autonomous.quality_gates import QualityGateRunner

PASS = [sys.executable, "-c", "print('ok')"]
FAIL = [sys.executable, "-c", "import sys; print('1 failed'); sys.exit(1)"]


@pytest.mark.asyncio
async def test_all_suites_pass(tmp_path):
    runner = QualityGateRunner(tmp_path, {"unit": PASS, "build": PASS})

    report = await runner.run(task_id="t1", revision="abc")

    assert [s.name for s in report.suites] == ["build", "unit"]
    assert report.deployment_ready is True
    assert report.task_id == "t1"
    assert report.revision == "abc"
    assert "ok" in report.suites[0].output


@pytest.mark.asyncio
async def test_failing_suite_blocks_deployment(tmp_path):
    runner = QualityGateRunner(tmp_path, {"build": PASS, "unit": FAIL, "integration": PASS})

    report = await runner.run()

    assert report.failed_suites == ["unit"]
    assert report.deployment_ready is False
    assert "1 failed" in report.suites[1].output
    assert len(report.suites) == 3


@pytest.mark.asyncio
async def test_stop_on_failure(tmp_path):
    runner = QualityGateRunner(tmp_path, {"build": FAIL, "unit": PASS})
    report = await runner.run(stop_on_failure=True)
    assert [s.name for s in report.suites] == ["build"]


@pytest.mark.asyncio
async def test_no_suites_is_not_deployment_ready(tmp_path):
    report = await QualityGateRunner(tmp_path, {}).run()
    assert report.suites == []
    assert report.deployment_ready is False


@pytest.mark.asyncio
async def test_missing_command_fails_suite(tmp_path):
    runner = QualityGateRunner(tmp_path, {"lint": ["definitely-not-a-real-linter-xyz"]})

    result = await runner.run_suite("lint")

    assert result.passed is False
    assert result.output.startswith("Command not found")
    assert await runner.run_suite("unit") is None


@pytest.mark.asyncio
async def test_run_command_timeout_kills_child(tmp_path):
    result = await run_command(
        [sys.executable, "-c", "import time; time.sleep(30)"], tmp_path, timeout=0.5
    )
    assert result.timed_out is True
    assert result.return_code is None
    assert not result.ok


@pytest.mark.asyncio
async def test_run_command_keeps_output_tail(tmp_path):
    result = await run_command(
        [sys.executable, "-c", "print('x' * 5000 + 'END')"], tmp_path, timeout=30
    )
    assert result.ok
    assert len(result.output) == 2000
    assert result.output.rstrip().endswith("END")
