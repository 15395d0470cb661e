"""Verification suite runner.

Runs the configured build, lint, unit and integration commands in that
order and folds their results into a ``QualityReport``. A suite with no
configured command is skipped. The report is deployment-ready only when
at least one suite ran and every suite that ran passed.
"""

from pathlib import Path
from typing import Dict, List, Optional

import structlog

from .models import QualityReport, SuiteResult
from .process import run_command

logger = structlog.get_logger("yolo.pipeline")

SUITE_ORDER = ("build", "lint", "unit", "integration")


class QualityGateRunner:
    """Runs verification suites (build, lint, unit, integration) on a project."""

    def __init__(
        self,
        project_path: Path,
        commands: Dict[str, List[str]],
        timeout: int = 600,  # 10 minutes per suite
    ):
        self.project_path = project_path
        self.commands = commands
        self.timeout = timeout

    @property
    def configured_suites(self) -> List[str]:
        return [name for name in SUITE_ORDER if self.commands.get(name)]

    async def run(
        self,
        task_id: Optional[str] = None,
        revision: Optional[str] = None,
        stop_on_failure: bool = False,
    ) -> QualityReport:
        """Run all configured suites."""
        suites: List[SuiteResult] = []

        for name in self.configured_suites:
            result = await self._run_suite(name, self.commands[name])
            suites.append(result)
            if stop_on_failure and not result.passed:
                break

        report = QualityReport(
            suites=suites,
            deployment_ready=bool(suites) and all(s.passed for s in suites),
            task_id=task_id,
            revision=revision,
        )
        logger.info(
            "quality_report",
            task_id=task_id,
            suites=len(suites),
            failed=report.failed_suites,
            deployment_ready=report.deployment_ready,
        )
        return report

    async def run_suite(self, name: str) -> Optional[SuiteResult]:
        """Run a single named suite, or None if it is not configured."""
        command = self.commands.get(name)
        if not command:
            return None
        return await self._run_suite(name, command)

    async def _run_suite(self, name: str, command: List[str]) -> SuiteResult:
        logger.info("running_suite", suite=name, command=command[0], path=str(self.project_path))

        try:
            result = await run_command(command, self.project_path, self.timeout)
        except FileNotFoundError as e:
            logger.warning("suite_command_not_found", suite=name, error=str(e))
            return SuiteResult(
                name=name, passed=False, command=command, output=f"Command not found: {command[0]}"
            )
        except (OSError, RuntimeError) as e:
            logger.error("suite_error", suite=name, error=str(e), exc_type=type(e).__name__)
            return SuiteResult(
                name=name,
                passed=False,
                command=command,
                output=f"Suite failed to run [{type(e).__name__}]: {e}",
            )

        logger.info(
            "suite_completed",
            suite=name,
            passed=result.ok,
            return_code=result.return_code,
            duration=round(result.duration_seconds, 2),
        )
        return SuiteResult(
            name=name,
            passed=result.ok,
            command=command,
            output=result.output,
            duration_seconds=result.duration_seconds,
        )
