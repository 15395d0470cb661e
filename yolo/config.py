"""Configuration management for YOLO mode.

Loads YAML settings (settings.yaml, goals.yaml) and environment
variables (.env) into a typed Config object. Property getters provide
safe access with defaults for every subsystem: autonomy, schedule,
risk thresholds, approval, circuit breaker, pipeline, deployment,
notifications and logging.

Key classes:
    Config: Central configuration manager.

Key functions:
    get_config: Singleton accessor for the global Config instance.
"""

import os
import shlex
from datetime import time
from pathlib import Path
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from .autonomous.models import (
    AutonomyLevel,
    ProjectGoal,
    RiskThresholds,
    RunSettings,
    TaskStatus,
    WorkingHours,
)

logger = structlog.get_logger("yolo.loop")

_WEEKDAY_NAMES = {
    "mon": 0, "tue": 1, "wed": 2, "thu": 3, "fri": 4, "sat": 5, "sun": 6,
}

VERIFICATION_SUITES = ("build", "lint", "unit", "integration")
DEPLOYMENT_STAGES = ("build", "package", "deploy", "smoke_test", "rollback")


def _as_command(value) -> List[str]:
    """Commands may be written as a list or as one string (split like a shell would)."""
    if not value:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return [str(v) for v in value]


def _parse_time(value) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, int):
        # YAML reads 09:00 unquoted as sexagesimal minutes
        return time(value // 60, value % 60)
    return time.fromisoformat(str(value))


def _parse_weekday(value) -> int:
    if isinstance(value, int):
        if not 0 <= value <= 6:
            raise ValueError(f"weekday {value} out of range 0-6")
        return value
    key = str(value).strip().lower()[:3]
    if key not in _WEEKDAY_NAMES:
        raise ValueError(f"unknown weekday {value!r}")
    return _WEEKDAY_NAMES[key]


class Config:
    """Central configuration manager for YOLO mode.

    Loads settings.yaml, goals.yaml, and .env from the config
    directory. No mutation after __init__.

    Args:
        config_dir: Path to the config directory. Defaults to
            ``<repo_root>/config/``.
    """

    def __init__(self, config_dir: Optional[Path] = None):
        if config_dir is None:
            config_dir = Path(__file__).parent.parent / "config"
        self.config_dir = config_dir

        # Load environment variables
        env_file = config_dir / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        self.settings = self._load_yaml("settings.yaml")
        self.goals_data = self._load_yaml("goals.yaml") or {"goals": []}

    def _load_yaml(self, filename: str) -> dict:
        """Load a YAML configuration file."""
        filepath = self.config_dir / filename
        if filepath.exists():
            with open(filepath, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def _section(self, name: str) -> dict:
        section = self.settings.get(name, {})
        return section if isinstance(section, dict) else {}

    # ---- Paths ----

    @property
    def project_path(self) -> Path:
        """Repository the loop works on (default: current directory)."""
        configured = self.settings.get("project_path")
        if configured:
            return Path(configured).expanduser()
        return Path.cwd()

    @property
    def state_db_path(self) -> Path:
        configured = os.environ.get("YOLO_STATE_DB") or self.settings.get("state_db")
        if configured:
            return Path(configured).expanduser()
        return self.config_dir.parent / "data" / "yolo.db"

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        configured = self.settings.get("log_dir")
        if configured:
            return Path(configured).expanduser()
        return Path(__file__).parent.parent / "logs"

    # ---- Logging ----

    @property
    def logging_level(self) -> str:
        """Global log level (default INFO). Controls console and combined file."""
        return self._section("logging").get("level", "INFO")

    @property
    def logging_subsystem_levels(self) -> Dict[str, str]:
        """Per-subsystem overrides, e.g. ``{"pipeline": "DEBUG"}``."""
        levels = self._section("logging").get("subsystems", {})
        return levels if isinstance(levels, dict) else {}

    @property
    def logging_max_file_size_mb(self) -> int:
        return self._section("logging").get("max_file_size_mb", 10)

    @property
    def logging_backup_count(self) -> int:
        return self._section("logging").get("backup_count", 5)

    # ---- Autonomy and schedule ----

    @property
    def autonomy_level(self) -> AutonomyLevel:
        return AutonomyLevel(self._section("autonomy").get("level", AutonomyLevel.ESCALATION.value))

    @property
    def max_tasks_per_cycle(self) -> int:
        return self._section("autonomy").get("max_tasks_per_cycle", 3)

    @property
    def cycle_minutes(self) -> float:
        """Minutes between scheduler ticks (default 30)."""
        return self._section("schedule").get("cycle_minutes", 30)

    @property
    def working_hours(self) -> WorkingHours:
        hours = self._section("schedule").get("working_hours", {}) or {}
        kwargs = {}
        if "start" in hours:
            kwargs["start"] = _parse_time(hours["start"])
        if "end" in hours:
            kwargs["end"] = _parse_time(hours["end"])
        if "timezone" in hours:
            kwargs["timezone"] = str(hours["timezone"])
        if "weekdays" in hours:
            kwargs["weekdays"] = tuple(sorted({_parse_weekday(d) for d in hours["weekdays"]}))
        return WorkingHours(**kwargs)

    # ---- Risk and approval ----

    @property
    def risk_thresholds(self) -> RiskThresholds:
        risk = self._section("risk_thresholds")
        return RiskThresholds(
            max_change_size=risk.get("code_changes_max", 1000),
            allow_database_changes=risk.get("database_changes", False),
            allow_external_api_calls=risk.get("external_api_calls", False),
            allow_security_sensitive=risk.get("security_sensitive", False),
        )

    @property
    def approval_timeout_minutes(self) -> float:
        return self._section("approval").get("timeout_minutes", 60)

    @property
    def approval_timeout_outcome(self) -> TaskStatus:
        """Task status applied when an approval request times out (default rejected)."""
        value = self._section("approval").get("timeout_outcome", "rejected")
        return TaskStatus(value)

    # ---- Circuit breaker ----

    @property
    def breaker_window_size(self) -> int:
        return self._section("circuit_breaker").get("window_size", 100)

    @property
    def breaker_failure_ratio(self) -> float:
        return self._section("circuit_breaker").get("failure_ratio", 0.05)

    # ---- Pipeline ----

    @property
    def auto_merge(self) -> bool:
        return self._section("pipeline").get("auto_merge", False)

    @property
    def main_branch(self) -> str:
        return self._section("pipeline").get("main_branch", "main")

    @property
    def branch_prefix(self) -> str:
        return self._section("pipeline").get("branch_prefix", "yolo/")

    @property
    def command_timeout(self) -> int:
        """Seconds before a verification, format or task command is killed."""
        return self._section("pipeline").get("command_timeout", 600)

    @property
    def verification_commands(self) -> Dict[str, List[str]]:
        configured = self._section("pipeline").get("verification", {}) or {}
        return {
            suite: _as_command(configured.get(suite))
            for suite in VERIFICATION_SUITES
            if configured.get(suite)
        }

    @property
    def format_commands(self) -> List[List[str]]:
        return [_as_command(c) for c in self._section("pipeline").get("format_commands", []) or []]

    @property
    def task_command(self) -> List[str]:
        """Command that applies a task's change, with {task_id}/{description}/{kind}."""
        return _as_command(self._section("pipeline").get("task_command"))

    @property
    def marker_paths(self) -> List[str]:
        return self._section("pipeline").get("marker_paths", ["."])

    # ---- Deployment ----

    @property
    def deployment_enabled(self) -> bool:
        return self._section("deployment").get("enabled", True)

    @property
    def auto_deploy(self) -> bool:
        return self._section("deployment").get("auto_deploy", False)

    @property
    def deploy_timeout(self) -> int:
        return self._section("deployment").get("timeout", 900)

    @property
    def deployment_commands(self) -> Dict[str, List[str]]:
        configured = self._section("deployment").get("commands", {}) or {}
        return {
            stage: _as_command(configured.get(stage))
            for stage in DEPLOYMENT_STAGES
            if configured.get(stage)
        }

    # ---- Notifications ----

    @property
    def webhook_url(self) -> Optional[str]:
        """Webhook for notifications. Env var YOLO_WEBHOOK_URL takes precedence."""
        return os.environ.get("YOLO_WEBHOOK_URL") or self._section("notifications").get("webhook_url")

    @property
    def webhook_timeout(self) -> float:
        return self._section("notifications").get("timeout", 10.0)

    # ---- Goals ----

    @property
    def goals(self) -> List[ProjectGoal]:
        """Project goals from goals.yaml, in file order."""
        entries = self.goals_data.get("goals", []) or []
        return [ProjectGoal(**entry) for entry in entries]

    # ---- Snapshot and validation ----

    def run_settings(self) -> RunSettings:
        """Immutable settings snapshot taken at Start."""
        return RunSettings(
            autonomy_level=self.autonomy_level,
            working_hours=self.working_hours,
            risk_thresholds=self.risk_thresholds,
            cycle_minutes=self.cycle_minutes,
            max_tasks_per_cycle=self.max_tasks_per_cycle,
            approval_timeout_minutes=self.approval_timeout_minutes,
            approval_timeout_status=self.approval_timeout_outcome,
            breaker_window_size=self.breaker_window_size,
            breaker_failure_ratio=self.breaker_failure_ratio,
            auto_merge=self.auto_merge,
            auto_deploy=self.auto_deploy,
            deployment_enabled=self.deployment_enabled,
            main_branch=self.main_branch,
            branch_prefix=self.branch_prefix,
        )

    def validate(self) -> List[str]:
        """Return every configuration problem found (empty list = valid).

        Unlike logging-only checks elsewhere, Start refuses to run while
        this list is non-empty.
        """
        problems: List[str] = []

        try:
            self.autonomy_level
        except ValueError:
            problems.append(
                f"autonomy.level must be one of {[lvl.value for lvl in AutonomyLevel]}"
            )

        try:
            hours = self.working_hours
            try:
                ZoneInfo(hours.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                problems.append(f"schedule.working_hours.timezone: unknown timezone {hours.timezone!r}")
        except (ValueError, TypeError, ValidationError) as e:
            problems.append(f"schedule.working_hours: {e}")

        try:
            outcome = self.approval_timeout_outcome
            if outcome not in (TaskStatus.REJECTED, TaskStatus.FAILED):
                problems.append("approval.timeout_outcome must be 'rejected' or 'failed'")
        except ValueError:
            problems.append("approval.timeout_outcome must be 'rejected' or 'failed'")

        if not self.verification_commands:
            problems.append("pipeline.verification: at least one verification command is required")

        if self.deployment_enabled and not self.deployment_commands.get("deploy"):
            problems.append("deployment.commands.deploy is required when deployment is enabled")

        if not self.project_path.is_dir():
            problems.append(f"project_path {self.project_path} is not a directory")

        try:
            goals = self.goals
            ids = [g.id for g in goals]
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                problems.append(f"goals.yaml: duplicate goal ids {duplicates}")
        except (ValidationError, TypeError) as e:
            problems.append(f"goals.yaml: {e}")

        if not problems:
            try:
                self.run_settings()
            except (ValidationError, ValueError) as e:
                problems.append(f"settings.yaml: {e}")

        for problem in problems:
            logger.error("config_invalid", problem=problem)
        return problems


_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
