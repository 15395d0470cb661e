"""Tests for YAML configuration loading and validation."""

from datetime import time

import pytest
import yaml

from yolo.autonomous.models import AutonomyLevel, TaskStatus
from yolo.config import Config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("YOLO_WEBHOOK_URL", raising=False)
    monkeypatch.delenv("YOLO_STATE_DB", raising=False)


def make_config(tmp_path, settings=None, goals=None) -> Config:
    config_dir = tmp_path / "config"
    config_dir.mkdir(exist_ok=True)
    if settings is not None:
        (config_dir / "settings.yaml").write_text(yaml.safe_dump(settings))
    if goals is not None:
        (config_dir / "goals.yaml").write_text(yaml.safe_dump({"goals": goals}))
    return Config(config_dir)


VALID = {
    "pipeline": {"verification": {"unit": "pytest -q", "lint": ["ruff", "check", "."]}},
    "deployment": {"commands": {"deploy": "./deploy.sh {env} {version}"}},
}


def test_defaults(tmp_path):
    config = make_config(tmp_path)
    assert config.autonomy_level == AutonomyLevel.ESCALATION
    assert config.cycle_minutes == 30
    assert config.working_hours.start == time(9, 0)
    assert config.working_hours.weekdays == (0, 1, 2, 3, 4)
    assert config.approval_timeout_outcome == TaskStatus.REJECTED
    assert config.breaker_window_size == 100
    assert config.breaker_failure_ratio == 0.05
    assert config.goals == []
    assert config.state_db_path == tmp_path / "data" / "yolo.db"


def test_commands_accept_strings_and_lists(tmp_path):
    config = make_config(tmp_path, {**VALID, "project_path": str(tmp_path)})
    assert config.verification_commands == {
        "lint": ["ruff", "check", "."],
        "unit": ["pytest", "-q"],
    }
    assert config.deployment_commands["deploy"] == ["./deploy.sh", "{env}", "{version}"]


def test_working_hours_parsing(tmp_path):
    config = make_config(tmp_path, {
        "schedule": {"working_hours": {
            "start": 540,  # unquoted 09:00 in YAML 1.1
            "end": "17:30",
            "timezone": "Europe/Berlin",
            "weekdays": ["mon", "Wednesday", 4],
        }},
    })
    hours = config.working_hours
    assert hours.start == time(9, 0)
    assert hours.end == time(17, 30)
    assert hours.timezone == "Europe/Berlin"
    assert hours.weekdays == (0, 2, 4)


def test_risk_thresholds_mapping(tmp_path):
    config = make_config(tmp_path, {"risk_thresholds": {"code_changes_max": 50, "database_changes": True}})
    thresholds = config.risk_thresholds
    assert thresholds.max_change_size == 50
    assert thresholds.allow_database_changes is True
    assert thresholds.allow_security_sensitive is False


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("YOLO_WEBHOOK_URL", "https://hooks.example.com/env")
    monkeypatch.setenv("YOLO_STATE_DB", str(tmp_path / "other.db"))
    config = make_config(tmp_path, {"notifications": {"webhook_url": "https://hooks.example.com/file"}})
    assert config.webhook_url == "https://hooks.example.com/env"
    assert config.state_db_path == tmp_path / "other.db"


def test_goals_loaded_in_order(tmp_path):
    config = make_config(tmp_path, goals=[
        {"id": "b", "description": "Second", "risk_flags": {"touches_database": True}},
        {"id": "a", "description": "First", "priority": 3},
    ])
    goals = config.goals
    assert [g.id for g in goals] == ["b", "a"]
    assert goals[0].risk_flags.touches_database is True


def test_run_settings_snapshot(tmp_path):
    config = make_config(tmp_path, {
        **VALID,
        "autonomy": {"level": "routine", "max_tasks_per_cycle": 5},
        "pipeline": {**VALID["pipeline"], "auto_merge": True},
    })
    settings = config.run_settings()
    assert settings.autonomy_level == AutonomyLevel.ROUTINE
    assert settings.max_tasks_per_cycle == 5
    assert settings.auto_merge is True


class TestValidate:

    def test_valid_config(self, tmp_path):
        config = make_config(tmp_path, {**VALID, "project_path": str(tmp_path)})
        assert config.validate() == []

    def test_reports_every_problem(self, tmp_path):
        config = make_config(
            tmp_path,
            {
                "project_path": str(tmp_path / "missing"),
                "autonomy": {"level": "reckless"},
                "schedule": {"working_hours": {"timezone": "Mars/Olympus"}},
                "approval": {"timeout_outcome": "executing"},
            },
            goals=[{"id": "x", "description": "one"}, {"id": "x", "description": "two"}],
        )
        problems = config.validate()
        joined = "\n".join(problems)
        assert "autonomy.level" in joined
        assert "timezone" in joined
        assert "timeout_outcome" in joined
        assert "pipeline.verification" in joined
        assert "deployment.commands.deploy" in joined
        assert "is not a directory" in joined
        assert "duplicate goal ids" in joined
        assert len(problems) == 7

    def test_deploy_command_optional_when_disabled(self, tmp_path):
        config = make_config(tmp_path, {
            "project_path": str(tmp_path),
            "pipeline": VALID["pipeline"],
            "deployment": {"enabled": False},
        })
        assert config.validate() == []

    def test_bad_goal_entry(self, tmp_path):
        config = make_config(
            tmp_path, {**VALID, "project_path": str(tmp_path)}, goals=[{"description": "no id"}]
        )
        assert any(p.startswith("goals.yaml") for p in config.validate())

    def test_timeout_outcome_cannot_approve(self, tmp_path):
        config = make_config(tmp_path, {
            **VALID,
            "project_path": str(tmp_path),
            "approval": {"timeout_outcome": "approved"},
        })
        assert config.validate() == ["approval.timeout_outcome must be 'rejected' or 'failed'"]

    def test_timeout_outcome_failed(self, tmp_path):
        config = make_config(tmp_path, {
            **VALID,
            "project_path": str(tmp_path),
            "approval": {"timeout_outcome": "failed"},
        })
        assert config.validate() == []
        assert config.run_settings().approval_timeout_status == TaskStatus.FAILED
