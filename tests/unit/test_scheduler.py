"""Unit tests for the job table and launchd registration."""

from __future__ import annotations

import plistlib
from pathlib import Path
from unittest.mock import patch

import pytest

from pullagent.config import Settings
from pullagent.errors import ConfigurationError
from pullagent.scheduler import (
    DailyTrigger,
    IntervalTrigger,
    LaunchdScheduler,
    WeeklyTrigger,
    build_job_table,
)
from pullagent.scheduler.launchd import job_environment


def _make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def _make_scheduler(tmp_path: Path, environment: dict[str, str] | None = None) -> LaunchdScheduler:
    return LaunchdScheduler(
        launchd_dir=tmp_path / "LaunchAgents",
        log_dir=tmp_path / "logs",
        label_prefix="com.example.pullagent",
        program=["/usr/local/bin/pullagent"],
        environment=environment if environment is not None else {"PATH": "/usr/bin"},
    )


# ---------------------------------------------------------------------------
# Job table
# ---------------------------------------------------------------------------


class TestJobTable:
    """Tests for build_job_table()."""

    def test_four_jobs(self) -> None:
        table = build_job_table(_make_settings())
        assert [j.name for j in table] == [
            "convergence",
            "nightly-maintenance",
            "weekly-deep-clean",
            "disk-check",
        ]

    def test_default_triggers(self) -> None:
        by_name = {j.name: j for j in build_job_table(_make_settings())}

        assert by_name["convergence"].trigger == IntervalTrigger(1800)
        assert by_name["nightly-maintenance"].trigger == DailyTrigger(3)
        assert by_name["weekly-deep-clean"].trigger == WeeklyTrigger(0, 4)
        assert by_name["disk-check"].trigger == IntervalTrigger(3600)

    def test_exclusive_jobs(self) -> None:
        exclusive = {j.name for j in build_job_table(_make_settings()) if j.requires_exclusive_lock}
        assert exclusive == {"convergence", "nightly-maintenance"}

    def test_settings_override_intervals(self) -> None:
        table = build_job_table(
            _make_settings(convergence_interval_seconds=600, maintenance_hour=5)
        )
        assert table[0].trigger == IntervalTrigger(600)
        assert table[1].trigger == DailyTrigger(5)

    def test_to_dict(self) -> None:
        data = build_job_table(_make_settings())[0].to_dict()
        assert data["trigger"] == "every 1800s"
        assert data["requires_exclusive_lock"] is True


class TestTriggers:
    """Tests for trigger validation."""

    def test_interval_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            IntervalTrigger(0)

    def test_daily_hour_range(self) -> None:
        with pytest.raises(ValueError):
            DailyTrigger(24)

    def test_weekly_day_range(self) -> None:
        with pytest.raises(ValueError):
            WeeklyTrigger(7, 4)

    def test_describe(self) -> None:
        assert DailyTrigger(3, 5).describe() == "daily at 03:05"
        assert WeeklyTrigger(0, 4).describe() == "weekly on day 0 at 04:00"


# ---------------------------------------------------------------------------
# launchd
# ---------------------------------------------------------------------------


class TestLaunchdRender:
    """Tests for plist rendering."""

    def test_interval_job(self, tmp_path: Path) -> None:
        scheduler = _make_scheduler(tmp_path)
        spec = build_job_table(_make_settings())[0]

        job = scheduler.render(spec)

        assert job["Label"] == "com.example.pullagent.convergence"
        assert job["ProgramArguments"] == ["/usr/local/bin/pullagent", "run", "convergence"]
        assert job["StartInterval"] == 1800
        assert job["StandardOutPath"] == str(tmp_path / "logs" / "convergence.log")
        assert "StartCalendarInterval" not in job

    def test_daily_and_weekly_jobs(self, tmp_path: Path) -> None:
        scheduler = _make_scheduler(tmp_path)
        table = build_job_table(_make_settings())

        assert scheduler.render(table[1])["StartCalendarInterval"] == {"Hour": 3, "Minute": 0}
        assert scheduler.render(table[2])["StartCalendarInterval"] == {
            "Weekday": 0,
            "Hour": 4,
            "Minute": 0,
        }

    def test_secrets_never_in_environment(self) -> None:
        env = job_environment(
            {
                "PATH": "/opt/homebrew/bin:/usr/bin",
                "HOME": "/Users/ci",
                "PULLAGENT_REPO_BRANCH": "release",
                "PULLAGENT_DEPLOY_KEY": "-----BEGIN",
                "PULLAGENT_VAULT_PASSWORD": "pw",
                "PULLAGENT_AUTO_LOGIN_PASSWORD": "pw",
            }
        )
        assert env == {"PATH": "/opt/homebrew/bin:/usr/bin", "PULLAGENT_REPO_BRANCH": "release"}


class TestLaunchdRegister:
    """Tests for register()/unregister()."""

    def test_register_writes_and_loads(self, tmp_path: Path) -> None:
        scheduler = _make_scheduler(tmp_path)
        table = build_job_table(_make_settings())

        with patch("pullagent.scheduler.launchd.run_cmd", return_value="") as mock_run:
            changed = scheduler.register(table)

        assert changed == [j.name for j in table]
        plist = scheduler.plist_path("convergence")
        assert plistlib.loads(plist.read_bytes())["StartInterval"] == 1800
        loads = [c.args[0] for c in mock_run.call_args_list]
        assert loads[0] == ["launchctl", "load", "-w", str(plist)]
        assert len(loads) == 4

    def test_register_is_idempotent(self, tmp_path: Path) -> None:
        scheduler = _make_scheduler(tmp_path)
        table = build_job_table(_make_settings())

        with patch("pullagent.scheduler.launchd.run_cmd", return_value=""):
            scheduler.register(table)
        with patch("pullagent.scheduler.launchd.run_cmd") as mock_run:
            changed = scheduler.register(table)

        assert changed == []
        mock_run.assert_not_called()

    def test_changed_plist_is_reloaded(self, tmp_path: Path) -> None:
        scheduler = _make_scheduler(tmp_path)
        with patch("pullagent.scheduler.launchd.run_cmd", return_value=""):
            scheduler.register(build_job_table(_make_settings()))

        with patch("pullagent.scheduler.launchd.run_cmd", return_value="") as mock_run:
            changed = scheduler.register(
                build_job_table(_make_settings(convergence_interval_seconds=900))
            )

        assert changed == ["convergence"]
        verbs = [c.args[0][1] for c in mock_run.call_args_list]
        assert verbs == ["unload", "load"]

    def test_load_failure_raises(self, tmp_path: Path) -> None:
        scheduler = _make_scheduler(tmp_path)

        with patch("pullagent.scheduler.launchd.run_cmd", return_value=None):
            with pytest.raises(ConfigurationError, match="launchctl"):
                scheduler.register(build_job_table(_make_settings()))

    def test_unregister(self, tmp_path: Path) -> None:
        scheduler = _make_scheduler(tmp_path)
        with patch("pullagent.scheduler.launchd.run_cmd", return_value=""):
            scheduler.register(build_job_table(_make_settings()))
            removed = scheduler.unregister(["disk-check", "missing"])

        assert removed == ["disk-check"]
        assert not scheduler.plist_path("disk-check").exists()
