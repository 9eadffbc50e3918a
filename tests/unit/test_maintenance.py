"""Unit tests for maintenance jobs and the disk monitor."""

from __future__ import annotations

import json
import os
import time
from collections import namedtuple
from datetime import date
from pathlib import Path
from unittest.mock import patch

from pullagent.agent import OutcomeStatus, RunLock
from pullagent.maintenance import DiskMonitor, MaintenanceRunner

_Usage = namedtuple("_Usage", ["total", "used", "free", "percent"])

GB = 1024**3


def _make_runner(tmp_path: Path, today: date = date(2026, 3, 1), **kwargs) -> MaintenanceRunner:
    return MaintenanceRunner(
        reboot_marker_path=tmp_path / "state" / "reboot-marker.json",
        reboot_command=["sudo", "shutdown", "-r", "now"],
        today=lambda: today,
        **kwargs,
    )


def _make_lock(tmp_path: Path) -> RunLock:
    return RunLock(tmp_path / "state" / "agent.lock", stale_seconds=7200, job="nightly-maintenance")


def _age(path: Path, days: float) -> None:
    old = time.time() - days * 86400
    os.utime(path, (old, old))


# ---------------------------------------------------------------------------
# Nightly
# ---------------------------------------------------------------------------


class TestNightlyMaintenance:
    """Tests for cleanup + guarded reboot."""

    def test_reboot_requested_once_per_slot(self, tmp_path: Path) -> None:
        runner = _make_runner(tmp_path)

        with patch("pullagent.maintenance.jobs.run_cmd", return_value="") as mock_run:
            first = runner.nightly_maintenance(_make_lock(tmp_path))
            second = runner.nightly_maintenance(_make_lock(tmp_path))

        assert first.status is OutcomeStatus.SUCCESS
        assert first.details["reboot"] == "requested"
        assert second.details["reboot"] == "already_requested"
        mock_run.assert_called_once_with(["sudo", "shutdown", "-r", "now"])

    def test_marker_written_before_reboot(self, tmp_path: Path) -> None:
        runner = _make_runner(tmp_path)
        marker = tmp_path / "state" / "reboot-marker.json"
        seen: list[bool] = []

        def reboot(args, **kwargs):
            seen.append(marker.exists())
            return ""

        with patch("pullagent.maintenance.jobs.run_cmd", side_effect=reboot):
            runner.nightly_maintenance(_make_lock(tmp_path))

        assert seen == [True]
        assert json.loads(marker.read_text())["slot"] == "2026-03-01"

    def test_next_day_reboots_again(self, tmp_path: Path) -> None:
        with patch("pullagent.maintenance.jobs.run_cmd", return_value="") as mock_run:
            _make_runner(tmp_path).nightly_maintenance(_make_lock(tmp_path))
            _make_runner(tmp_path, today=date(2026, 3, 2)).nightly_maintenance(
                _make_lock(tmp_path)
            )

        assert mock_run.call_count == 2

    def test_failed_reboot_is_failed_and_not_retried(self, tmp_path: Path) -> None:
        runner = _make_runner(tmp_path)

        with patch("pullagent.maintenance.jobs.run_cmd", return_value=None) as mock_run:
            first = runner.nightly_maintenance(_make_lock(tmp_path))
            retry = runner.nightly_maintenance(_make_lock(tmp_path))

        assert first.status is OutcomeStatus.FAILED
        assert "reboot command failed" in first.error
        assert retry.details["reboot"] == "already_requested"
        assert mock_run.call_count == 1

    def test_skipped_while_convergence_holds_lock(self, tmp_path: Path) -> None:
        holder = RunLock(tmp_path / "state" / "agent.lock", stale_seconds=7200, job="convergence")
        holder.acquire()

        with patch("pullagent.maintenance.jobs.run_cmd") as mock_run:
            result = _make_runner(tmp_path).nightly_maintenance(_make_lock(tmp_path))

        assert result.status is OutcomeStatus.SKIPPED
        mock_run.assert_not_called()
        assert not (tmp_path / "state" / "reboot-marker.json").exists()

    def test_waits_for_convergence_to_finish(self, tmp_path: Path) -> None:
        holder = RunLock(tmp_path / "state" / "agent.lock", stale_seconds=7200, job="convergence")
        holder.acquire()
        sleeps: list[float] = []

        def sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 2:
                holder.release()

        runner = _make_runner(tmp_path, lock_wait_seconds=600, lock_poll_seconds=30, sleep=sleep)
        with patch("pullagent.maintenance.jobs.run_cmd", return_value="") as mock_run:
            result = runner.nightly_maintenance(_make_lock(tmp_path))

        assert result.status is OutcomeStatus.SUCCESS
        assert result.details["reboot"] == "requested"
        assert sleeps == [30, 30]
        mock_run.assert_called_once_with(["sudo", "shutdown", "-r", "now"])

    def test_gives_up_after_lock_wait(self, tmp_path: Path) -> None:
        holder = RunLock(tmp_path / "state" / "agent.lock", stale_seconds=7200, job="convergence")
        holder.acquire()
        sleeps: list[float] = []

        runner = _make_runner(
            tmp_path, lock_wait_seconds=90, lock_poll_seconds=30, sleep=sleeps.append
        )
        with patch("pullagent.maintenance.jobs.run_cmd") as mock_run:
            result = runner.nightly_maintenance(_make_lock(tmp_path))

        assert result.status is OutcomeStatus.SKIPPED
        assert sum(sleeps) == 90
        mock_run.assert_not_called()

    def test_lock_released_after_run(self, tmp_path: Path) -> None:
        with patch("pullagent.maintenance.jobs.run_cmd", return_value=""):
            _make_runner(tmp_path).nightly_maintenance(_make_lock(tmp_path))
        assert not (tmp_path / "state" / "agent.lock").exists()

    def test_cleanup_removes_only_old_files(self, tmp_path: Path) -> None:
        tmp_dir = tmp_path / "tmp"
        (tmp_dir / "nested").mkdir(parents=True)
        old = tmp_dir / "nested" / "old.log"
        new = tmp_dir / "new.log"
        old.write_text("x")
        new.write_text("y")
        _age(old, 10)
        runner = _make_runner(tmp_path, cleanup_paths=[tmp_dir, tmp_path / "absent"])

        with patch("pullagent.maintenance.jobs.run_cmd", return_value=""):
            result = runner.nightly_maintenance(_make_lock(tmp_path))

        assert result.details["files_removed"] == 1
        assert not old.exists()
        assert new.exists()


# ---------------------------------------------------------------------------
# Weekly
# ---------------------------------------------------------------------------


class TestWeeklyDeepClean:
    """Tests for weekly_deep_clean()."""

    def test_empties_directories_and_runs_commands(self, tmp_path: Path) -> None:
        cache = tmp_path / "cache"
        (cache / "sub").mkdir(parents=True)
        (cache / "file").write_text("x")
        runner = _make_runner(
            tmp_path, deep_clean_paths=[cache], deep_clean_commands=[["brew", "cleanup"]]
        )

        with patch("pullagent.maintenance.jobs.run_cmd", return_value="") as mock_run:
            result = runner.weekly_deep_clean()

        assert result.status is OutcomeStatus.SUCCESS
        assert result.details == {"entries_removed": 2, "commands_run": 1}
        assert cache.is_dir()
        assert list(cache.iterdir()) == []
        assert mock_run.call_args.args[0] == ["brew", "cleanup"]

    def test_command_failure_marks_failed(self, tmp_path: Path) -> None:
        runner = _make_runner(
            tmp_path, deep_clean_commands=[["brew", "cleanup"], ["xcrun", "simctl", "delete"]]
        )

        with patch("pullagent.maintenance.jobs.run_cmd", side_effect=[None, ""]):
            result = runner.weekly_deep_clean()

        assert result.status is OutcomeStatus.FAILED
        assert result.details["commands_run"] == 1
        assert "brew cleanup" in result.error

    def test_does_not_reboot(self, tmp_path: Path) -> None:
        with patch("pullagent.maintenance.jobs.run_cmd", return_value="") as mock_run:
            _make_runner(tmp_path).weekly_deep_clean()
        mock_run.assert_not_called()


# ---------------------------------------------------------------------------
# Disk monitor
# ---------------------------------------------------------------------------


class TestDiskMonitor:
    """Tests for DiskMonitor."""

    def test_over_threshold_writes_warning(self, tmp_path: Path) -> None:
        log_path = tmp_path / "logs" / "disk-warnings.jsonl"
        monitor = DiskMonitor(Path("/"), threshold_percent=90, warning_log_path=log_path)

        with patch(
            "pullagent.maintenance.disk.psutil.disk_usage",
            return_value=_Usage(100 * GB, 95 * GB, 5 * GB, 95.0),
        ):
            sample = monitor.check()

        assert sample.over_threshold
        assert sample.usage_percent == 95.0
        entry = json.loads(log_path.read_text())
        assert entry["level"] == "warning"
        assert entry["free_gb"] == 5.0

    def test_under_threshold_writes_nothing(self, tmp_path: Path) -> None:
        log_path = tmp_path / "disk-warnings.jsonl"
        monitor = DiskMonitor(Path("/"), threshold_percent=90, warning_log_path=log_path)

        with patch(
            "pullagent.maintenance.disk.psutil.disk_usage",
            return_value=_Usage(100 * GB, 40 * GB, 60 * GB, 40.0),
        ):
            sample = monitor.check()

        assert not sample.over_threshold
        assert not log_path.exists()

    def test_exactly_at_threshold_is_not_a_warning(self, tmp_path: Path) -> None:
        monitor = DiskMonitor(Path("/"), 90, tmp_path / "w.jsonl")
        with patch(
            "pullagent.maintenance.disk.psutil.disk_usage",
            return_value=_Usage(100 * GB, 90 * GB, 10 * GB, 90.0),
        ):
            assert monitor.check().over_threshold is False

    def test_real_volume_sample(self, tmp_path: Path) -> None:
        sample = DiskMonitor(tmp_path, 100, tmp_path / "w.jsonl").sample()
        assert 0 <= sample.usage_percent <= 100
        assert sample.to_dict()["path"] == str(tmp_path)
