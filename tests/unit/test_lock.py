"""Unit tests for the filesystem run lock."""

from __future__ import annotations

import json
import os
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from pullagent.agent import LockRecord, RunLock

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _make_lock(
    tmp_path: Path,
    now: datetime = NOW,
    stale_seconds: int = 7200,
    job: str = "convergence",
    boot_time: float | None = None,
) -> RunLock:
    return RunLock(
        path=tmp_path / "state" / "agent.lock",
        stale_seconds=stale_seconds,
        job=job,
        clock=lambda: now,
        boot_time=(lambda: boot_time) if boot_time is not None else None,
    )


def _write_record(path: Path, acquired_at: datetime, pid: int = 4242) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps({"holder_pid": pid, "acquired_at": acquired_at.isoformat(), "job": "other"})
    )


# ---------------------------------------------------------------------------
# Acquire / release
# ---------------------------------------------------------------------------


class TestAcquireRelease:
    """Tests for the basic lock lifecycle."""

    def test_acquire_writes_record(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path)

        assert lock.acquire() is True
        data = json.loads(lock.path.read_text())
        assert data["holder_pid"] == os.getpid()
        assert data["acquired_at"] == NOW.isoformat()
        assert data["job"] == "convergence"
        assert lock.held

    def test_second_instance_is_refused(self, tmp_path: Path) -> None:
        first = _make_lock(tmp_path)
        second = _make_lock(tmp_path, job="nightly-maintenance")

        assert first.acquire() is True
        assert second.acquire() is False
        assert second.held is False

    def test_release_removes_file(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path)
        lock.acquire()

        lock.release()

        assert not lock.path.exists()
        assert lock.held is False

    def test_release_without_holding_is_noop(self, tmp_path: Path) -> None:
        holder = _make_lock(tmp_path)
        holder.acquire()

        _make_lock(tmp_path).release()

        assert holder.path.exists()

    def test_release_does_not_remove_foreign_lock(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path)
        lock.acquire()
        _write_record(lock.path, NOW, pid=999)

        lock.release()

        assert lock.path.exists()

    def test_hold_yields_and_releases(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path)

        with lock.hold() as acquired:
            assert acquired is True
            assert lock.path.exists()

        assert not lock.path.exists()

    def test_hold_when_busy_leaves_lock_alone(self, tmp_path: Path) -> None:
        holder = _make_lock(tmp_path)
        holder.acquire()

        with _make_lock(tmp_path).hold() as acquired:
            assert acquired is False

        assert holder.path.exists()

    def test_failed_record_write_leaves_no_lock_file(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path)

        with patch("pullagent.agent.lock.json.dump", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                lock.acquire()

        assert not lock.path.exists()
        assert lock.held is False
        assert _make_lock(tmp_path).acquire() is True


class TestWait:
    """Tests for polling acquisition."""

    def test_free_lock_taken_without_sleeping(self, tmp_path: Path) -> None:
        sleeps: list[float] = []
        assert _make_lock(tmp_path).wait(60, poll_seconds=10, sleep=sleeps.append) is True
        assert sleeps == []

    def test_taken_once_holder_releases(self, tmp_path: Path) -> None:
        holder = _make_lock(tmp_path)
        holder.acquire()
        waiter = _make_lock(tmp_path, job="nightly-maintenance")

        assert waiter.wait(60, poll_seconds=10, sleep=lambda _: holder.release()) is True
        assert waiter.held

    def test_times_out_while_held(self, tmp_path: Path) -> None:
        _make_lock(tmp_path).acquire()
        sleeps: list[float] = []

        waiter = _make_lock(tmp_path, job="nightly-maintenance")

        assert waiter.wait(25, poll_seconds=10, sleep=sleeps.append) is False
        assert sleeps == [10, 10, 10]


# ---------------------------------------------------------------------------
# Staleness
# ---------------------------------------------------------------------------


class TestStaleness:
    """Tests for stale-holder reclamation."""

    def test_fresh_lock_is_not_reclaimed(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path)
        _write_record(lock.path, NOW - timedelta(minutes=30))

        assert lock.acquire() is False
        assert json.loads(lock.path.read_text())["holder_pid"] == 4242

    def test_old_lock_is_reclaimed(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path)
        _write_record(lock.path, NOW - timedelta(hours=3))

        assert lock.acquire() is True
        assert json.loads(lock.path.read_text())["holder_pid"] == os.getpid()
        assert not list(lock.path.parent.glob("*.stale-*"))

    def test_threshold_is_exclusive(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path, stale_seconds=3600)
        _write_record(lock.path, NOW - timedelta(seconds=3600))

        assert lock.acquire() is False

    def test_lock_from_before_boot_is_reclaimed(self, tmp_path: Path) -> None:
        booted = (NOW - timedelta(minutes=5)).timestamp()
        lock = _make_lock(tmp_path, boot_time=booted)
        _write_record(lock.path, NOW - timedelta(minutes=10))

        assert lock.acquire() is True

    def test_lock_after_boot_still_honoured(self, tmp_path: Path) -> None:
        booted = (NOW - timedelta(hours=1)).timestamp()
        lock = _make_lock(tmp_path, boot_time=booted)
        _write_record(lock.path, NOW - timedelta(minutes=10))

        assert lock.acquire() is False

    def test_unparseable_recent_file_is_respected(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path, now=datetime.now(UTC))
        lock.path.parent.mkdir(parents=True)
        lock.path.write_text("{not json")

        assert lock.acquire() is False

    def test_unparseable_old_file_is_reclaimed(self, tmp_path: Path) -> None:
        lock = _make_lock(tmp_path, now=datetime.now(UTC))
        lock.path.parent.mkdir(parents=True)
        lock.path.write_text("")
        old = time.time() - 3 * 3600
        os.utime(lock.path, (old, old))

        assert lock.acquire() is True
        assert lock.read() is not None

    def test_is_stale_for_missing_record(self, tmp_path: Path) -> None:
        assert _make_lock(tmp_path).is_stale(None) is True


class TestLockRecord:
    """Tests for LockRecord serialisation."""

    def test_naive_timestamp_is_utc(self) -> None:
        record = LockRecord.from_dict({"holder_pid": 1, "acquired_at": "2026-03-01T12:00:00"})
        assert record.acquired_at == NOW
        assert record.job == ""

    def test_age(self) -> None:
        record = LockRecord(holder_pid=1, acquired_at=NOW - timedelta(seconds=90))
        assert record.age_seconds(NOW) == 90
