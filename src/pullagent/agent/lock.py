"""Filesystem lock shared by the convergence run and exclusive maintenance jobs.

The lock file is created with ``O_CREAT | O_EXCL`` and holds the holder's pid
and acquisition time. A record older than the staleness threshold is presumed
abandoned by a killed process and may be reclaimed, so an unclean termination
never deadlocks the schedule. An unparseable record is aged by the lock
file's modification time.
"""

from __future__ import annotations

import json
import math
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pullagent.logging import get_logger

log = get_logger("pullagent.agent.lock")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class LockRecord:
    """Contents of the lock file."""

    holder_pid: int
    acquired_at: datetime
    job: str = ""

    def age_seconds(self, now: datetime) -> float:
        return (now - self.acquired_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "holder_pid": self.holder_pid,
            "acquired_at": self.acquired_at.isoformat(),
            "job": self.job,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockRecord:
        acquired_at = datetime.fromisoformat(str(data["acquired_at"]))
        if acquired_at.tzinfo is None:
            acquired_at = acquired_at.replace(tzinfo=UTC)
        return cls(
            holder_pid=int(data["holder_pid"]),
            acquired_at=acquired_at,
            job=str(data.get("job", "")),
        )


class RunLock:
    """Cross-process mutual exclusion through a single lock file."""

    def __init__(
        self,
        path: Path,
        stale_seconds: int,
        job: str = "",
        clock: Callable[[], datetime] = _utcnow,
        boot_time: Callable[[], float] | None = None,
    ) -> None:
        self._path = Path(path)
        self._stale_seconds = stale_seconds
        self._job = job
        self._clock = clock
        self._boot_time = boot_time
        self._held: LockRecord | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held is not None

    def read(self) -> LockRecord | None:
        """Return the current lock record, or None if absent or unparseable."""
        if not self._path.exists():
            return None
        record = self.read_path(self._path)
        if record is None:
            log.warning("lock_record_unreadable", path=str(self._path))
        return record

    def is_stale(self, record: LockRecord | None) -> bool:
        if record is None:
            return True
        if self._boot_time is not None:
            # A holder from before the last boot cannot still be running
            booted_at = datetime.fromtimestamp(self._boot_time(), UTC)
            if record.acquired_at < booted_at:
                return True
        return record.age_seconds(self._clock()) > self._stale_seconds

    def acquire(self) -> bool:
        """Take the lock. Returns False when another live holder has it."""
        if self._held is not None:
            return True
        if self._try_create():
            return True

        record = self.read()
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            # Released between our create attempt and the read
            return self._try_create()
        # An unparseable record may be mid-write; age it by its mtime
        aged = record or LockRecord(holder_pid=-1, acquired_at=datetime.fromtimestamp(mtime, UTC))
        if not self.is_stale(aged):
            log.info(
                "lock_held",
                path=str(self._path),
                holder_pid=record.holder_pid if record else None,
                holder_job=record.job if record else None,
            )
            return False

        if not self._reclaim(record):
            return False
        return self._try_create()

    def release(self) -> None:
        """Remove the lock file if this instance still holds it."""
        if self._held is None:
            return
        current = self.read()
        if current == self._held:
            self._path.unlink(missing_ok=True)
        else:
            log.warning("lock_taken_over", path=str(self._path))
        self._held = None

    def wait(
        self,
        timeout_seconds: float,
        poll_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        """Poll ``acquire()`` for up to ``timeout_seconds``. Returns whether it was taken."""
        attempts = max(1, math.ceil(timeout_seconds / poll_seconds) + 1)
        for attempt in range(attempts):
            if self.acquire():
                return True
            if attempt < attempts - 1:
                sleep(poll_seconds)
        log.info("lock_wait_timed_out", path=str(self._path), waited_seconds=timeout_seconds)
        return False

    @contextmanager
    def hold(
        self,
        wait_seconds: float = 0,
        poll_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[bool]:
        """Context manager yielding whether the lock was acquired.

        With ``wait_seconds`` the lock is polled instead of tried once, so a
        job overlapping another exclusive job runs after it.
        """
        if wait_seconds > 0:
            acquired = self.wait(wait_seconds, poll_seconds=poll_seconds, sleep=sleep)
        else:
            acquired = self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    def _try_create(self) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        record = LockRecord(holder_pid=os.getpid(), acquired_at=self._clock(), job=self._job)
        try:
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(record.to_dict(), fh)
        except BaseException:
            # Never leave an empty lock file behind
            self._path.unlink(missing_ok=True)
            raise
        self._held = record
        log.debug("lock_acquired", path=str(self._path), job=self._job)
        return True

    def _reclaim(self, stale: LockRecord | None) -> bool:
        """Move the stale lock aside; back off if someone else replaced it meanwhile."""
        aside = self._path.with_name(f"{self._path.name}.stale-{os.getpid()}")
        try:
            os.replace(self._path, aside)
        except FileNotFoundError:
            return True

        moved = self.read_path(aside)
        if stale is not None and moved != stale:
            # A fresh holder won the race; put its lock back
            try:
                os.link(aside, self._path)
            except FileExistsError:
                pass
            aside.unlink(missing_ok=True)
            return False

        aside.unlink(missing_ok=True)
        log.warning(
            "stale_lock_reclaimed",
            path=str(self._path),
            holder_pid=stale.holder_pid if stale else None,
            acquired_at=stale.acquired_at.isoformat() if stale else None,
        )
        return True

    @staticmethod
    def read_path(path: Path) -> LockRecord | None:
        try:
            return LockRecord.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError):
            return None
