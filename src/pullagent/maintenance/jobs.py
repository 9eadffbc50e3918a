"""Scheduled maintenance: nightly cleanup + reboot, weekly deep clean.

Reboot is the one destructive, non-idempotent action in the system. Before
the reboot command is issued a marker naming the schedule slot (the local
date) is written; a retried or duplicated tick for the same slot finds the
marker and does not reboot again. A reboot that fails is not retried until
the next natural slot.
"""

from __future__ import annotations

import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

from pullagent.agent import OutcomeStatus, RunLock
from pullagent.constants import JOB_NIGHTLY_MAINTENANCE, JOB_WEEKLY_DEEP_CLEAN
from pullagent.errors import DestructiveActionError
from pullagent.logging import get_logger
from pullagent.utils import atomic_write_json, now_iso, read_json, run_cmd

log = get_logger("pullagent.maintenance.jobs")


@dataclass
class MaintenanceResult:
    """Result of one maintenance job invocation."""

    job: str
    status: OutcomeStatus
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    completed_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "status": self.status.value,
            "details": self.details,
            "error": self.error,
            "completed_at": self.completed_at,
        }


class MaintenanceRunner:
    """Executes the maintenance jobs."""

    def __init__(
        self,
        reboot_marker_path: Path,
        cleanup_paths: list[Path] | None = None,
        cleanup_max_age_days: int = 7,
        deep_clean_paths: list[Path] | None = None,
        deep_clean_commands: list[list[str]] | None = None,
        reboot_command: list[str] | None = None,
        today: Callable[[], date] = date.today,
        lock_wait_seconds: float = 0,
        lock_poll_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._marker_path = Path(reboot_marker_path)
        self._cleanup_paths = [Path(p) for p in cleanup_paths or []]
        self._max_age_seconds = cleanup_max_age_days * 86400
        self._deep_clean_paths = [Path(p) for p in deep_clean_paths or []]
        self._deep_clean_commands = deep_clean_commands or []
        self._reboot_command = reboot_command or ["sudo", "shutdown", "-r", "now"]
        self._today = today
        self._lock_wait_seconds = lock_wait_seconds
        self._lock_poll_seconds = lock_poll_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Nightly
    # ------------------------------------------------------------------

    def nightly_maintenance(self, lock: RunLock) -> MaintenanceResult:
        """Clean old temporary files, then reboot once per daily slot.

        A convergence run holding the lock is waited for, up to the configured
        lock wait, so the nightly slot is not lost to an overlapping run.
        """
        result = MaintenanceResult(job=JOB_NIGHTLY_MAINTENANCE, status=OutcomeStatus.FAILED)

        with lock.hold(
            wait_seconds=self._lock_wait_seconds,
            poll_seconds=self._lock_poll_seconds,
            sleep=self._sleep,
        ) as acquired:
            if not acquired:
                log.warning("maintenance_skipped", job=result.job, reason="lock_held")
                result.status = OutcomeStatus.SKIPPED
                result.completed_at = now_iso()
                return result

            result.details["files_removed"] = self.cleanup_old_files()

            slot = self._today().isoformat()
            if self.reboot_done_for(slot):
                log.info("reboot_already_requested", slot=slot)
                result.details["reboot"] = "already_requested"
                result.status = OutcomeStatus.SUCCESS
                result.completed_at = now_iso()
                return result

            try:
                self._reboot(slot)
                result.details["reboot"] = "requested"
                result.status = OutcomeStatus.SUCCESS
            except DestructiveActionError as exc:
                result.details["reboot"] = "failed"
                result.error = str(exc)
                log.error("reboot_failed", slot=slot, error=str(exc))

        result.completed_at = now_iso()
        return result

    def reboot_done_for(self, slot: str) -> bool:
        marker = read_json(self._marker_path)
        return marker is not None and marker.get("slot") == slot

    def cleanup_old_files(self) -> int:
        """Delete files older than the configured age under each cleanup path."""
        cutoff = time.time() - self._max_age_seconds
        removed = 0
        for root in self._cleanup_paths:
            if not root.is_dir():
                continue
            for path in list(root.rglob("*")):
                try:
                    if (path.is_file() or path.is_symlink()) and path.lstat().st_mtime < cutoff:
                        path.unlink()
                        removed += 1
                except OSError as exc:
                    log.warning("cleanup_failed", path=str(path), error=str(exc))
        log.info("cleanup_complete", files_removed=removed)
        return removed

    def _reboot(self, slot: str) -> None:
        # Marker first: if we die mid-reboot the slot is already consumed
        atomic_write_json(
            self._marker_path,
            {"slot": slot, "requested_at": now_iso(), "command": self._reboot_command},
        )
        log.warning("reboot_requested", slot=slot, command=self._reboot_command)
        if run_cmd(self._reboot_command) is None:
            command = " ".join(self._reboot_command)
            raise DestructiveActionError(f"reboot command failed: {command}")

    # ------------------------------------------------------------------
    # Weekly
    # ------------------------------------------------------------------

    def weekly_deep_clean(self) -> MaintenanceResult:
        """Empty each deep-clean directory and run each deep-clean command."""
        result = MaintenanceResult(job=JOB_WEEKLY_DEEP_CLEAN, status=OutcomeStatus.SUCCESS)
        failures: list[str] = []

        emptied = 0
        for root in self._deep_clean_paths:
            if not root.is_dir():
                continue
            for child in root.iterdir():
                try:
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
                    emptied += 1
                except OSError as exc:
                    failures.append(f"{child}: {exc}")
                    log.warning("deep_clean_remove_failed", path=str(child), error=str(exc))
        result.details["entries_removed"] = emptied

        commands_run = 0
        for argv in self._deep_clean_commands:
            if run_cmd(argv, timeout=1800) is None:
                failures.append(f"command failed: {' '.join(argv)}")
            else:
                commands_run += 1
        result.details["commands_run"] = commands_run

        if failures:
            result.status = OutcomeStatus.FAILED
            result.error = "; ".join(failures)
        log.info(
            "deep_clean_complete",
            entries_removed=emptied,
            commands_run=commands_run,
            failures=len(failures),
        )
        return result
