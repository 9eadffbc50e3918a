"""Run records: the last attempted and the last successful convergence run.

The status file is replaced atomically on every completed run and never
edited in place, so it can be read at any time without taking the lock.
A failed run only replaces ``last_attempt``; ``last_success`` keeps pointing
at the last known good revision.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pullagent.logging import get_logger
from pullagent.utils import append_jsonl, atomic_write_json, read_json

log = get_logger("pullagent.agent.status")


class OutcomeStatus(Enum):
    """Outcome of one scheduled job invocation."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RunRecord:
    """One completed convergence attempt."""

    revision: str | None
    timestamp: str
    status: OutcomeStatus
    changed_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "timestamp": self.timestamp,
            "status": self.status.value,
            "changed_count": self.changed_count,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunRecord:
        return cls(
            revision=data.get("revision"),
            timestamp=str(data.get("timestamp", "")),
            status=OutcomeStatus(data.get("status", OutcomeStatus.FAILED.value)),
            changed_count=int(data.get("changed_count", 0)),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class RunStatus:
    """Snapshot of the status file."""

    last_attempt: RunRecord | None = None
    last_success: RunRecord | None = None

    @property
    def is_stuck(self) -> bool:
        """True when the latest attempt failed after an earlier success."""
        return (
            self.last_attempt is not None
            and self.last_attempt.status is OutcomeStatus.FAILED
            and self.last_success is not None
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_attempt": self.last_attempt.to_dict() if self.last_attempt else None,
            "last_success": self.last_success.to_dict() if self.last_success else None,
        }


class StatusStore:
    """Reads and atomically replaces the status file; appends the error log."""

    def __init__(self, path: Path, error_log_path: Path) -> None:
        self._path = Path(path)
        self._error_log_path = Path(error_log_path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def error_log_path(self) -> Path:
        return self._error_log_path

    def read(self) -> RunStatus:
        data = read_json(self._path)
        if data is None:
            return RunStatus()
        try:
            attempt = data.get("last_attempt")
            success = data.get("last_success")
            return RunStatus(
                last_attempt=RunRecord.from_dict(attempt) if attempt else None,
                last_success=RunRecord.from_dict(success) if success else None,
            )
        except (ValueError, TypeError):
            log.warning("status_file_invalid", path=str(self._path))
            return RunStatus()

    def record_success(self, record: RunRecord) -> RunStatus:
        status = RunStatus(last_attempt=record, last_success=record)
        atomic_write_json(self._path, status.to_dict())
        log.info("run_recorded", status=record.status.value, revision=record.revision)
        return status

    def record_failure(self, record: RunRecord) -> RunStatus:
        """Record a failed attempt without touching ``last_success``."""
        previous = self.read()
        status = RunStatus(last_attempt=record, last_success=previous.last_success)
        atomic_write_json(self._path, status.to_dict())
        append_jsonl(self._error_log_path, record.to_dict())
        log.info(
            "run_recorded",
            status=record.status.value,
            revision=record.revision,
            first_run=previous.last_attempt is None,
        )
        return status
