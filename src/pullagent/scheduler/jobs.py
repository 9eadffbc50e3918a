"""Static table of scheduled jobs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pullagent.config import Settings
from pullagent.constants import (
    DEEP_CLEAN_HOUR,
    DEEP_CLEAN_WEEKDAY,
    JOB_CONVERGENCE,
    JOB_DISK_CHECK,
    JOB_NIGHTLY_MAINTENANCE,
    JOB_WEEKLY_DEEP_CLEAN,
)


@dataclass(frozen=True)
class IntervalTrigger:
    """Fire every ``seconds`` seconds."""

    seconds: int

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("interval must be positive")

    def describe(self) -> str:
        return f"every {self.seconds}s"


@dataclass(frozen=True)
class DailyTrigger:
    """Fire once a day at ``hour:minute`` local time."""

    hour: int
    minute: int = 0

    def __post_init__(self) -> None:
        if not (0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValueError("invalid time of day")

    def describe(self) -> str:
        return f"daily at {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class WeeklyTrigger:
    """Fire once a week; ``weekday`` uses launchd numbering (0 = Sunday)."""

    weekday: int
    hour: int
    minute: int = 0

    def __post_init__(self) -> None:
        if not (0 <= self.weekday <= 6 and 0 <= self.hour <= 23 and 0 <= self.minute <= 59):
            raise ValueError("invalid weekly trigger")

    def describe(self) -> str:
        return f"weekly on day {self.weekday} at {self.hour:02d}:{self.minute:02d}"


Trigger = IntervalTrigger | DailyTrigger | WeeklyTrigger


@dataclass(frozen=True)
class ScheduledJobSpec:
    """One independently triggered job."""

    name: str
    trigger: Trigger
    requires_exclusive_lock: bool = False
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "trigger": self.trigger.describe(),
            "requires_exclusive_lock": self.requires_exclusive_lock,
            "description": self.description,
        }


def build_job_table(settings: Settings) -> tuple[ScheduledJobSpec, ...]:
    """Return the job table for ``settings``.

    Convergence and nightly maintenance both touch managed services, so they
    share the run lock; an overlap is serialised as a skip.
    """
    return (
        ScheduledJobSpec(
            name=JOB_CONVERGENCE,
            trigger=IntervalTrigger(settings.convergence_interval_seconds),
            requires_exclusive_lock=True,
            description="Pull desired state and converge",
        ),
        ScheduledJobSpec(
            name=JOB_NIGHTLY_MAINTENANCE,
            trigger=DailyTrigger(settings.maintenance_hour),
            requires_exclusive_lock=True,
            description="Clean up temporary files and reboot",
        ),
        ScheduledJobSpec(
            name=JOB_WEEKLY_DEEP_CLEAN,
            trigger=WeeklyTrigger(DEEP_CLEAN_WEEKDAY, DEEP_CLEAN_HOUR),
            description="Empty caches and run deep-clean commands",
        ),
        ScheduledJobSpec(
            name=JOB_DISK_CHECK,
            trigger=IntervalTrigger(settings.disk_check_interval_seconds),
            description="Warn when the primary volume is nearly full",
        ),
    )
