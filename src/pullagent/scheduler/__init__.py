"""Scheduling of the convergence run and maintenance jobs."""

from pullagent.scheduler.jobs import (
    DailyTrigger,
    IntervalTrigger,
    ScheduledJobSpec,
    Trigger,
    WeeklyTrigger,
    build_job_table,
)
from pullagent.scheduler.launchd import LaunchdScheduler

__all__ = [
    "DailyTrigger",
    "IntervalTrigger",
    "LaunchdScheduler",
    "ScheduledJobSpec",
    "Trigger",
    "WeeklyTrigger",
    "build_job_table",
]
