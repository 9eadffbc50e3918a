"""Registers scheduled jobs as launchd property lists.

Each job becomes its own launchd job that runs ``pullagent run <name>``; the
OS fires them independently and nothing in-process coordinates them.
"""

from __future__ import annotations

import os
import plistlib
import sys
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pullagent.errors import ConfigurationError
from pullagent.logging import get_logger
from pullagent.scheduler.jobs import DailyTrigger, IntervalTrigger, ScheduledJobSpec
from pullagent.utils import atomic_write_text, run_cmd

log = get_logger("pullagent.scheduler.launchd")

# Secrets must never end up in a world-readable plist
_SECRET_ENV_VARS = frozenset(
    {
        "PULLAGENT_DEPLOY_KEY",
        "PULLAGENT_VAULT_PASSWORD",
        "PULLAGENT_AUTO_LOGIN_PASSWORD",
    }
)


def job_environment(environ: Mapping[str, str]) -> dict[str, str]:
    """Environment passed to scheduled jobs: PATH plus non-secret overrides."""
    env = {"PATH": environ.get("PATH", "/usr/bin:/bin:/usr/sbin:/sbin")}
    for key, value in environ.items():
        if key.upper().startswith("PULLAGENT_") and key.upper() not in _SECRET_ENV_VARS:
            env[key] = value
    return env


class LaunchdScheduler:
    """Writes and loads one launchd job per ScheduledJobSpec."""

    def __init__(
        self,
        launchd_dir: Path,
        log_dir: Path,
        label_prefix: str = "com.pullagent",
        program: list[str] | None = None,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        self._launchd_dir = Path(launchd_dir)
        self._log_dir = Path(log_dir)
        self._label_prefix = label_prefix
        self._program = program or [sys.executable, "-m", "pullagent"]
        self._environment = job_environment(os.environ if environment is None else environment)

    def label(self, name: str) -> str:
        return f"{self._label_prefix}.{name}"

    def plist_path(self, name: str) -> Path:
        return self._launchd_dir / f"{self.label(name)}.plist"

    def render(self, spec: ScheduledJobSpec) -> dict[str, Any]:
        log_path = str(self._log_dir / f"{spec.name}.log")
        job: dict[str, Any] = {
            "Label": self.label(spec.name),
            "ProgramArguments": [*self._program, "run", spec.name],
            "StandardOutPath": log_path,
            "StandardErrorPath": log_path,
            "EnvironmentVariables": self._environment,
            "RunAtLoad": False,
        }
        trigger = spec.trigger
        if isinstance(trigger, IntervalTrigger):
            job["StartInterval"] = trigger.seconds
        elif isinstance(trigger, DailyTrigger):
            job["StartCalendarInterval"] = {"Hour": trigger.hour, "Minute": trigger.minute}
        else:
            job["StartCalendarInterval"] = {
                "Weekday": trigger.weekday,
                "Hour": trigger.hour,
                "Minute": trigger.minute,
            }
        return job

    def register(self, specs: Iterable[ScheduledJobSpec]) -> list[str]:
        """Install every job whose plist changed. Returns the changed job names.

        Raises:
            ConfigurationError: a plist could not be written or loaded.
        """
        changed: list[str] = []
        for spec in specs:
            path = self.plist_path(spec.name)
            content = plistlib.dumps(self.render(spec)).decode("utf-8")
            if path.exists() and path.read_text(encoding="utf-8") == content:
                log.debug("launchd_job_unchanged", job=spec.name)
                continue

            if path.exists():
                # launchd keeps the old definition until it is unloaded
                run_cmd(["launchctl", "unload", str(path)])
            try:
                atomic_write_text(path, content, mode=0o644)
            except OSError as exc:
                raise ConfigurationError(f"cannot write {path}: {exc}") from exc
            if run_cmd(["launchctl", "load", "-w", str(path)]) is None:
                raise ConfigurationError(f"launchctl could not load {path}")

            log.info("launchd_job_registered", job=spec.name, trigger=spec.trigger.describe())
            changed.append(spec.name)
        return changed

    def unregister(self, names: Iterable[str]) -> list[str]:
        """Unload and remove the named jobs. Returns the names that were removed."""
        removed: list[str] = []
        for name in names:
            path = self.plist_path(name)
            if not path.exists():
                continue
            run_cmd(["launchctl", "unload", "-w", str(path)])
            path.unlink(missing_ok=True)
            log.info("launchd_job_removed", job=name)
            removed.append(name)
        return removed
