"""Wiring of settings into components, and dispatch of scheduled jobs.

Each scheduled trigger starts a fresh process that calls ``run_job``; the
components are built per invocation so credentials and settings are always
read fresh.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import psutil

from pullagent.agent import ConvergenceAgent, GitSource, OutcomeStatus, RunLock, StatusStore
from pullagent.config import Settings
from pullagent.constants import (
    DISK_WARNING_LOG_FILE,
    JOB_CONVERGENCE,
    JOB_DISK_CHECK,
    JOB_NIGHTLY_MAINTENANCE,
    JOB_WEEKLY_DEEP_CLEAN,
    LOCK_FILE,
    LOCK_POLL_SECONDS,
    REBOOT_MARKER_FILE,
    RUN_ERROR_LOG_FILE,
    RUN_RECORD_FILE,
)
from pullagent.credentials import CredentialStore
from pullagent.errors import ConfigurationError
from pullagent.logging import get_logger
from pullagent.maintenance import DiskMonitor, MaintenanceResult, MaintenanceRunner
from pullagent.reconcile import ReconciliationEngine
from pullagent.scheduler import LaunchdScheduler
from pullagent.vault import SecretsProvider

log = get_logger("pullagent.runner")


def build_credential_store(settings: Settings) -> CredentialStore:
    return CredentialStore(
        deploy_key_path=settings.deploy_key_path,
        vault_password_path=settings.vault_password_path,
    )


def build_status_store(settings: Settings) -> StatusStore:
    return StatusStore(
        path=settings.state_dir / RUN_RECORD_FILE,
        error_log_path=settings.state_dir / RUN_ERROR_LOG_FILE,
    )


def build_run_lock(settings: Settings, job: str) -> RunLock:
    return RunLock(
        path=settings.state_dir / LOCK_FILE,
        stale_seconds=settings.lock_stale_seconds,
        job=job,
        boot_time=psutil.boot_time,
    )


def build_git_source(settings: Settings, credentials: CredentialStore) -> GitSource:
    return GitSource(
        repo_url=settings.repo_url,
        checkout_dir=settings.checkout_dir,
        credentials=credentials,
        document_file=settings.document_file,
        use_deploy_key=settings.uses_ssh,
    )


def build_convergence_agent(settings: Settings) -> ConvergenceAgent:
    credentials = build_credential_store(settings)
    return ConvergenceAgent(
        source=build_git_source(settings, credentials),
        secrets=SecretsProvider(credentials),
        engine=ReconciliationEngine(),
        status=build_status_store(settings),
        lock=build_run_lock(settings, JOB_CONVERGENCE),
        ref=settings.repo_branch,
    )


def build_maintenance_runner(settings: Settings) -> MaintenanceRunner:
    return MaintenanceRunner(
        reboot_marker_path=settings.state_dir / REBOOT_MARKER_FILE,
        cleanup_paths=settings.cleanup_paths,
        cleanup_max_age_days=settings.cleanup_max_age_days,
        deep_clean_paths=settings.deep_clean_paths,
        deep_clean_commands=settings.deep_clean_commands,
        reboot_command=settings.reboot_command,
        lock_wait_seconds=settings.lock_stale_seconds,
        lock_poll_seconds=LOCK_POLL_SECONDS,
    )


def build_disk_monitor(settings: Settings) -> DiskMonitor:
    return DiskMonitor(
        path=settings.disk_path,
        threshold_percent=settings.disk_threshold_percent,
        warning_log_path=settings.log_dir / DISK_WARNING_LOG_FILE,
    )


def build_scheduler(settings: Settings) -> LaunchdScheduler:
    return LaunchdScheduler(
        launchd_dir=settings.launchd_dir,
        log_dir=settings.log_dir,
        label_prefix=settings.launchd_label_prefix,
    )


# ---------------------------------------------------------------------------
# Job dispatch
# ---------------------------------------------------------------------------


def _run_convergence(settings: Settings) -> tuple[OutcomeStatus, dict[str, Any]]:
    outcome = build_convergence_agent(settings).run()
    return outcome.status, outcome.to_dict()


def _run_nightly(settings: Settings) -> tuple[OutcomeStatus, dict[str, Any]]:
    runner = build_maintenance_runner(settings)
    result = runner.nightly_maintenance(build_run_lock(settings, JOB_NIGHTLY_MAINTENANCE))
    return result.status, result.to_dict()


def _run_deep_clean(settings: Settings) -> tuple[OutcomeStatus, dict[str, Any]]:
    result = build_maintenance_runner(settings).weekly_deep_clean()
    return result.status, result.to_dict()


def _run_disk_check(settings: Settings) -> tuple[OutcomeStatus, dict[str, Any]]:
    try:
        sample = build_disk_monitor(settings).check()
    except OSError as exc:
        log.error("disk_check_failed", path=str(settings.disk_path), error=str(exc))
        result = MaintenanceResult(job=JOB_DISK_CHECK, status=OutcomeStatus.FAILED, error=str(exc))
        return result.status, result.to_dict()
    result = MaintenanceResult(
        job=JOB_DISK_CHECK, status=OutcomeStatus.SUCCESS, details=sample.to_dict()
    )
    return result.status, result.to_dict()


JOB_HANDLERS: dict[str, Callable[[Settings], tuple[OutcomeStatus, dict[str, Any]]]] = {
    JOB_CONVERGENCE: _run_convergence,
    JOB_NIGHTLY_MAINTENANCE: _run_nightly,
    JOB_WEEKLY_DEEP_CLEAN: _run_deep_clean,
    JOB_DISK_CHECK: _run_disk_check,
}


def run_job(name: str, settings: Settings) -> tuple[OutcomeStatus, dict[str, Any]]:
    """Run the scheduled job ``name`` once and return its status and details.

    Raises:
        ConfigurationError: ``name`` is not a known job.
    """
    handler = JOB_HANDLERS.get(name)
    if handler is None:
        raise ConfigurationError(f"unknown job {name!r}; known jobs: {', '.join(JOB_HANDLERS)}")
    log.info("job_started", job=name)
    status, details = handler(settings)
    log.info("job_finished", job=name, status=status.value)
    return status, details
