"""Command-line entry points.

    pullagent bootstrap       one-shot machine provisioning
    pullagent run <job>       one scheduled job invocation (launchd calls this)
    pullagent status          print the last-run record and lock holder
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from pydantic import ValidationError

from pullagent import __version__
from pullagent.agent import OutcomeStatus, RunLock
from pullagent.bootstrap import Bootstrapper
from pullagent.config import Settings, get_settings
from pullagent.constants import LOCK_FILE
from pullagent.errors import ConfigurationError, PullAgentError
from pullagent.logging import get_logger, setup_logging
from pullagent.runner import (
    JOB_HANDLERS,
    build_convergence_agent,
    build_credential_store,
    build_git_source,
    build_scheduler,
    build_status_store,
    run_job,
)

log = get_logger("pullagent.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pullagent",
        description="Self-updating pull-based convergence agent for headless machines",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("bootstrap", help="Provision credentials, schedule, and converge once")

    run = sub.add_parser("run", help="Run one scheduled job")
    run.add_argument("job", choices=sorted(JOB_HANDLERS), help="Job name")

    sub.add_parser("status", help="Print the last-run record (does not take the lock)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as exc:
        return _fail(ConfigurationError(f"invalid settings: {exc}"))

    if args.command == "bootstrap":
        return _bootstrap(settings)
    if args.command == "run":
        return _run(settings, args.job)
    return _status(settings)


def bootstrap_main() -> int:
    return main(["bootstrap"])


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _bootstrap(settings: Settings) -> int:
    setup_logging("bootstrap")
    bootstrapper = Bootstrapper(
        settings=settings,
        credentials=build_credential_store(settings),
        scheduler=build_scheduler(settings),
        agent_factory=lambda: build_convergence_agent(settings),
    )
    try:
        report = bootstrapper.run()
    except PullAgentError as exc:
        log.error("bootstrap_failed", kind=exc.kind, error=str(exc))
        return _fail(exc)
    except OSError as exc:
        log.exception("bootstrap_failed", kind="configuration")
        return _fail(ConfigurationError(str(exc)))

    _print(report.to_dict())
    return 0


def _run(settings: Settings, job: str) -> int:
    setup_logging(job)
    try:
        status, details = run_job(job, settings)
    except PullAgentError as exc:
        log.error("job_failed", job=job, kind=exc.kind, error=str(exc))
        return _fail(exc)
    except OSError as exc:
        log.exception("job_failed", job=job, kind="configuration")
        return _fail(ConfigurationError(str(exc)))

    _print(details)
    return 1 if status is OutcomeStatus.FAILED else 0


def _status(settings: Settings) -> int:
    status = build_status_store(settings).read()
    lock_path = settings.state_dir / LOCK_FILE
    lock = RunLock.read_path(lock_path) if lock_path.exists() else None
    source = build_git_source(settings, build_credential_store(settings))
    _print(
        {
            **status.to_dict(),
            "checkout_revision": source.current_revision(),
            "lock": lock.to_dict() if lock else None,
        }
    )
    return 0


def _print(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, default=str))


def _fail(exc: PullAgentError) -> int:
    print(json.dumps({"error": exc.kind, "reason": str(exc)}), file=sys.stderr)
    return 1
