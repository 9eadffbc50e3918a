"""Convergence agent: one scheduled pull/apply run.

Lifecycle:
1. Acquire the run lock (held by someone else → ``skipped``, nothing touched)
2. FETCHING: bring the checkout to the target ref and load the document
3. DECRYPTING_SECRETS: decrypt the secrets bundle in memory and render it
4. APPLYING: reconcile resources, delta only
5. RECORDING: replace the status file; failures keep the last success
6. Release the lock and return to IDLE

Any failure moves to FAILED and still passes through RECORDING, so every
completed attempt leaves a trace an operator can inspect.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pullagent.agent.lock import RunLock
from pullagent.agent.source import GitSource
from pullagent.agent.status import OutcomeStatus, RunRecord, StatusStore
from pullagent.errors import ApplyError, ConfigurationError, PullAgentError
from pullagent.logging import get_logger
from pullagent.reconcile import DesiredStateDocument, ReconciliationEngine
from pullagent.utils import now_iso
from pullagent.vault import EncryptedSecretsBundle, SecretsProvider

log = get_logger("pullagent.agent.convergence")


class RunState(Enum):
    """States of the convergence state machine."""

    IDLE = "idle"
    FETCHING = "fetching"
    DECRYPTING_SECRETS = "decrypting_secrets"
    APPLYING = "applying"
    RECORDING = "recording"
    FAILED = "failed"


@dataclass
class RunOutcome:
    """Result of one convergence invocation."""

    status: OutcomeStatus
    revision: str | None = None
    changed_count: int = 0
    error: str | None = None
    error_kind: str | None = None
    steps_completed: list[str] = field(default_factory=list)
    report: dict[str, Any] | None = None
    started_at: str = field(default_factory=now_iso)
    completed_at: str | None = None
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "revision": self.revision,
            "changed_count": self.changed_count,
            "error": self.error,
            "error_kind": self.error_kind,
            "steps_completed": self.steps_completed,
            "report": self.report,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
        }


class ConvergenceAgent:
    """Orchestrates fetch → decrypt → apply → record under the run lock."""

    def __init__(
        self,
        source: GitSource,
        secrets: SecretsProvider,
        engine: ReconciliationEngine,
        status: StatusStore,
        lock: RunLock,
        ref: str,
        tags: list[str] | None = None,
    ) -> None:
        self._source = source
        self._secrets = secrets
        self._engine = engine
        self._status = status
        self._lock = lock
        self._ref = ref
        self._tags = tags
        self._state = RunState.IDLE
        self._history: list[RunState] = []

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def history(self) -> list[RunState]:
        """States visited during the most recent run, in order."""
        return list(self._history)

    def run(self) -> RunOutcome:
        """Perform one convergence run. Safe to call on every schedule tick."""
        self._history = []
        try:
            acquired = self._lock.acquire()
        except OSError as exc:
            return self._lock_failed(exc)
        if not acquired:
            log.info("convergence_skipped", reason="lock_held", lock=str(self._lock.path))
            return RunOutcome(status=OutcomeStatus.SKIPPED, completed_at=now_iso())

        try:
            return self._do_run()
        finally:
            self._lock.release()
            self._transition(RunState.IDLE)

    def _do_run(self) -> RunOutcome:
        start = time.monotonic()
        outcome = RunOutcome(status=OutcomeStatus.FAILED)

        try:
            self._transition(RunState.FETCHING)
            document = self._source.fetch(self._ref)
            outcome.revision = document.revision
            outcome.steps_completed.append("fetch")

            self._transition(RunState.DECRYPTING_SECRETS)
            document = self._decrypt(document)
            outcome.steps_completed.append("decrypt_secrets")

            self._transition(RunState.APPLYING)
            report = self._engine.apply(document, tags=self._tags)
            outcome.changed_count = report.changed_count
            outcome.report = report.to_dict()
            outcome.steps_completed.append("apply")
            if not report.ok:
                raise ApplyError(
                    f"{len(report.failed)} resource(s) failed, "
                    f"{len(report.skipped)} skipped: {', '.join(report.failed)}"
                )

            outcome.status = OutcomeStatus.SUCCESS

        except PullAgentError as exc:
            self._transition(RunState.FAILED)
            outcome.error = str(exc)
            outcome.error_kind = exc.kind
            log.error(
                "convergence_run_failed",
                kind=exc.kind,
                error=str(exc),
                revision=outcome.revision,
                steps_completed=outcome.steps_completed,
            )
        except Exception as exc:
            self._transition(RunState.FAILED)
            outcome.error = f"Unexpected error: {exc}"
            outcome.error_kind = "unexpected"
            log.exception("convergence_run_crashed", revision=outcome.revision)
        finally:
            outcome.duration_seconds = round(time.monotonic() - start, 2)
            outcome.completed_at = now_iso()

        self._transition(RunState.RECORDING)
        self._record(outcome)
        if outcome.status is OutcomeStatus.SUCCESS:
            log.info(
                "convergence_run_succeeded",
                revision=outcome.revision,
                changed=outcome.changed_count,
                duration_seconds=outcome.duration_seconds,
            )
        return outcome

    def _lock_failed(self, exc: OSError) -> RunOutcome:
        """The lock file itself is unusable: record a failed attempt, touch nothing else."""
        error = ConfigurationError(f"cannot take run lock at {self._lock.path}: {exc}")
        outcome = RunOutcome(
            status=OutcomeStatus.FAILED,
            error=str(error),
            error_kind=error.kind,
            completed_at=now_iso(),
        )
        log.error("convergence_lock_failed", path=str(self._lock.path), error=str(exc))
        self._transition(RunState.FAILED)
        self._transition(RunState.RECORDING)
        self._record(outcome)
        self._transition(RunState.IDLE)
        return outcome

    def _decrypt(self, document: DesiredStateDocument) -> DesiredStateDocument:
        bundle_path = document.bundle_path(self._source.checkout_dir)
        if bundle_path is None:
            return document.render({})
        secrets = self._secrets.decrypt(EncryptedSecretsBundle.read(bundle_path))
        try:
            return document.render(secrets)
        finally:
            secrets.clear()

    def _record(self, outcome: RunOutcome) -> None:
        record = RunRecord(
            revision=outcome.revision,
            timestamp=outcome.completed_at or now_iso(),
            status=outcome.status,
            changed_count=outcome.changed_count,
            error=outcome.error,
        )
        try:
            if outcome.status is OutcomeStatus.SUCCESS:
                self._status.record_success(record)
            else:
                self._status.record_failure(record)
        except OSError:
            log.exception("run_record_write_failed", path=str(self._status.path))

    def _transition(self, state: RunState) -> None:
        self._state = state
        self._history.append(state)
