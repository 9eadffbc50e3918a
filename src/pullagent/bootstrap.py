"""One-shot machine bootstrap.

Steps, in order:
1. check_user: refuse to run as root unless explicitly allowed
2. configure_auto_login: kcpassword + login-window preference
3. ensure_prerequisites: required tools on PATH (Homebrew install if missing)
4. prepare_directories: checkout, credential, state and log directories owned
   by the login user (created through sudo where the parent is not writable)
5. provision_credentials: deploy key, vault password, ssh host block, then a
   reachability check of the repository
6. register_schedule: launchd plists for every job
7. initial_convergence: one synchronous convergence run

Credentials are read and validated right after check_user, before any step
changes the machine, so a malformed key aborts with nothing written.

Every step checks its target condition first, so re-running bootstrap on a
provisioned machine changes nothing.
"""

from __future__ import annotations

import getpass
import os
import shutil
import sys
import tempfile
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pullagent.agent import ConvergenceAgent, OutcomeStatus, RunOutcome
from pullagent.agent.source import deploy_key_env
from pullagent.config import Settings
from pullagent.constants import GIT_TIMEOUT
from pullagent.credentials import (
    CredentialKind,
    CredentialSources,
    CredentialStore,
    encode_kcpassword,
)
from pullagent.credentials.resolve import interactive_prompt, resolve_credential
from pullagent.credentials.store import StoredCredential
from pullagent.errors import (
    ApplyError,
    ConfigurationError,
    DocumentError,
    FetchError,
    PullAgentError,
    SecretsError,
)
from pullagent.logging import get_logger
from pullagent.scheduler import LaunchdScheduler, build_job_table
from pullagent.utils import now_iso, run_cmd

log = get_logger("pullagent.bootstrap")

LOGIN_WINDOW_PLIST = "/Library/Preferences/com.apple.loginwindow"

_ERRORS_BY_KIND: dict[str, type[PullAgentError]] = {
    cls.kind: cls
    for cls in (ConfigurationError, FetchError, DocumentError, SecretsError, ApplyError)
}


class StepStatus(Enum):
    """How a bootstrap step left its target."""

    OK = "ok"
    CHANGED = "changed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    name: str
    status: StepStatus
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "detail": self.detail}


@dataclass
class BootstrapReport:
    """Outcome of a bootstrap run."""

    steps: list[StepResult] = field(default_factory=list)
    convergence: RunOutcome | None = None
    started_at: str = field(default_factory=now_iso)
    completed_at: str | None = None

    @property
    def changed(self) -> list[str]:
        return [s.name for s in self.steps if s.status is StepStatus.CHANGED]

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "convergence": self.convergence.to_dict() if self.convergence else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class Bootstrapper:
    """Provisions a fresh machine so scheduled convergence can take over."""

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        scheduler: LaunchdScheduler,
        agent_factory: Callable[[], ConvergenceAgent],
        prompt_factory: Callable[[CredentialKind], Callable[[], str] | None] = interactive_prompt,
        which: Callable[[str], str | None] = shutil.which,
        is_root: Callable[[], bool] = lambda: os.geteuid() == 0,
        platform: str = sys.platform,
        can_write: Callable[[Path], bool] = lambda path: os.access(path, os.W_OK),
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._scheduler = scheduler
        self._agent_factory = agent_factory
        self._prompt_factory = prompt_factory
        self._which = which
        self._is_root = is_root
        self._platform = platform
        self._can_write = can_write
        self._resolved: dict[CredentialKind, str] = {}

    def run(self) -> BootstrapReport:
        """Run every step in order.

        Raises:
            ConfigurationError: a precondition or credential is invalid; no
                later step has run.
            PullAgentError: the initial convergence run failed.
        """
        report = BootstrapReport()
        self._log_step(report, self.check_user())
        self._resolve_credentials()

        steps: list[Callable[[], StepResult]] = [
            self.configure_auto_login,
            self.ensure_prerequisites,
            self.prepare_directories,
            self.provision_credentials,
            self.register_schedule,
            lambda: self.initial_convergence(report),
        ]
        for step in steps:
            self._log_step(report, step())

        report.completed_at = now_iso()
        log.info("bootstrap_complete", changed=report.changed)
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def check_user(self) -> StepResult:
        if self._is_root() and not self._settings.allow_root:
            raise ConfigurationError(
                "bootstrap must run as the login user, not root "
                "(set PULLAGENT_ALLOW_ROOT=true to override)"
            )
        return StepResult("check_user", StepStatus.OK, getpass.getuser())

    def configure_auto_login(self) -> StepResult:
        name = "configure_auto_login"
        if self._platform != "darwin":
            return StepResult(name, StepStatus.SKIPPED, "not macOS")

        filevault = run_cmd(["fdesetup", "status"]) or ""
        if "FileVault is On" in filevault:
            log.warning("auto_login_unavailable", reason="filevault_enabled")
            return StepResult(name, StepStatus.SKIPPED, "FileVault is on")

        user = getpass.getuser()
        current = (run_cmd(["defaults", "read", LOGIN_WINDOW_PLIST, "autoLoginUser"]) or "").strip()
        if current:
            return StepResult(name, StepStatus.OK, f"auto-login already set for {current}")

        if self._settings.auto_login_password is None:
            log.warning(
                "auto_login_not_configured",
                hint="System Settings > Users & Groups > Automatically log in as",
                user=user,
            )
            return StepResult(name, StepStatus.SKIPPED, "no auto-login password supplied")

        data = encode_kcpassword(self._settings.auto_login_password.get_secret_value())
        self._install_private_file(self._settings.kcpassword_path, data)
        result = run_cmd(
            ["sudo", "defaults", "write", LOGIN_WINDOW_PLIST, "autoLoginUser", user]
        )
        if result is None:
            raise ConfigurationError("failed to set the login-window autoLoginUser preference")
        return StepResult(name, StepStatus.CHANGED, f"auto-login enabled for {user}")

    def ensure_prerequisites(self) -> StepResult:
        name = "ensure_prerequisites"
        notes: list[str] = []
        if self._platform == "darwin" and run_cmd(["xcode-select", "-p"]) is None:
            log.warning("xcode_tools_missing", hint="run: xcode-select --install")
            notes.append("Xcode command line tools not found")

        missing = [tool for tool in self._settings.required_tools if not self._which(tool)]
        if not missing:
            return StepResult(name, StepStatus.OK, "; ".join(["all tools present", *notes]))

        brew = self._which("brew")
        if brew is None:
            raise ConfigurationError(
                f"missing required tools: {', '.join(missing)} (Homebrew not found to install them)"
            )

        log.info("installing_prerequisites", tools=missing)
        if run_cmd([brew, "install", *missing], timeout=1800) is None:
            raise ConfigurationError(f"brew install failed for: {', '.join(missing)}")

        still_missing = [tool for tool in missing if not self._which(tool)]
        if still_missing:
            raise ConfigurationError(
                f"tools still missing after install: {', '.join(still_missing)}"
            )
        return StepResult(
            name, StepStatus.CHANGED, "; ".join([f"installed {', '.join(missing)}", *notes])
        )

    def prepare_directories(self) -> StepResult:
        """Make every agent directory exist and be writable by the login user."""
        name = "prepare_directories"
        settings = self._settings
        wanted = [
            (settings.checkout_dir, 0o755),
            (settings.vault_password_path.parent, 0o700),
            (settings.state_dir, 0o755),
            (settings.log_dir, 0o755),
        ]
        prepared: list[str] = []
        for path, mode in wanted:
            if path.is_dir() and self._can_write(path):
                continue
            if not path.exists() and self._can_write(_nearest_existing(path)):
                try:
                    path.mkdir(mode=mode, parents=True)
                except OSError as exc:
                    raise ConfigurationError(f"cannot create {path}: {exc}") from exc
            else:
                self._sudo_install_dir(path, mode)
            prepared.append(str(path))

        if prepared:
            return StepResult(name, StepStatus.CHANGED, ", ".join(prepared))
        return StepResult(name, StepStatus.OK, "directories present")

    def provision_credentials(self) -> StepResult:
        name = "provision_credentials"
        created: list[str] = []
        key_path: Path | None = None

        if self._settings.uses_ssh:
            deploy_key = self._provision(CredentialKind.DEPLOY_KEY)
            key_path = deploy_key.path
            if deploy_key.created:
                created.append(deploy_key.kind.value)
            if self._ensure_ssh_host_block(deploy_key.path):
                created.append("ssh_config")

        vault_password = self._provision(CredentialKind.VAULT_PASSWORD)
        if vault_password.created:
            created.append(vault_password.kind.value)

        detail = f"provisioned {', '.join(created)}" if created else "credentials already present"
        if not self._repository_reachable(key_path):
            detail += "; repository not reachable"
        return StepResult(name, StepStatus.CHANGED if created else StepStatus.OK, detail)

    def register_schedule(self) -> StepResult:
        changed = self._scheduler.register(build_job_table(self._settings))
        if changed:
            return StepResult("register_schedule", StepStatus.CHANGED, ", ".join(changed))
        return StepResult("register_schedule", StepStatus.OK, "schedule unchanged")

    def initial_convergence(self, report: BootstrapReport) -> StepResult:
        outcome = self._agent_factory().run()
        report.convergence = outcome
        if outcome.status is OutcomeStatus.FAILED:
            error_cls = _ERRORS_BY_KIND.get(outcome.error_kind or "", PullAgentError)
            raise error_cls(f"initial convergence failed: {outcome.error}")
        if outcome.status is OutcomeStatus.SKIPPED:
            return StepResult(
                "initial_convergence", StepStatus.SKIPPED, "another run holds the lock"
            )
        return StepResult(
            "initial_convergence",
            StepStatus.CHANGED if outcome.changed_count else StepStatus.OK,
            f"revision {outcome.revision}, {outcome.changed_count} changed",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _log_step(report: BootstrapReport, result: StepResult) -> None:
        report.steps.append(result)
        log.info(
            "bootstrap_step", step=result.name, status=result.status.value, detail=result.detail
        )

    def _resolve_credentials(self) -> None:
        """Read and validate every credential that is not stored yet.

        Raises:
            ConfigurationError: a credential is missing or malformed.
        """
        kinds = [CredentialKind.VAULT_PASSWORD]
        if self._settings.uses_ssh:
            kinds.insert(0, CredentialKind.DEPLOY_KEY)
        for kind in kinds:
            if self._credentials.needs_provisioning(kind):
                self._resolved[kind] = resolve_credential(kind, self._sources(kind))

    def _sources(self, kind: CredentialKind) -> CredentialSources:
        settings = self._settings
        if kind is CredentialKind.DEPLOY_KEY:
            inline, file_path = _secret(settings.deploy_key), settings.deploy_key_file
        else:
            inline, file_path = _secret(settings.vault_password), settings.vault_password_file
        return CredentialSources(
            inline=inline, file_path=file_path, prompt=self._prompt_factory(kind)
        )

    def _provision(self, kind: CredentialKind) -> StoredCredential:
        value = self._resolved.pop(kind, None)
        if value is not None:
            return self._credentials.store(kind, value)
        return self._credentials.get_or_create(kind, self._sources(kind))

    def _repository_reachable(self, key_path: Path | None) -> bool:
        """List the remote once so an unauthorised key shows up during bootstrap."""
        env = deploy_key_env(key_path) if key_path else {"GIT_TERMINAL_PROMPT": "0"}
        out = run_cmd(
            ["git", "ls-remote", self._settings.repo_url, "HEAD"], env=env, timeout=GIT_TIMEOUT
        )
        if out is None:
            log.warning(
                "repository_unreachable",
                repo_url=self._settings.repo_url,
                hint="check that the deploy key is authorised on the repository",
            )
            return False
        return True

    @staticmethod
    def _sudo_install_dir(path: Path, mode: int) -> None:
        user = getpass.getuser()
        log.info("creating_directory_with_sudo", path=str(path), owner=user)
        cmd = ["sudo", "install", "-d", "-o", user, "-m", format(mode, "o"), str(path)]
        if run_cmd(cmd) is None:
            raise ConfigurationError(f"cannot create {path} for {user} (sudo install failed)")

    def _ensure_ssh_host_block(self, key_path: Path) -> bool:
        """Pin the deploy key for the repository host. Returns True if written."""
        host = self._settings.repo_host
        if host is None:
            return False

        config_path = self._settings.ssh_config_path
        try:
            config_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            os.chmod(config_path.parent, 0o700)

            existing = config_path.read_text(encoding="utf-8") if config_path.exists() else ""
            if str(key_path) in existing:
                return False

            block = (
                f"\n# Deploy key for the desired-state repository\n"
                f"Host {host}\n"
                f"    IdentityFile {key_path}\n"
                f"    IdentitiesOnly yes\n"
            )
            with config_path.open("a", encoding="utf-8") as fh:
                fh.write(block)
            os.chmod(config_path, 0o600)
        except OSError as exc:
            raise ConfigurationError(f"cannot update ssh config {config_path}: {exc}") from exc
        log.info("ssh_config_updated", path=str(config_path), host=host)
        return True

    @staticmethod
    def _install_private_file(dest: Path, data: bytes) -> None:
        """Write ``data`` to ``dest`` with mode 0600, via sudo if needed."""
        if os.access(dest.parent, os.W_OK):
            try:
                fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.chmod(dest, 0o600)
            except OSError as exc:
                raise ConfigurationError(f"cannot write {dest}: {exc}") from exc
            return

        with tempfile.TemporaryDirectory() as tmp:
            staged = Path(tmp) / dest.name
            staged.write_bytes(data)
            staged.chmod(0o600)
            if run_cmd(["sudo", "install", "-m", "600", str(staged), str(dest)]) is None:
                raise ConfigurationError(f"failed to install {dest}")


def _nearest_existing(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path(path.anchor or ".")


def _secret(value: Any) -> str | None:
    return value.get_secret_value() if value is not None else None
