"""Git-backed desired-state source.

The network fetch always happens before the working tree is touched, so an
unauthenticated or interrupted fetch leaves the previous checkout (the last
known good state) exactly as it was.
"""

from __future__ import annotations

import shlex
from pathlib import Path

from pullagent.constants import GIT_TIMEOUT
from pullagent.credentials import CredentialKind, CredentialStore
from pullagent.errors import ConfigurationError, DocumentError, FetchError
from pullagent.logging import get_logger
from pullagent.reconcile import DesiredStateDocument
from pullagent.utils import run_cmd, timed_operation

log = get_logger("pullagent.agent.source")


def deploy_key_env(key_path: Path) -> dict[str, str]:
    """Environment that makes git authenticate with exactly ``key_path``."""
    ssh_command = " ".join(
        [
            "ssh",
            "-i",
            shlex.quote(str(key_path)),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
        ]
    )
    return {"GIT_SSH_COMMAND": ssh_command, "GIT_TERMINAL_PROMPT": "0"}


class GitSource:
    """Fetches a DesiredStateDocument at a branch or commit reference."""

    def __init__(
        self,
        repo_url: str,
        checkout_dir: Path,
        credentials: CredentialStore,
        document_file: str = "site.yml",
        use_deploy_key: bool = True,
    ) -> None:
        self._repo_url = repo_url
        self._checkout_dir = Path(checkout_dir)
        self._credentials = credentials
        self._document_file = document_file
        self._use_deploy_key = use_deploy_key

    @property
    def checkout_dir(self) -> Path:
        return self._checkout_dir

    def fetch(self, ref: str) -> DesiredStateDocument:
        """Bring the checkout to ``ref`` and load its document.

        Raises:
            FetchError: missing credential, network/auth failure, or checkout
                failure.
            DocumentError: the document at ``ref`` is missing or invalid; the
                worktree stays at its previous revision.
        """
        env = self._git_env()
        self._ensure_repository(env)
        self._ensure_remote(env)
        with timed_operation("git_fetch", log=log, ref=ref):
            self._git("fetch", "--force", "--prune", "origin", ref, env=env, what=f"fetch {ref}")

        revision = self._git("rev-parse", "FETCH_HEAD", env=env, what="rev-parse").strip()
        if not revision:
            raise FetchError("could not resolve fetched revision")

        # Read from the object store; the worktree only moves to a valid document
        text = run_cmd(
            ["git", "show", f"{revision}:{self._document_file}"],
            cwd=self._checkout_dir,
            env=env,
            timeout=GIT_TIMEOUT,
        )
        if text is None:
            raise DocumentError(f"{self._document_file} not found at {revision}")
        document = DesiredStateDocument.from_yaml(text, revision)

        self._git("checkout", "--force", "--detach", revision, env=env, what="checkout")
        self._git("clean", "-ffdq", env=env, what="clean worktree")

        log.info("desired_state_fetched", ref=ref, revision=revision)
        return document

    def current_revision(self) -> str | None:
        if not (self._checkout_dir / ".git").exists():
            return None
        out = run_cmd(["git", "rev-parse", "HEAD"], cwd=self._checkout_dir)
        return out.strip() if out else None

    def _git_env(self) -> dict[str, str]:
        if not self._use_deploy_key:
            return {"GIT_TERMINAL_PROMPT": "0"}
        # Validates the stored key on every run; never cached
        try:
            self._credentials.load(CredentialKind.DEPLOY_KEY)
        except ConfigurationError as exc:
            raise FetchError(f"deploy credential unavailable: {exc}") from exc

        return deploy_key_env(self._credentials.path_for(CredentialKind.DEPLOY_KEY))

    def _ensure_repository(self, env: dict[str, str]) -> None:
        if (self._checkout_dir / ".git").exists():
            return
        log.info("initialising_checkout", path=str(self._checkout_dir))
        try:
            self._checkout_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FetchError(f"cannot create checkout {self._checkout_dir}: {exc}") from exc
        self._git("init", "--quiet", env=env, what="init")

    def _ensure_remote(self, env: dict[str, str]) -> None:
        has_origin = run_cmd(["git", "remote", "get-url", "origin"], cwd=self._checkout_dir)
        verb = "set-url" if has_origin is not None else "add"
        self._git("remote", verb, "origin", self._repo_url, env=env, what=f"remote {verb}")

    def _git(self, *args: str, env: dict[str, str], what: str) -> str:
        out = run_cmd(["git", *args], cwd=self._checkout_dir, env=env, timeout=GIT_TIMEOUT)
        if out is None:
            raise FetchError(f"git {what} failed")
        return out
