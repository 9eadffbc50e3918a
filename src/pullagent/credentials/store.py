"""Owner-only persistence of the deploy key and vault password."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path

from pullagent.credentials.resolve import (
    CredentialKind,
    CredentialSources,
    resolve_credential,
    validate_credential,
)
from pullagent.errors import ConfigurationError
from pullagent.logging import get_logger
from pullagent.utils import atomic_write_text

log = get_logger("pullagent.credentials.store")

FILE_MODE = 0o600
DIR_MODE = 0o700


@dataclass(frozen=True)
class StoredCredential:
    """A credential as persisted on disk."""

    kind: CredentialKind
    path: Path
    value: str = field(repr=False)
    created: bool = False


class CredentialStore:
    """Stores credentials at fixed, permission-restricted paths.

    Nothing is cached: every ``load()`` reads the file again so a manual
    rotation takes effect on the next run.
    """

    def __init__(self, deploy_key_path: Path, vault_password_path: Path) -> None:
        self._paths = {
            CredentialKind.DEPLOY_KEY: Path(deploy_key_path),
            CredentialKind.VAULT_PASSWORD: Path(vault_password_path),
        }

    def path_for(self, kind: CredentialKind) -> Path:
        return self._paths[kind]

    def load(self, kind: CredentialKind) -> str:
        """Read and validate the stored credential.

        Raises:
            ConfigurationError: the credential is missing or malformed.
        """
        path = self.path_for(kind)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigurationError(f"{kind.value} not found at {path}") from exc
        except OSError as exc:
            raise ConfigurationError(f"{kind.value} at {path} is unreadable: {exc}") from exc

        self._restrict_mode(path)
        return validate_credential(kind, raw)

    def needs_provisioning(self, kind: CredentialKind) -> bool:
        """True when no valid credential is stored for ``kind``. Writes nothing."""
        path = self.path_for(kind)
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return True
        try:
            validate_credential(kind, raw)
        except ConfigurationError:
            return True
        return False

    def get_or_create(self, kind: CredentialKind, sources: CredentialSources) -> StoredCredential:
        """Return the stored credential, provisioning it from ``sources`` if needed.

        A record that exists but fails validation is deleted and provisioned
        again; a corrupt record is never returned.
        """
        path = self.path_for(kind)
        if path.exists():
            try:
                value = self.load(kind)
                log.debug("credential_present", kind=kind.value, path=str(path))
                return StoredCredential(kind=kind, path=path, value=value)
            except ConfigurationError as exc:
                log.warning("credential_invalid_reprovisioning", kind=kind.value, error=str(exc))
                self._remove(path)

        # Validation happens inside resolve_credential, before anything is written
        return self.store(kind, resolve_credential(kind, sources))

    def store(self, kind: CredentialKind, value: str) -> StoredCredential:
        """Persist an already validated ``value``, replacing any previous record."""
        path = self.path_for(kind)
        self._remove(path)
        self._write(path, value)
        log.info("credential_provisioned", kind=kind.value, path=str(path))
        return StoredCredential(kind=kind, path=path, value=value, created=True)

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            if path.exists():
                path.unlink()
        except OSError as exc:
            raise ConfigurationError(f"cannot replace credential at {path}: {exc}") from exc

    def _write(self, path: Path, value: str) -> None:
        try:
            path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            atomic_write_text(path, value if value.endswith("\n") else value + "\n", mode=FILE_MODE)
        except OSError as exc:
            raise ConfigurationError(f"cannot write credential to {path}: {exc}") from exc

    @staticmethod
    def _restrict_mode(path: Path) -> None:
        try:
            mode = stat.S_IMODE(path.stat().st_mode)
            if mode & 0o077:
                log.warning("credential_mode_too_open", path=str(path), mode=oct(mode))
                os.chmod(path, FILE_MODE)
        except OSError as exc:
            raise ConfigurationError(f"cannot restrict permissions on {path}: {exc}") from exc
