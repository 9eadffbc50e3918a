"""In-memory decryption of the desired-state secrets bundle."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from pullagent.credentials import CredentialKind, CredentialStore
from pullagent.errors import ConfigurationError, SecretsError
from pullagent.logging import get_logger
from pullagent.vault.format import decrypt_vault

log = get_logger("pullagent.vault.provider")


@dataclass(frozen=True)
class EncryptedSecretsBundle:
    """Ciphertext of a secrets bundle as shipped in the desired-state source."""

    path: Path
    ciphertext: bytes = field(repr=False)

    @classmethod
    def read(cls, path: Path) -> EncryptedSecretsBundle:
        try:
            return cls(path=path, ciphertext=path.read_bytes())
        except OSError as exc:
            raise SecretsError(f"secrets bundle {path} is unreadable: {exc}") from exc


class SecretsProvider:
    """Decrypts bundles with the vault password read fresh for each call.

    The plaintext only ever lives in the returned mapping; nothing is written
    to disk and the password is not retained on the instance.
    """

    def __init__(self, credentials: CredentialStore) -> None:
        self._credentials = credentials

    def decrypt(self, bundle: EncryptedSecretsBundle) -> dict[str, str]:
        """Return the bundle's secrets as a name -> value mapping.

        Raises:
            SecretsError: missing password, wrong password, corrupted
                ciphertext, or a plaintext that is not a flat mapping.
        """
        try:
            password = self._credentials.load(CredentialKind.VAULT_PASSWORD)
        except ConfigurationError as exc:
            raise SecretsError(f"vault password unavailable: {exc}") from exc

        plaintext = decrypt_vault(bundle.ciphertext, password)

        try:
            data = yaml.safe_load(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, yaml.YAMLError) as exc:
            raise SecretsError(f"decrypted bundle {bundle.path} is not valid YAML") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise SecretsError(f"decrypted bundle {bundle.path} must be a mapping")

        secrets: dict[str, str] = {}
        for key, value in data.items():
            if isinstance(value, (dict, list)):
                raise SecretsError(f"secret {key!r} must be a scalar value")
            secrets[str(key)] = "" if value is None else str(value)

        log.info("secrets_decrypted", bundle=str(bundle.path), count=len(secrets))
        return secrets
