"""Secrets bundle decryption.

The bundle uses the Ansible Vault AES256 format so operators can keep
editing it with ``ansible-vault`` while machines decrypt it in memory.
"""

from pullagent.vault.format import decrypt_vault, encrypt_vault, is_vault_payload
from pullagent.vault.provider import EncryptedSecretsBundle, SecretsProvider

__all__ = [
    "EncryptedSecretsBundle",
    "SecretsProvider",
    "decrypt_vault",
    "encrypt_vault",
    "is_vault_payload",
]
