"""Credential provisioning for pullagent.

This package provides:
- CredentialStore: owner-only persistence of the deploy key and vault password
- resolve_credential: precedence-based resolution of credential material
- encode_kcpassword / decode_kcpassword: the macOS auto-login obfuscation
"""

from pullagent.credentials.kcpassword import decode_kcpassword, encode_kcpassword
from pullagent.credentials.resolve import (
    CredentialKind,
    CredentialSources,
    resolve_credential,
    validate_credential,
)
from pullagent.credentials.store import CredentialStore

__all__ = [
    "CredentialKind",
    "CredentialSources",
    "CredentialStore",
    "decode_kcpassword",
    "encode_kcpassword",
    "resolve_credential",
    "validate_credential",
]
