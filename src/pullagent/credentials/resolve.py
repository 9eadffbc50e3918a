"""Resolution and validation of credential material.

``resolve_credential`` is a pure function over an explicit precedence list:
inline value, then a referenced file, then an interactive prompt. The prompt
is only supplied by callers when a terminal is attached, so a headless run
with no inline value and no file fails instead of hanging.
"""

from __future__ import annotations

import getpass
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from pullagent.errors import ConfigurationError

_PRIVATE_KEY_RE = re.compile(
    r"-----BEGIN (?P<label>(?:[A-Z0-9]+ )*)PRIVATE KEY-----"
    r".+?"
    r"-----END (?P=label)PRIVATE KEY-----",
    re.DOTALL,
)
_END_MARKER_RE = re.compile(r"-----END (?:[A-Z0-9]+ )*PRIVATE KEY-----")


class CredentialKind(Enum):
    """The credentials the agent stores."""

    DEPLOY_KEY = "deploy_key"
    VAULT_PASSWORD = "vault_password"


@dataclass(frozen=True)
class CredentialSources:
    """Where credential material may come from, in precedence order."""

    inline: str | None = None
    file_path: Path | None = None
    prompt: Callable[[], str] | None = None


def validate_credential(kind: CredentialKind, value: str) -> str:
    """Return the normalised credential, or raise ConfigurationError."""
    if kind is CredentialKind.DEPLOY_KEY:
        if not _PRIVATE_KEY_RE.search(value):
            raise ConfigurationError(
                "deploy key must contain matching '-----BEGIN ... PRIVATE KEY-----' "
                "and '-----END ... PRIVATE KEY-----' markers"
            )
        # ssh refuses keys without a trailing newline
        return value.strip() + "\n"

    password = value.rstrip("\r\n")
    if not password:
        raise ConfigurationError("vault password must not be empty")
    if "\n" in password or "\r" in password:
        raise ConfigurationError("vault password must be a single line")
    return password


def resolve_credential(
    kind: CredentialKind,
    sources: CredentialSources,
    read_file: Callable[[Path], str] = lambda p: p.read_text(encoding="utf-8"),
) -> str:
    """Resolve and validate a credential from ``sources``.

    Raises:
        ConfigurationError: no source applies, the referenced file is
            unreadable, or the material fails validation.
    """
    if sources.inline:
        return validate_credential(kind, sources.inline)

    if sources.file_path is not None:
        try:
            raw = read_file(sources.file_path)
        except OSError as exc:
            raise ConfigurationError(
                f"{kind.value} file {sources.file_path} is unreadable: {exc}"
            ) from exc
        return validate_credential(kind, raw)

    if sources.prompt is not None:
        return validate_credential(kind, sources.prompt())

    raise ConfigurationError(
        f"no {kind.value} provided: set an inline value or a file path, "
        "or run from a terminal"
    )


# ---------------------------------------------------------------------------
# Interactive capture
# ---------------------------------------------------------------------------


def read_deploy_key(read_line: Callable[[], str] = input) -> str:
    """Read a pasted private key line by line until its END marker."""
    print("Paste your deploy key below (the private key content).", file=sys.stderr)
    lines: list[str] = []
    while True:
        try:
            line = read_line()
        except EOFError:
            break
        lines.append(line)
        if _END_MARKER_RE.search(line):
            break
    return "\n".join(lines) + "\n"


def read_vault_password() -> str:
    return getpass.getpass("Enter the vault password: ")


def interactive_prompt(kind: CredentialKind) -> Callable[[], str] | None:
    """Return the prompt for ``kind`` when a terminal is attached, else None."""
    if not sys.stdin.isatty():
        return None
    if kind is CredentialKind.DEPLOY_KEY:
        return read_deploy_key
    return read_vault_password
