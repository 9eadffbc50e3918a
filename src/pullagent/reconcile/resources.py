"""Resource kinds managed by the reconciliation engine.

Every kind implements the same contract:

- ``check()`` returns the changes still needed (empty when converged)
- ``apply()`` makes exactly those changes and returns how many it made

Applying a converged resource is a no-op, which is what makes repeated runs
idempotent. The set of kinds is closed; ``AnyResource`` is the tagged union
used to validate document entries.
"""

from __future__ import annotations

import os
import re
import shutil
import stat
from pathlib import Path
from typing import Annotated, Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pullagent.constants import COMMAND_TIMEOUT
from pullagent.errors import ApplyError
from pullagent.utils import atomic_write_text, run_cmd


def _parse_mode(value: Any) -> int | None:
    if value is None or isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 8)
    raise ValueError("mode must be an int or an octal string such as '0755'")


def _current_mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


class Resource(BaseModel):
    """Fields shared by every resource kind."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str
    name: str = Field(min_length=1)
    tags: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()

    def check(self) -> list[str]:
        raise NotImplementedError

    def apply(self) -> int:
        raise NotImplementedError


class DirectoryResource(Resource):
    """A directory that must exist, optionally with a given mode."""

    kind: Literal["directory"]
    path: Path
    mode: int | None = None

    @field_validator("mode", mode="before")
    @classmethod
    def _validate_mode(cls, value: Any) -> int | None:
        return _parse_mode(value)

    def check(self) -> list[str]:
        if not self.path.is_dir():
            return [f"create directory {self.path}"]
        if self.mode is not None and _current_mode(self.path) != self.mode:
            return [f"chmod {oct(self.mode)} {self.path}"]
        return []

    def apply(self) -> int:
        pending = self.check()
        if not pending:
            return 0
        self.path.mkdir(parents=True, exist_ok=True)
        if self.mode is not None:
            os.chmod(self.path, self.mode)
        return len(pending)


class FileResource(Resource):
    """A file with exact content and mode."""

    kind: Literal["file"]
    path: Path
    content: str
    mode: int = 0o644

    @field_validator("mode", mode="before")
    @classmethod
    def _validate_mode(cls, value: Any) -> int | None:
        return _parse_mode(value)

    def check(self) -> list[str]:
        if not self.path.is_file():
            return [f"create file {self.path}"]
        changes = []
        if self.path.read_bytes() != self.content.encode("utf-8"):
            changes.append(f"update content of {self.path}")
        if _current_mode(self.path) != self.mode:
            changes.append(f"chmod {oct(self.mode)} {self.path}")
        return changes

    def apply(self) -> int:
        pending = self.check()
        if not pending:
            return 0
        atomic_write_text(self.path, self.content, mode=self.mode)
        return len(pending)


class CommandResource(Resource):
    """A command guarded by a ``creates`` path or an ``unless`` check.

    An unguarded command would run on every tick, so one guard is required.
    """

    kind: Literal["command"]
    argv: tuple[str, ...] = Field(min_length=1)
    creates: Path | None = None
    unless: tuple[str, ...] | None = None
    cwd: Path | None = None
    env: dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=COMMAND_TIMEOUT, gt=0)

    @model_validator(mode="after")
    def _require_guard(self) -> Self:
        if self.creates is None and not self.unless:
            raise ValueError(f"command {self.name!r} needs a 'creates' path or an 'unless' check")
        return self

    def check(self) -> list[str]:
        if self.creates is not None and self.creates.exists():
            return []
        if self.unless:
            guard = run_cmd(self.unless, cwd=self.cwd, env=self.env, timeout=self.timeout)
            if guard is not None:
                return []
        return [f"run {' '.join(self.argv)}"]

    def apply(self) -> int:
        if not self.check():
            return 0
        if run_cmd(self.argv, cwd=self.cwd, env=self.env, timeout=self.timeout) is None:
            raise ApplyError(f"command {self.name!r} failed")
        return 1


class SlotsResource(Resource):
    """Exactly ``count`` numbered directories ``<prefix>-<n>`` under ``path``.

    Used for per-agent workspaces: scaling up creates the missing slots,
    scaling down removes the highest-numbered extras, and existing slots
    inside the range are left untouched.
    """

    kind: Literal["slots"]
    path: Path
    prefix: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.]+$")
    count: int = Field(ge=0)

    def _existing(self) -> dict[int, Path]:
        if not self.path.is_dir():
            return {}
        pattern = re.compile(rf"^{re.escape(self.prefix)}-(\d+)$")
        found = {}
        for entry in self.path.iterdir():
            match = pattern.match(entry.name)
            if match and entry.is_dir():
                found[int(match.group(1))] = entry
        return found

    def _delta(self) -> tuple[list[Path], list[Path]]:
        existing = self._existing()
        wanted = range(1, self.count + 1)
        missing = [self.path / f"{self.prefix}-{n}" for n in wanted if n not in existing]
        extra = [p for n, p in sorted(existing.items()) if n > self.count]
        return missing, extra

    def check(self) -> list[str]:
        missing, extra = self._delta()
        return [f"create slot {p.name}" for p in missing] + [f"remove slot {p.name}" for p in extra]

    def apply(self) -> int:
        missing, extra = self._delta()
        for slot in missing:
            slot.mkdir(parents=True, exist_ok=True)
        for slot in extra:
            shutil.rmtree(slot)
        return len(missing) + len(extra)


AnyResource = Annotated[
    DirectoryResource | FileResource | CommandResource | SlotsResource,
    Field(discriminator="kind"),
]
