"""Desired-state document model.

A document is an immutable snapshot of one source revision::

    secrets: vault/secrets.yml      # optional, relative to the checkout
    resources:
      - kind: slots
        name: agent-workspaces
        path: /opt/buildkite/builds
        prefix: agent
        count: 5
        tags: [buildkite]

String fields may reference decrypted secrets as ``{{ secrets.NAME }}``;
``render()`` returns a new document with those references filled in.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Self

import yaml
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from pullagent.errors import DocumentError, SecretsError
from pullagent.reconcile.resources import AnyResource

_SECRET_REF_RE = re.compile(r"\{\{\s*secrets\.([A-Za-z0-9_\-]+)\s*\}\}")

_resource_adapter: TypeAdapter[Any] = TypeAdapter(AnyResource)


class DesiredStateDocument(BaseModel):
    """Declarative configuration at a specific source revision."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    revision: str
    secrets: str | None = None
    resources: tuple[AnyResource, ...] = Field(default_factory=tuple)

    @model_validator(mode="after")
    def _unique_names(self) -> Self:
        seen: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ValueError(f"duplicate resource name: {resource.name}")
            seen.add(resource.name)
        return self

    @classmethod
    def from_yaml(cls, text: str, revision: str) -> DesiredStateDocument:
        """Parse and validate a document.

        Raises:
            DocumentError: the text is not YAML or does not validate.
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise DocumentError(f"document at {revision} is not valid YAML: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DocumentError(f"document at {revision} must be a mapping")
        try:
            return cls.model_validate({**data, "revision": revision})
        except ValidationError as exc:
            raise DocumentError(f"document at {revision} is invalid: {exc}") from exc

    @classmethod
    def load(cls, path: Path, revision: str) -> DesiredStateDocument:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DocumentError(f"document {path} is unreadable: {exc}") from exc
        return cls.from_yaml(text, revision)

    def bundle_path(self, root: Path) -> Path | None:
        """Location of the secrets bundle inside the checkout, if any."""
        if not self.secrets:
            return None
        path = (root / self.secrets).resolve()
        if not path.is_relative_to(root.resolve()):
            raise DocumentError(f"secrets path {self.secrets!r} escapes the checkout")
        return path

    def render(self, secrets: dict[str, str]) -> DesiredStateDocument:
        """Return a copy with every ``{{ secrets.NAME }}`` reference substituted.

        Raises:
            SecretsError: a reference names a secret the bundle does not contain.
        """
        rendered = []
        for resource in self.resources:
            data = _substitute(resource.model_dump(mode="json"), secrets, resource.name)
            rendered.append(_resource_adapter.validate_python(data))
        return self.model_copy(update={"resources": tuple(rendered)})


def _substitute(value: Any, secrets: dict[str, str], owner: str) -> Any:
    if isinstance(value, str):

        def replace(match: re.Match[str]) -> str:
            key = match.group(1)
            if key not in secrets:
                raise SecretsError(f"resource {owner!r} references unknown secret {key!r}")
            return secrets[key]

        return _SECRET_REF_RE.sub(replace, value)
    if isinstance(value, dict):
        return {k: _substitute(v, secrets, owner) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, secrets, owner) for v in value]
    return value
