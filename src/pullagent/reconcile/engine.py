"""Dependency-ordered reconciliation of a desired-state document.

Resources are visited in topological order of ``depends_on``. A resource
whose prerequisite failed (or was itself skipped) is skipped; resources
outside that chain keep going. Nothing is rolled back: partial convergence
is reported and the next scheduled run picks up from there.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import Any

from pullagent.errors import DocumentError
from pullagent.logging import get_logger
from pullagent.reconcile.document import DesiredStateDocument
from pullagent.reconcile.resources import Resource

log = get_logger("pullagent.reconcile.engine")


class ResourceStatus(Enum):
    """Outcome of reconciling one resource."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ResourceResult:
    """Result for a single resource."""

    name: str
    kind: str
    status: ResourceStatus
    changed_count: int = 0
    changes: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "status": self.status.value,
            "changed_count": self.changed_count,
            "changes": self.changes,
            "error": self.error,
        }


@dataclass
class ReconcileReport:
    """Aggregate result of one reconciliation pass."""

    revision: str
    results: list[ResourceResult] = field(default_factory=list)

    @property
    def changed_count(self) -> int:
        return sum(r.changed_count for r in self.results)

    @property
    def failed(self) -> list[str]:
        return [r.name for r in self.results if r.status is ResourceStatus.FAILED]

    @property
    def skipped(self) -> list[str]:
        return [r.name for r in self.results if r.status is ResourceStatus.SKIPPED]

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "revision": self.revision,
            "changed_count": self.changed_count,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


class ReconciliationEngine:
    """Applies only the delta between observed and desired state."""

    def plan(
        self, document: DesiredStateDocument, tags: Iterable[str] | None = None
    ) -> list[Resource]:
        """Return the selected resources in dependency order.

        Raises:
            DocumentError: unknown dependency or dependency cycle.
        """
        by_name: dict[str, Resource] = {r.name: r for r in document.resources}
        for resource in document.resources:
            for dep in resource.depends_on:
                if dep not in by_name:
                    raise DocumentError(f"resource {resource.name!r} depends on unknown {dep!r}")

        selected = self._select(by_name, document.resources, tags)

        sorter: TopologicalSorter[str] = TopologicalSorter()
        for resource in document.resources:
            if resource.name in selected:
                sorter.add(resource.name, *resource.depends_on)
        try:
            order = list(sorter.static_order())
        except CycleError as exc:
            raise DocumentError(f"dependency cycle: {' -> '.join(exc.args[1])}") from exc
        return [by_name[name] for name in order]

    def apply(
        self, document: DesiredStateDocument, tags: Iterable[str] | None = None
    ) -> ReconcileReport:
        report = ReconcileReport(revision=document.revision)
        blocked: set[str] = set()

        for resource in self.plan(document, tags):
            failed_deps = [dep for dep in resource.depends_on if dep in blocked]
            if failed_deps:
                blocked.add(resource.name)
                report.results.append(
                    ResourceResult(
                        name=resource.name,
                        kind=resource.kind,
                        status=ResourceStatus.SKIPPED,
                        error=f"prerequisite failed: {', '.join(failed_deps)}",
                    )
                )
                log.warning("resource_skipped", resource=resource.name, blocked_by=failed_deps)
                continue

            result = self._reconcile_one(resource)
            if result.status is ResourceStatus.FAILED:
                blocked.add(resource.name)
            report.results.append(result)

        log.info(
            "reconcile_complete",
            revision=document.revision,
            changed=report.changed_count,
            failed=len(report.failed),
            skipped=len(report.skipped),
        )
        return report

    @staticmethod
    def _select(
        by_name: dict[str, Resource],
        resources: Iterable[Resource],
        tags: Iterable[str] | None,
    ) -> set[str]:
        """Resources carrying one of ``tags``, plus everything they depend on."""
        if tags is None:
            return set(by_name)
        wanted = set(tags)
        pending = [r.name for r in resources if wanted.intersection(r.tags)]
        selected: set[str] = set()
        while pending:
            name = pending.pop()
            if name in selected:
                continue
            selected.add(name)
            pending.extend(by_name[name].depends_on)
        return selected

    @staticmethod
    def _reconcile_one(resource: Resource) -> ResourceResult:
        result = ResourceResult(
            name=resource.name, kind=resource.kind, status=ResourceStatus.UNCHANGED
        )
        try:
            pending = resource.check()
            if not pending:
                return result
            result.changes = pending
            result.changed_count = resource.apply()
            result.status = (
                ResourceStatus.CHANGED if result.changed_count else ResourceStatus.UNCHANGED
            )
            log.info(
                "resource_changed",
                resource=resource.name,
                kind=resource.kind,
                changes=pending,
            )
        except Exception as exc:
            result.status = ResourceStatus.FAILED
            result.error = str(exc)
            log.error("resource_failed", resource=resource.name, kind=resource.kind, error=str(exc))
        return result
