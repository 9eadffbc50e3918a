"""Reconciliation of desired state against the local machine.

This package provides:
- DesiredStateDocument: immutable, validated snapshot of one source revision
- Resource kinds: directory, file, command, slots
- ReconciliationEngine: dependency-ordered, delta-only apply
"""

from pullagent.reconcile.document import DesiredStateDocument
from pullagent.reconcile.engine import (
    ReconcileReport,
    ReconciliationEngine,
    ResourceResult,
    ResourceStatus,
)
from pullagent.reconcile.resources import (
    AnyResource,
    CommandResource,
    DirectoryResource,
    FileResource,
    Resource,
    SlotsResource,
)

__all__ = [
    "AnyResource",
    "CommandResource",
    "DesiredStateDocument",
    "DirectoryResource",
    "FileResource",
    "ReconcileReport",
    "ReconciliationEngine",
    "Resource",
    "ResourceResult",
    "ResourceStatus",
    "SlotsResource",
]
