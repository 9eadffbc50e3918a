"""Maintenance jobs and disk monitoring.

This package provides:
- MaintenanceRunner: nightly cleanup + guarded reboot, weekly deep clean
- DiskMonitor: threshold check of the primary volume
"""

from pullagent.maintenance.disk import DiskMonitor, DiskSample
from pullagent.maintenance.jobs import MaintenanceResult, MaintenanceRunner

__all__ = ["DiskMonitor", "DiskSample", "MaintenanceResult", "MaintenanceRunner"]
