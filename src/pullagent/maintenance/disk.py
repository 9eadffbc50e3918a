"""Disk usage monitor for the primary volume.

Purely observational: above the threshold a warning record is appended to
the disk warning log. Nothing is deleted.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psutil

from pullagent.logging import get_logger
from pullagent.utils import append_jsonl, now_iso

log = get_logger("pullagent.maintenance.disk")


@dataclass(frozen=True)
class DiskSample:
    """One usage sample of a volume."""

    path: str
    total_gb: float
    used_gb: float
    free_gb: float
    usage_percent: float
    threshold_percent: float
    sampled_at: str

    @property
    def over_threshold(self) -> bool:
        return self.usage_percent > self.threshold_percent

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "total_gb": self.total_gb,
            "used_gb": self.used_gb,
            "free_gb": self.free_gb,
            "usage_percent": self.usage_percent,
            "threshold_percent": self.threshold_percent,
            "over_threshold": self.over_threshold,
            "sampled_at": self.sampled_at,
        }


class DiskMonitor:
    """Samples disk usage and logs a warning above the threshold."""

    def __init__(self, path: Path, threshold_percent: float, warning_log_path: Path) -> None:
        self._path = Path(path)
        self._threshold = threshold_percent
        self._warning_log_path = Path(warning_log_path)

    def sample(self) -> DiskSample:
        usage = psutil.disk_usage(str(self._path))
        return DiskSample(
            path=str(self._path),
            total_gb=round(usage.total / (1024**3), 2),
            used_gb=round(usage.used / (1024**3), 2),
            free_gb=round(usage.free / (1024**3), 2),
            usage_percent=round(usage.used / usage.total * 100, 1) if usage.total else 0.0,
            threshold_percent=self._threshold,
            sampled_at=now_iso(),
        )

    def check(self) -> DiskSample:
        sample = self.sample()
        if sample.over_threshold:
            append_jsonl(self._warning_log_path, {"level": "warning", **sample.to_dict()})
            log.warning(
                "disk_usage_high",
                path=sample.path,
                usage_percent=sample.usage_percent,
                threshold_percent=sample.threshold_percent,
                free_gb=sample.free_gb,
            )
        else:
            log.info("disk_usage_ok", path=sample.path, usage_percent=sample.usage_percent)
        return sample
