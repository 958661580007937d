"""Run metrics persisted as a small JSON record.

Writes are atomic (temp file + rename) and last-writer-wins; a missing or
corrupt file reads as an empty record.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Optional

from grub_recovery.domain.models import HealthReport
from grub_recovery.logging import LoggerFactory


log = LoggerFactory.for_system()

METRIC_KEYS = (
    "health_score",
    "total_issues",
    "repair_count",
    "last_repair_timestamp",
    "last_backup_timestamp",
)


class MetricsStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".metrics-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _save(self, data: dict[str, Any]) -> dict[str, Any]:
        try:
            self._write(data)
        except OSError as error:
            log.warning(f"Could not write metrics to {self.path}: {error}")
        return data

    def update(self, **values: Any) -> dict[str, Any]:
        """Merge ``values`` into the stored record and write it back."""
        with self._lock:
            data = self.load()
            data.update(values)
            return self._save(data)

    def record_health(self, report: HealthReport) -> dict[str, Any]:
        return self.update(health_score=report.score, total_issues=report.total_issues)

    def record_backup(self, when: Optional[float] = None) -> dict[str, Any]:
        return self.update(last_backup_timestamp=int(when if when is not None else time.time()))

    def record_repair(self, when: Optional[float] = None) -> dict[str, Any]:
        with self._lock:
            data = self.load()
            data["repair_count"] = int(data.get("repair_count", 0) or 0) + 1
            data["last_repair_timestamp"] = int(when if when is not None else time.time())
            return self._save(data)
