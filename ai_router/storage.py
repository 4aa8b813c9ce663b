"""
Health Snapshot Storage
=======================
Best-effort JSON snapshot of the last computed system health. It is
written after every health check and read back only to seed provider
metrics on a cold start.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from .credentials import CONFIG_DIR

logger = logging.getLogger(__name__)


def get_storage_path() -> Path:
    """Get the storage directory path, creating it if needed."""
    storage_dir = CONFIG_DIR / "health"
    storage_dir.mkdir(parents=True, exist_ok=True)
    return storage_dir


class HealthSnapshotStore:
    """Reads and writes system-health.json"""

    FILENAME = "system-health.json"

    def __init__(self, path: Path | None = None) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        if self._path is None:
            self._path = get_storage_path() / self.FILENAME
        return self._path

    def save(self, snapshot: dict[str, Any]) -> None:
        """Write the snapshot atomically. Raises OSError on failure."""
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2, default=str)
        os.replace(tmp_path, path)

    def load(self) -> dict[str, Any] | None:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable health snapshot {self.path}: {e}")
            return None
        return data if isinstance(data, dict) else None
