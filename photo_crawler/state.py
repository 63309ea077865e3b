from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from .errors import StateDecodeError
from .utils import atomic_write_text, iso_utc, parse_iso

logger = logging.getLogger(__name__)

STAT_NAMES = ("scanned", "classified", "extracted", "written", "skipped", "errors")


class StateStore:
    """Processed-ID cache, lifetime counters and last scan time.

    The file is disposable. Deleting it resets statistics and the secondary
    dedup list; vault notes stay the source of truth for what was captured.
    """

    def __init__(self, path: str | Path, *, load: bool = True):
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._processed: set[str] = set()
        self._stats: dict[str, int] = {name: 0 for name in STAT_NAMES}
        self._last_scan: datetime | None = None
        if load:
            self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StateDecodeError(f"Cannot read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateDecodeError(f"State file {self.path} must contain a JSON object")

        ids = data.get("processed_ids") or []
        if not isinstance(ids, list):
            raise StateDecodeError("processed_ids must be a list")
        self._processed = {str(x) for x in ids}

        stats = data.get("stats") or {}
        if not isinstance(stats, dict):
            raise StateDecodeError("stats must be an object")
        for name in STAT_NAMES:
            try:
                self._stats[name] = int(stats.get(name, 0))
            except (TypeError, ValueError) as exc:
                raise StateDecodeError(f"stats.{name} is not an integer: {stats.get(name)!r}") from exc

        self._last_scan = parse_iso(data.get("last_scan_date"))

    def is_processed(self, asset_id: str) -> bool:
        with self._lock:
            return asset_id in self._processed

    def mark_processed(self, asset_id: str) -> None:
        with self._lock:
            self._processed.add(asset_id)

    def increment(self, name: str, amount: int = 1) -> None:
        if name not in self._stats:
            raise KeyError(f"unknown counter: {name}")
        with self._lock:
            self._stats[name] += amount

    def stats(self) -> dict[str, int]:
        with self._lock:
            return dict(self._stats)

    @property
    def last_scan_time(self) -> datetime | None:
        return self._last_scan

    @last_scan_time.setter
    def last_scan_time(self, value: datetime) -> None:
        self._last_scan = value

    def processed_count(self) -> int:
        with self._lock:
            return len(self._processed)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            data: dict[str, Any] = {
                "processed_ids": sorted(self._processed),
                "stats": dict(self._stats),
            }
        if self._last_scan is not None:
            data["last_scan_date"] = iso_utc(self._last_scan)
        return data

    def save(self) -> None:
        """Write the whole state file. OSError propagates to the caller."""
        atomic_write_text(self.path, json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n")
        logger.debug(f"State saved: {self.processed_count()} processed photos")
