"""Persistent source → target ID mapping table."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import ConfigurationError
from .models import MappingEntry

if TYPE_CHECKING:
    from collections.abc import Iterator

logger: logging.Logger = logging.getLogger(__name__)


class MappingTable:
    """Thread-safe upsert-by-key table of ``MappingEntry`` rows.

    Rows are only added or replaced, never removed. When a path is given the
    table is loaded from it on construction and written back by ``save()``.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path: Path | None = Path(path) if path else None
        self._entries: dict[str, MappingEntry] = {}
        self._lock: threading.Lock = threading.Lock()
        if self.path and self.path.exists():
            self._load(self.path)

    def _load(self, path: Path) -> None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            msg = f"Mapping table {path} is not valid JSON: {e}"
            raise ConfigurationError(msg) from e
        for row in data.get("entries", []):
            entry = MappingEntry.from_dict(row)
            self._entries[entry.source_id] = entry
        logger.info(f"Loaded {len(self._entries)} mapping entries from {path}")

    def get(self, source_id: str) -> MappingEntry | None:
        with self._lock:
            return self._entries.get(source_id)

    def upsert(self, entry: MappingEntry) -> None:
        with self._lock:
            self._entries[entry.source_id] = entry

    def target_id(self, source_id: str) -> int | None:
        """Mapped target ID, including items whose last sync failed after creation."""
        entry = self.get(source_id)
        return entry.target_id if entry else None

    def entries(self) -> list[MappingEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda e: e.source_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[MappingEntry]:
        return iter(self.entries())

    def save(self) -> None:
        """Write the table to its path (no-op for in-memory tables)."""
        if self.path is None:
            return
        payload = {"entries": [entry.to_dict() for entry in self.entries()]}
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
        logger.debug(f"Saved {len(payload['entries'])} mapping entries to {self.path}")
