"""
Versioned snapshots published by reference swap.

Writers build a complete mapping off to the side and swap the holder's reference under a
writer lock. Readers call current() once per request and keep that snapshot; a snapshot is
read-only and never changes after publication.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from .schema import utcnow
from ..util.logging import logger


@dataclass(frozen=True)
class Snapshot:
    version: int
    entries: Mapping[str, Any]
    published_at: datetime = field(default_factory=utcnow)

    def get(self, key: str, default: Any = None) -> Any:
        return self.entries.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self.entries

    def __len__(self) -> int:
        return len(self.entries)


class SnapshotHolder:
    """Holds the latest published snapshot of one kind of shared state."""

    def __init__(self, name: str):
        self.name = name
        self._current: Optional[Snapshot] = None
        self._write_lock = threading.Lock()

    def current(self) -> Optional[Snapshot]:
        """Latest published snapshot, or None if nothing was ever published."""
        return self._current

    @property
    def version(self) -> int:
        snap = self._current
        return snap.version if snap else 0

    def publish(self, entries: Dict[str, Any]) -> Snapshot:
        """Replace the whole snapshot."""
        with self._write_lock:
            return self._swap(dict(entries))

    def publish_update(self, updates: Dict[str, Any]) -> Snapshot:
        """Publish a new snapshot equal to the current one with `updates` applied."""
        with self._write_lock:
            base = dict(self._current.entries) if self._current else {}
            base.update(updates)
            return self._swap(base)

    def publish_with(self, build: Callable[[Optional[Snapshot]], Dict[str, Any]]) -> Snapshot:
        """Build the next entries from the current snapshot while holding the writer lock."""
        with self._write_lock:
            return self._swap(dict(build(self._current)))

    def _swap(self, entries: Dict[str, Any]) -> Snapshot:
        snapshot = Snapshot(version=self.version + 1, entries=MappingProxyType(entries))
        # Single reference assignment; readers see either the old or the new snapshot
        self._current = snapshot
        logger.log_generation_published(self.name, snapshot.version, len(entries))
        return snapshot
