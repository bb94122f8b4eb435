"""
Snapshot cache for the Realtime Service.

Holds the last published envelope per topic so a new subscriber is brought
up to date immediately. Writes are last-write-wins; expired entries are
dropped when read.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector


DEFAULT_SNAPSHOT_TTL = 300


@dataclass
class Snapshot:
    """Cached envelope for a topic."""
    value: Any
    stored_at: float
    ttl_seconds: float

    def is_expired(self, now: float) -> bool:
        return now > self.stored_at + self.ttl_seconds

    def age(self, now: float) -> float:
        return max(0.0, now - self.stored_at)


class SnapshotCache:
    """In-memory last-known-value store keyed by topic."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_SNAPSHOT_TTL,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None
    ):
        self.default_ttl = default_ttl
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("realtime.cache.snapshots")
        self._entries: Dict[str, Snapshot] = {}

    def store(self, topic: str, value: Any, ttl_seconds: Optional[float] = None) -> Snapshot:
        """Store a value for a topic, replacing whatever was there."""
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        snapshot = Snapshot(value=value, stored_at=self.clock(), ttl_seconds=ttl)
        self._entries[topic] = snapshot
        return snapshot

    def read(self, topic: str) -> Optional[Any]:
        """Get the current value for a topic, or None if absent or expired."""
        snapshot = self._read_entry(topic)
        return snapshot.value if snapshot else None

    def read_entry(self, topic: str) -> Optional[Snapshot]:
        """Get the snapshot record (value and timing) for a topic."""
        return self._read_entry(topic)

    def _read_entry(self, topic: str) -> Optional[Snapshot]:
        snapshot = self._entries.get(topic)
        if snapshot is None:
            self._record_lookup("miss")
            return None

        if snapshot.is_expired(self.clock()):
            del self._entries[topic]
            self._record_lookup("expired")
            return None

        self._record_lookup("hit")
        return snapshot

    def invalidate(self, topic: str) -> bool:
        return self._entries.pop(topic, None) is not None

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self.clock()
        expired = [topic for topic, snapshot in self._entries.items() if snapshot.is_expired(now)]
        for topic in expired:
            del self._entries[topic]

        if expired:
            self.logger.debug("Purged expired snapshots", count=len(expired))
        return len(expired)

    def _record_lookup(self, result: str):
        if self.metrics:
            self.metrics.increment_counter("snapshot_lookups_total", result=result)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        now = self.clock()
        return {
            "entries": len(self._entries),
            "default_ttl": self.default_ttl,
            "topics": {
                topic: {
                    "age_seconds": round(snapshot.age(now), 3),
                    "ttl_seconds": snapshot.ttl_seconds,
                    "expired": snapshot.is_expired(now)
                }
                for topic, snapshot in sorted(self._entries.items())
            }
        }
