"""Bounded correlation window of recent signals, partitioned by (source, metric_name)."""

from __future__ import annotations

import bisect
import itertools
import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta

from orchestrator.ingestion.models import Signal

logger = logging.getLogger("orchestrator.ingestion")

WindowKey = tuple[str, str]


class CorrelationWindow:
    """Keeps recent signals per key, ordered by timestamp.

    Each key has its own writer lock; the key table and the seen-id index share
    a short-lived table lock. Duplicate signal ids are remembered beyond eviction
    (up to ``max_seen_ids``) so re-deliveries are dropped.
    """

    def __init__(
        self,
        horizon_seconds: int = 600,
        max_per_key: int = 1000,
        max_seen_ids: int = 100_000,
    ) -> None:
        self._horizon = timedelta(seconds=horizon_seconds)
        self._max_per_key = max_per_key
        self._max_seen_ids = max_seen_ids
        self._buckets: dict[WindowKey, list[tuple[datetime, int, Signal]]] = {}
        self._locks: dict[WindowKey, threading.Lock] = {}
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._table_lock = threading.Lock()
        self._seq = itertools.count()

    def _lock_for(self, key: WindowKey) -> threading.Lock:
        with self._table_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._buckets[key] = []
            return lock

    def _remember(self, signal_id: str) -> bool:
        """Record an id; False if it was already seen."""
        with self._table_lock:
            if signal_id in self._seen:
                return False
            self._seen[signal_id] = None
            while len(self._seen) > self._max_seen_ids:
                self._seen.popitem(last=False)
            return True

    def add(self, signal: Signal) -> bool:
        """Insert a signal. Returns False when its id was already ingested."""
        if not self._remember(signal.id):
            logger.debug("Duplicate signal dropped: id=%s", signal.id)
            return False

        key = signal.window_key
        with self._lock_for(key):
            bucket = self._buckets[key]
            bisect.insort(bucket, (signal.timestamp, next(self._seq), signal))

            cutoff = bucket[-1][0] - self._horizon
            expired = 0
            while bucket and bucket[0][0] < cutoff:
                bucket.pop(0)
                expired += 1
            while len(bucket) > self._max_per_key:
                bucket.pop(0)
                expired += 1
            if expired:
                logger.debug("Evicted %d signals from window %s", expired, key)
        return True

    def recent(self, key: WindowKey, since: datetime | None = None) -> list[Signal]:
        """Signals for a key, oldest first, optionally only those at or after ``since``."""
        with self._lock_for(key):
            return [s for ts, _, s in self._buckets[key] if since is None or ts >= since]

    def forget(self, signal: Signal) -> None:
        """Undo ``add`` for a signal whose processing failed, so a resubmission is accepted."""
        with self._table_lock:
            self._seen.pop(signal.id, None)
        key = signal.window_key
        with self._lock_for(key):
            self._buckets[key] = [e for e in self._buckets[key] if e[2].id != signal.id]
        logger.debug("Signal forgotten after failed dispatch: id=%s", signal.id)

    def keys(self) -> list[WindowKey]:
        with self._table_lock:
            return list(self._buckets)

    def __len__(self) -> int:
        return sum(len(self.recent(k)) for k in self.keys())
