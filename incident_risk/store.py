"""
In-memory collaborators: raw telemetry store, feature store and incident source.

The pipeline only talks to these through key-range reads and writes, so a
durable backend can replace them without touching the components.
"""

import itertools
import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .records import (
    BucketKey,
    FeatureRow,
    IncidentRecord,
    SeriesKey,
    StoredEvent,
    TelemetryEvent,
)


logger = logging.getLogger(__name__)


class TelemetryStore:
    """
    Append-only event log partitioned by (service, route).

    Each partition has its own lock, shared by append and prune, so pruning
    never loses a concurrent append. Different partitions never contend.
    Sequence numbers are taken under the partition lock, so every partition
    is ordered by sequence. Readers take a snapshot copy of a partition.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._partitions: Dict[SeriesKey, List[StoredEvent]] = {}
        self._partition_locks: Dict[SeriesKey, threading.Lock] = {}
        self._sequence = itertools.count(1)

    def _partition(self, key: SeriesKey) -> Tuple[threading.Lock, List[StoredEvent]]:
        with self._guard:
            partition = self._partitions.get(key)
            if partition is None:
                partition = self._partitions[key] = []
                self._partition_locks[key] = threading.Lock()
            return self._partition_locks[key], partition

    def append(self, event: TelemetryEvent, received_at: datetime) -> StoredEvent:
        lock, partition = self._partition(event.key)
        with lock:
            stored = StoredEvent(sequence=next(self._sequence), received_at=received_at, event=event)
            partition.append(stored)
        return stored

    def keys(self) -> List[SeriesKey]:
        with self._guard:
            return sorted(self._partitions.keys())

    def read_range(self, key: SeriesKey, start: datetime, end: datetime) -> List[StoredEvent]:
        """Events for `key` with start <= timestamp < end"""
        with self._guard:
            partition = self._partitions.get(key)
            lock = self._partition_locks.get(key)
        if partition is None:
            return []
        with lock:
            snapshot = list(partition)
        return [s for s in snapshot if start <= s.event.timestamp < end]

    def all_events(self) -> List[StoredEvent]:
        events: List[StoredEvent] = []
        for key in self.keys():
            lock, partition = self._partition(key)
            with lock:
                events.extend(partition)
        return events

    def time_span(self):
        """(min, max) event timestamp across all partitions, or None when empty"""
        timestamps = [s.event.timestamp for s in self.all_events()]
        if not timestamps:
            return None
        return min(timestamps), max(timestamps)

    def prune(self, before: datetime) -> int:
        """Drop events older than `before` in place; returns the number removed"""
        removed = 0
        for key in self.keys():
            lock, partition = self._partition(key)
            with lock:
                kept = [s for s in partition if s.event.timestamp >= before]
                removed += len(partition) - len(kept)
                partition[:] = kept
        if removed:
            logger.info(f"Pruned {removed} telemetry events older than {before.isoformat()}")
        return removed

    def __len__(self) -> int:
        return len(self.all_events())


class FeatureStore:
    """
    Feature rows keyed by (service, route, bucket_start).

    Writes are superseding upserts until a row is frozen; frozen rows are
    never rewritten.
    """

    def __init__(self):
        self._rows: Dict[BucketKey, FeatureRow] = {}
        self._frozen: Set[BucketKey] = set()
        self._lock = threading.Lock()

    def upsert(self, row: FeatureRow) -> bool:
        """Insert or replace a row; returns False when the key is frozen"""
        with self._lock:
            if row.key in self._frozen:
                return False
            self._rows[row.key] = row
            return True

    def freeze(self, key: BucketKey) -> None:
        with self._lock:
            self._frozen.add(key)

    def is_frozen(self, key: BucketKey) -> bool:
        with self._lock:
            return key in self._frozen

    def get(self, key: BucketKey) -> Optional[FeatureRow]:
        with self._lock:
            return self._rows.get(key)

    def read_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        series: Optional[SeriesKey] = None
    ) -> List[FeatureRow]:
        """Rows with start <= bucket_start < end, ordered by bucket_start then key"""
        with self._lock:
            rows = list(self._rows.values())
        if start is not None:
            rows = [r for r in rows if r.bucket_start >= start]
        if end is not None:
            rows = [r for r in rows if r.bucket_start < end]
        if series is not None:
            rows = [r for r in rows if r.series_key == series]
        return sorted(rows, key=lambda r: (r.bucket_start, r.service, r.route))

    def latest_per_series(self) -> Dict[SeriesKey, FeatureRow]:
        latest: Dict[SeriesKey, FeatureRow] = {}
        for row in self.read_range():
            latest[row.series_key] = row
        return latest

    def load(self, rows: Iterable[FeatureRow], freeze: bool = True) -> int:
        """Bulk-load historical rows, frozen by default"""
        count = 0
        for row in rows:
            if self.upsert(row):
                count += 1
            if freeze:
                self.freeze(row.key)
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)


class IncidentSource:
    """Externally recorded incident outcomes, indexed by (service, route)"""

    def __init__(self, incidents: Optional[Iterable[IncidentRecord]] = None):
        self._by_series: Dict[SeriesKey, List[datetime]] = defaultdict(list)
        self._lock = threading.Lock()
        for incident in incidents or ():
            self.record(incident)

    def record(self, incident: IncidentRecord) -> None:
        with self._lock:
            times = self._by_series[incident.key]
            times.append(incident.occurred_at)
            times.sort()

    def incident_times(self, key: SeriesKey) -> List[datetime]:
        with self._lock:
            return list(self._by_series.get(key, ()))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._by_series.values())
