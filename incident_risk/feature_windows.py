"""
Fixed-window feature aggregation for request telemetry.

Buckets raw events per (service, route) into fixed-width windows and
computes one feature row per non-empty bucket. A bucket closes once its
watermark delay has elapsed; late events received within the grace period
trigger a full recompute, later ones are dropped and counted.
"""

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from prometheus_client import Counter as PromCounter

from .config import BucketStatus, EtlSettings, LATENCY_QUANTILES
from .errors import StoreUnavailableError
from .records import BucketKey, FeatureRow, SeriesKey, StoredEvent, TelemetryEvent
from .store import FeatureStore, TelemetryStore
from .utils import (
    KeyedLocks,
    RetryConfig,
    call_with_retry,
    ensure_utc,
    safe_divide,
    timing_decorator,
    utc_now,
)


logger = logging.getLogger(__name__)

LATE_EVENTS_DROPPED = PromCounter(
    "incident_risk_late_events_dropped_total", "Events dropped after their bucket's grace period"
)
BUCKETS_FAILED = PromCounter(
    "incident_risk_buckets_failed_total", "Bucket computations abandoned after retries"
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def bucket_start_for(timestamp: datetime, width: timedelta) -> datetime:
    """Floor a timestamp to the start of its bucket"""
    offset = ensure_utc(timestamp) - EPOCH
    return EPOCH + (offset // width) * width


def latency_percentile(sorted_values: Sequence[float], quantile: float) -> float:
    """
    Nearest-rank percentile over ascending values.

    index = ceil(quantile * n) - 1, clamped to [0, n - 1].
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0
    # Tolerance keeps e.g. 0.95 * 20 from landing on 19.000000000000004
    index = math.ceil(quantile * n - 1e-9) - 1
    index = max(0, min(index, n - 1))
    return float(sorted_values[index])


class BucketFeatureComputer:
    """
    Computes the feature row for one (service, route, bucket).

    Every column is computed from sorted arrays, so the result does not
    depend on event arrival order.
    """

    def __init__(self, quantiles: Dict[str, float] = LATENCY_QUANTILES):
        self.quantiles = quantiles

    def compute_features(
        self,
        service: str,
        route: str,
        bucket_start: datetime,
        events: Sequence[TelemetryEvent]
    ) -> Optional[FeatureRow]:
        """Aggregate events into a feature row; None for an empty bucket"""
        n = len(events)
        if n == 0:
            return None

        latencies = np.sort(np.array([e.latency_ms for e in events], dtype=float))
        memory = np.sort(np.array([e.memory_mb for e in events], dtype=float))
        cpu = np.sort(np.array([e.cpu_pct for e in events], dtype=float))
        retries = np.sort(np.array([e.retries for e in events], dtype=float))

        errors = sum(1 for e in events if e.is_error)
        timeouts = sum(1 for e in events if e.timeout)

        percentiles = {
            name: latency_percentile(latencies, q) for name, q in self.quantiles.items()
        }

        return FeatureRow(
            service=service,
            route=route,
            bucket_start=bucket_start,
            error_rate=safe_divide(errors, n),
            p95_latency_ms=percentiles["p95_latency_ms"],
            p99_latency_ms=percentiles["p99_latency_ms"],
            avg_memory_mb=float(np.mean(memory)),
            avg_cpu_pct=float(np.mean(cpu)),
            retries_rate=float(np.mean(retries)),
            timeout_rate=safe_divide(timeouts, n),
            total_requests=n,
        )


@dataclass
class EtlRunResult:
    """Summary of one ETL invocation"""
    window_start: datetime
    window_end: datetime
    ran_at: datetime
    statuses: Dict[BucketKey, BucketStatus] = field(default_factory=dict)
    late_dropped: int = 0

    def count(self, status: BucketStatus) -> int:
        return sum(1 for s in self.statuses.values() if s == status)

    @property
    def rows_written(self) -> int:
        """Feature rows produced or updated by this run"""
        return self.count(BucketStatus.WRITTEN)

    @property
    def failed(self) -> List[BucketKey]:
        return sorted(k for k, s in self.statuses.items() if s == BucketStatus.FAILED)


class FeatureAggregator:
    """
    Windowed ETL from the raw telemetry store into the feature store.

    Computation for one (service, route, bucket) is serialized by a
    key-scoped lock; different keys run in parallel.
    """

    def __init__(
        self,
        telemetry_store: TelemetryStore,
        feature_store: FeatureStore,
        settings: Optional[EtlSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Callable[[float], None]] = None
    ):
        self.telemetry_store = telemetry_store
        self.feature_store = feature_store
        self.settings = settings or EtlSettings()
        self.clock = clock
        self.computer = BucketFeatureComputer()
        self._locks = KeyedLocks()
        self._retry = RetryConfig(
            max_attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            exponential_base=self.settings.retry_exponential_base,
        )
        self._sleep = sleep
        # Highest late sequence counted per bucket; partitions are sequence ordered
        self._late_marks: Dict[BucketKey, int] = {}
        self._late_total = 0
        self._late_lock = threading.Lock()
        self._failed: Dict[BucketKey, str] = {}
        self.last_run: Optional[EtlRunResult] = None

    # Bucket timing

    def bucket_start(self, timestamp: datetime) -> datetime:
        return bucket_start_for(timestamp, self.settings.bucket_width)

    def closes_at(self, bucket_start: datetime) -> datetime:
        """Time after which a bucket is closed and may be emitted"""
        return bucket_start + self.settings.bucket_width + self.settings.watermark_delay

    def grace_deadline(self, bucket_start: datetime) -> datetime:
        """Last arrival time at which an event still counts for its bucket"""
        return self.closes_at(bucket_start) + self.settings.grace_period

    def buckets_in_window(self, window_start: datetime, window_end: datetime) -> List[datetime]:
        starts = []
        current = self.bucket_start(window_start)
        window_end = ensure_utc(window_end)
        while current < window_end:
            starts.append(current)
            current += self.settings.bucket_width
        return starts

    @timing_decorator
    def run_etl(
        self,
        window_start: datetime,
        window_end: datetime,
        now: Optional[datetime] = None,
        series: Optional[List[SeriesKey]] = None
    ) -> EtlRunResult:
        """
        Compute feature rows for every closed bucket overlapping the window.

        Args:
            window_start: Start of the range (floored to a bucket boundary)
            window_end: Exclusive end of the range
            now: Evaluation time deciding which buckets are closed/frozen
            series: Restrict to these (service, route) pairs

        Returns:
            EtlRunResult with a status per bucket
        """
        window_start = ensure_utc(window_start)
        window_end = ensure_utc(window_end)
        if window_end <= window_start:
            raise ValueError("window_end must be after window_start")

        now = ensure_utc(now or self.clock())
        result = EtlRunResult(window_start=window_start, window_end=window_end, ran_at=now)

        keys = series if series is not None else self.telemetry_store.keys()
        tasks = [
            (key, start)
            for key in keys
            for start in self.buckets_in_window(window_start, window_end)
        ]
        logger.info(f"ETL over {len(keys)} series, {len(tasks)} buckets "
                    f"[{window_start.isoformat()}, {window_end.isoformat()})")

        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            futures = {
                executor.submit(self._process_bucket, key, start, now): (key, start)
                for key, start in tasks
            }
            for future in as_completed(futures):
                (service, route), start = futures[future]
                status, dropped = future.result()
                result.statuses[(service, route, start)] = status
                result.late_dropped += dropped

        logger.info(
            f"ETL complete: {result.rows_written} written, "
            f"{result.count(BucketStatus.UNCHANGED)} unchanged, "
            f"{result.count(BucketStatus.FROZEN)} frozen, "
            f"{result.count(BucketStatus.OPEN)} still open, "
            f"{len(result.failed)} failed, {result.late_dropped} late events dropped"
        )
        self.last_run = result
        return result

    def _process_bucket(
        self,
        key: SeriesKey,
        bucket_start: datetime,
        now: datetime
    ) -> Tuple[BucketStatus, int]:
        service, route = key
        bucket_key = (service, route, bucket_start)

        if now < self.closes_at(bucket_start):
            return BucketStatus.OPEN, 0

        with self._locks.hold(bucket_key):
            try:
                stored = self._read_bucket(key, bucket_start)
            except StoreUnavailableError as e:
                self._failed[bucket_key] = str(e)
                BUCKETS_FAILED.inc()
                logger.error(f"Bucket {service}{route}@{bucket_start.isoformat()} marked failed: {e}")
                return BucketStatus.FAILED, 0

            self._failed.pop(bucket_key, None)
            deadline = self.grace_deadline(bucket_start)
            admitted = [s for s in stored if s.received_at <= deadline]
            dropped = self._count_late_drops(
                bucket_key, [s for s in stored if s.received_at > deadline]
            )

            if self.feature_store.is_frozen(bucket_key):
                return BucketStatus.FROZEN, dropped

            # Canonical order so the row never depends on arrival order
            admitted.sort(key=lambda s: (s.event.timestamp, s.sequence))
            row = self.computer.compute_features(
                service, route, bucket_start, [s.event for s in admitted]
            )

            if row is None:
                status = BucketStatus.EMPTY
            elif self.feature_store.get(bucket_key) == row:
                status = BucketStatus.UNCHANGED
            else:
                self.feature_store.upsert(row)
                status = BucketStatus.WRITTEN

            if now >= deadline and row is not None:
                self.feature_store.freeze(bucket_key)

            return status, dropped

    def _read_bucket(self, key: SeriesKey, bucket_start: datetime) -> List[StoredEvent]:
        end = bucket_start + self.settings.bucket_width

        def read():
            return self.telemetry_store.read_range(key, bucket_start, end)

        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return call_with_retry(
            read,
            self._retry,
            retry_on=(StoreUnavailableError,),
            description=f"read {key[0]}{key[1]}@{bucket_start.isoformat()}",
            **kwargs
        )

    def _count_late_drops(self, bucket_key: BucketKey, late: List[StoredEvent]) -> int:
        with self._late_lock:
            mark = self._late_marks.get(bucket_key, 0)
            fresh = [s for s in late if s.sequence > mark]
            if not fresh:
                return 0
            self._late_marks[bucket_key] = max(s.sequence for s in fresh)
            self._late_total += len(fresh)
        LATE_EVENTS_DROPPED.inc(len(fresh))
        logger.warning(f"Dropped {len(fresh)} events that arrived after their grace deadline")
        return len(fresh)

    def forget_before(self, cutoff: datetime) -> int:
        """
        Release bookkeeping for buckets that end at or before `cutoff`

        Called after raw telemetry older than `cutoff` has been pruned.
        """
        cutoff = ensure_utc(cutoff)
        width = self.settings.bucket_width
        with self._late_lock:
            expired = [k for k in self._late_marks if k[2] + width <= cutoff]
            for key in expired:
                del self._late_marks[key]
        for key in [k for k in list(self._failed) if k[2] + width <= cutoff]:
            self._failed.pop(key, None)
        return len(expired)

    @property
    def late_drop_count(self) -> int:
        with self._late_lock:
            return self._late_total

    @property
    def failed_buckets(self) -> Dict[BucketKey, str]:
        return dict(self._failed)
