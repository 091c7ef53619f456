"""
Tests for windowed feature aggregation.

Covers the percentile rule, order independence, idempotent recompute,
late-event handling around the grace deadline and failed buckets.
"""

import random
import threading
import time
from datetime import timedelta

import numpy as np
import pytest

from incident_risk.config import BucketStatus, EtlSettings
from incident_risk.errors import StoreUnavailableError
from incident_risk.feature_windows import (
    BucketFeatureComputer,
    FeatureAggregator,
    bucket_start_for,
    latency_percentile,
)
from incident_risk.store import FeatureStore, TelemetryStore
from incident_risk.utils import KeyedLocks

from conftest import T0, make_event


KEY = ("checkout", "/pay")
BUCKET_KEY = ("checkout", "/pay", T0)


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


class FlakyTelemetryStore(TelemetryStore):
    """Fails the first `failures` reads"""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.reads = 0

    def read_range(self, key, start, end):
        self.reads += 1
        if self.reads <= self.failures:
            raise StoreUnavailableError("store timeout")
        return super().read_range(key, start, end)


def make_aggregator(telemetry_store=None):
    telemetry_store = telemetry_store if telemetry_store is not None else TelemetryStore()
    return FeatureAggregator(
        telemetry_store, FeatureStore(), EtlSettings(), sleep=lambda delay: None
    )


class TestPercentile:
    """Test nearest-rank latency percentiles"""

    def test_index_rule(self):
        values = list(range(1, 21))
        # ceil(0.95 * 20) - 1 = 18
        assert latency_percentile(values, 0.95) == 19
        # ceil(0.99 * 20) - 1 = 19
        assert latency_percentile(values, 0.99) == 20

    def test_small_samples(self):
        assert latency_percentile([100.0, 100.0, 100.0], 0.95) == 100.0
        assert latency_percentile([100.0, 100.0, 100.0, 500.0], 0.95) == 500.0
        assert latency_percentile([42.0], 0.99) == 42.0

    def test_empty(self):
        assert latency_percentile([], 0.95) == 0.0

    def test_exact_products_do_not_round_up(self):
        values = list(range(1, 101))
        assert latency_percentile(values, 0.99) == 99


class TestBucketFeatureComputer:
    """Test per-bucket feature computation"""

    def test_feature_values(self):
        events = [
            make_event(status_code=500, latency_ms=300.0, retries=1, timeout=True, cpu_pct=80.0),
            make_event(status_code=200, latency_ms=100.0, memory_mb=256.0, cpu_pct=20.0),
            make_event(status_code=404, latency_ms=200.0, memory_mb=768.0),
            make_event(status_code=503, latency_ms=400.0, retries=1),
        ]
        row = BucketFeatureComputer().compute_features("checkout", "/pay", T0, events)

        assert row.total_requests == 4
        assert row.error_rate == pytest.approx(0.5)
        assert row.timeout_rate == pytest.approx(0.25)
        assert row.retries_rate == pytest.approx(0.5)
        assert row.p95_latency_ms == 400.0
        assert row.avg_memory_mb == pytest.approx((512.0 + 256.0 + 768.0 + 512.0) / 4)
        assert row.avg_cpu_pct == pytest.approx((80.0 + 20.0 + 40.0 + 40.0) / 4)

    def test_empty_bucket_not_emitted(self):
        assert BucketFeatureComputer().compute_features("checkout", "/pay", T0, []) is None

    def test_order_independence(self):
        """Permuting events yields an identical row"""
        rng = random.Random(3)
        events = [
            make_event(
                timestamp=T0 + timedelta(seconds=i),
                status_code=rng.choice([200, 200, 500]),
                latency_ms=rng.uniform(10, 900),
                memory_mb=rng.uniform(100, 900),
                cpu_pct=rng.uniform(0, 100),
                retries=rng.choice([0, 1]),
                timeout=rng.random() < 0.1,
            )
            for i in range(50)
        ]
        computer = BucketFeatureComputer()
        baseline = computer.compute_features("checkout", "/pay", T0, events)

        for _ in range(5):
            shuffled = list(events)
            rng.shuffle(shuffled)
            assert computer.compute_features("checkout", "/pay", T0, shuffled) == baseline

    def test_rates_within_unit_interval(self):
        rng = np.random.RandomState(11)
        computer = BucketFeatureComputer()
        for trial in range(20):
            n = rng.randint(1, 40)
            events = [
                make_event(
                    status_code=int(rng.choice([200, 302, 404, 500, 503])),
                    latency_ms=float(rng.exponential(200)),
                    retries=int(rng.randint(0, 2)),
                    timeout=bool(rng.rand() < 0.3),
                )
                for _ in range(n)
            ]
            row = computer.compute_features("checkout", "/pay", T0, events)
            assert 0.0 <= row.error_rate <= 1.0
            assert 0.0 <= row.timeout_rate <= 1.0
            assert 0.0 <= row.retries_rate <= 1.0
            assert row.total_requests >= 1


class TestBucketTiming:
    """Test bucket boundaries and deadlines"""

    def test_bucket_start_floors(self):
        assert bucket_start_for(T0 + timedelta(minutes=7, seconds=30), minutes(5)) == T0 + minutes(5)
        assert bucket_start_for(T0, minutes(5)) == T0

    def test_deadlines(self):
        aggregator = make_aggregator()
        assert aggregator.closes_at(T0) == T0 + minutes(10)
        assert aggregator.grace_deadline(T0) == T0 + minutes(15)

    def test_buckets_in_window(self):
        aggregator = make_aggregator()
        starts = aggregator.buckets_in_window(T0 + minutes(2), T0 + minutes(15))
        assert starts == [T0, T0 + minutes(5), T0 + minutes(10)]

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            make_aggregator().run_etl(T0, T0, now=T0 + minutes(30))


class TestFeatureAggregator:
    """Test ETL runs over the telemetry store"""

    def _append(self, aggregator, latency_ms, received_at, seconds=60):
        aggregator.telemetry_store.append(
            make_event(timestamp=T0 + timedelta(seconds=seconds), latency_ms=latency_ms),
            received_at=received_at,
        )

    def test_open_bucket_not_emitted(self):
        aggregator = make_aggregator()
        self._append(aggregator, 100.0, T0 + minutes(1))

        result = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(7))

        assert result.statuses[BUCKET_KEY] == BucketStatus.OPEN
        assert len(aggregator.feature_store) == 0

    def test_idempotent_rerun(self):
        """Re-running over a closed bucket with the same events yields the same row"""
        aggregator = make_aggregator()
        for i in range(3):
            self._append(aggregator, 100.0 + i, T0 + minutes(1), seconds=10 * i)

        first = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11))
        row = aggregator.feature_store.get(BUCKET_KEY)
        second = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(12))

        assert first.rows_written == 1
        assert second.statuses[BUCKET_KEY] == BucketStatus.UNCHANGED
        assert second.rows_written == 0
        assert aggregator.feature_store.get(BUCKET_KEY) == row

    def test_late_event_within_grace_recomputes(self):
        aggregator = make_aggregator()
        for i in range(3):
            self._append(aggregator, 100.0, T0 + minutes(1), seconds=10 * i)

        aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11))
        assert aggregator.feature_store.get(BUCKET_KEY).p95_latency_ms == 100.0

        # Arrives after close but before the grace deadline
        self._append(aggregator, 500.0, T0 + minutes(13), seconds=240)
        result = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(14))

        row = aggregator.feature_store.get(BUCKET_KEY)
        assert result.statuses[BUCKET_KEY] == BucketStatus.WRITTEN
        assert row.total_requests == 4
        assert row.p95_latency_ms == 500.0
        assert aggregator.late_drop_count == 0

    def test_late_event_after_grace_dropped(self):
        aggregator = make_aggregator()
        for i in range(3):
            self._append(aggregator, 100.0, T0 + minutes(1), seconds=10 * i)
        aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11))

        # Arrives after the grace deadline
        self._append(aggregator, 500.0, T0 + minutes(16), seconds=240)
        result = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(17))

        row = aggregator.feature_store.get(BUCKET_KEY)
        assert row.p95_latency_ms == 100.0
        assert row.total_requests == 3
        assert result.late_dropped == 1
        assert aggregator.feature_store.is_frozen(BUCKET_KEY)

        # Dropped events are counted once
        rerun = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(20))
        assert rerun.statuses[BUCKET_KEY] == BucketStatus.FROZEN
        assert aggregator.late_drop_count == 1

    def test_later_late_arrivals_counted_once_each(self):
        aggregator = make_aggregator()
        self._append(aggregator, 100.0, T0 + minutes(1))
        self._append(aggregator, 500.0, T0 + minutes(16), seconds=200)
        aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(17))

        self._append(aggregator, 700.0, T0 + minutes(30), seconds=220)
        result = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(31))
        aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(32))

        assert result.late_dropped == 1
        assert aggregator.late_drop_count == 2

    def test_forget_before_releases_late_records(self):
        aggregator = make_aggregator()
        self._append(aggregator, 100.0, T0 + minutes(1))
        self._append(aggregator, 500.0, T0 + minutes(16), seconds=200)
        aggregator.run_etl(T0, T0 + minutes(10), now=T0 + minutes(17))

        assert aggregator.forget_before(T0 + minutes(4)) == 0
        assert aggregator.forget_before(T0 + minutes(5)) == 1
        assert aggregator.late_drop_count == 1

    def test_bucket_locks_released_after_runs(self):
        """A long-running aggregator holds no per-bucket locks between runs"""
        aggregator = make_aggregator()
        self._append(aggregator, 100.0, T0 + minutes(1))
        for day in range(3):
            aggregator.run_etl(T0, T0 + timedelta(hours=24), now=T0 + timedelta(days=day + 1))

        assert len(aggregator._locks) == 0

    def test_frozen_rows_not_rewritten(self):
        aggregator = make_aggregator()
        self._append(aggregator, 100.0, T0 + minutes(1))
        aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(20))
        row = aggregator.feature_store.get(BUCKET_KEY)

        changed = row.__class__(**{**row.to_dict(), "p95_latency_ms": 999.0})
        assert aggregator.feature_store.upsert(changed) is False
        assert aggregator.feature_store.get(BUCKET_KEY) == row

    def test_empty_bucket_reported(self):
        aggregator = make_aggregator()
        self._append(aggregator, 100.0, T0 + minutes(1))

        result = aggregator.run_etl(T0, T0 + minutes(10), now=T0 + minutes(30))

        assert result.statuses[BUCKET_KEY] == BucketStatus.WRITTEN
        assert result.statuses[("checkout", "/pay", T0 + minutes(5))] == BucketStatus.EMPTY
        assert len(aggregator.feature_store) == 1

    def test_transient_store_failure_retried(self):
        aggregator = make_aggregator(FlakyTelemetryStore(failures=2))
        self._append(aggregator, 100.0, T0 + minutes(1))

        result = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11))

        assert result.statuses[BUCKET_KEY] == BucketStatus.WRITTEN
        assert aggregator.telemetry_store.reads == 3

    def test_persistent_store_failure_marks_bucket_failed(self):
        """A bucket that cannot be read is failed, not treated as zero traffic"""
        aggregator = make_aggregator(FlakyTelemetryStore(failures=100))
        self._append(aggregator, 100.0, T0 + minutes(1))

        result = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11))

        assert result.statuses[BUCKET_KEY] == BucketStatus.FAILED
        assert result.failed == [BUCKET_KEY]
        assert BUCKET_KEY in aggregator.failed_buckets
        assert aggregator.feature_store.get(BUCKET_KEY) is None

    def test_series_filter(self):
        aggregator = make_aggregator()
        aggregator.telemetry_store.append(make_event(route="/pay"), received_at=T0)
        aggregator.telemetry_store.append(make_event(route="/refund"), received_at=T0)

        result = aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11),
                                    series=[("checkout", "/refund")])

        assert list(result.statuses) == [("checkout", "/refund", T0)]
        assert aggregator.last_run is result


class TestConcurrentEtl:
    """Test that parallel runs over the same bucket serialize"""

    @pytest.mark.parametrize("trial", range(10))
    def test_parallel_runs_produce_one_consistent_row(self, trial):
        rng = random.Random(trial)
        events = [
            make_event(timestamp=T0 + timedelta(seconds=i), latency_ms=rng.uniform(50, 900),
                       status_code=rng.choice([200, 200, 503]))
            for i in range(200)
        ]
        aggregator = make_aggregator()
        reference = make_aggregator()
        for event in events:
            aggregator.telemetry_store.append(event, received_at=T0 + minutes(4))
            reference.telemetry_store.append(event, received_at=T0 + minutes(4))
        reference.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11))

        barrier = threading.Barrier(2)
        results = []

        def run():
            barrier.wait()
            results.append(aggregator.run_etl(T0, T0 + minutes(5), now=T0 + minutes(11)))

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        statuses = sorted(r.statuses[BUCKET_KEY].value for r in results)
        assert statuses == sorted([BucketStatus.WRITTEN.value, BucketStatus.UNCHANGED.value])
        assert len(aggregator.feature_store) == 1
        assert aggregator.feature_store.get(BUCKET_KEY) == reference.feature_store.get(BUCKET_KEY)
        assert len(aggregator._locks) == 0


class TestKeyedLocks:
    """Test per-key locking"""

    def test_same_key_serialized(self):
        locks = KeyedLocks()
        inside = []
        overlaps = []

        def work():
            with locks.hold("bucket"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.001)
                inside.pop()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert len(locks) == 0

    def test_lock_released_after_error(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            with locks.hold("bucket"):
                raise RuntimeError("boom")

        assert len(locks) == 0
        with locks.hold("bucket"):
            assert len(locks) == 1
