"""
Pytest configuration for incident risk tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from incident_risk.config import FEATURE_ORDER
from incident_risk.records import FeatureRow, ModelArtifact, PredictionResult, TelemetryEvent


T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_event(
    timestamp: datetime = T0,
    service: str = "checkout",
    route: str = "/pay",
    status_code: int = 200,
    latency_ms: float = 100.0,
    memory_mb: float = 512.0,
    cpu_pct: float = 40.0,
    retries: int = 0,
    timeout: bool = False
) -> TelemetryEvent:
    return TelemetryEvent(
        timestamp=timestamp,
        service=service,
        route=route,
        status_code=status_code,
        latency_ms=latency_ms,
        memory_mb=memory_mb,
        cpu_pct=cpu_pct,
        retries=retries,
        timeout=timeout,
    )


def make_row(
    bucket_start: datetime = T0,
    service: str = "checkout",
    route: str = "/pay",
    **overrides
) -> FeatureRow:
    values = {
        "error_rate": 0.0,
        "p95_latency_ms": 100.0,
        "p99_latency_ms": 120.0,
        "avg_memory_mb": 512.0,
        "avg_cpu_pct": 40.0,
        "retries_rate": 0.0,
        "timeout_rate": 0.0,
        "total_requests": 10,
    }
    values.update(overrides)
    return FeatureRow(service=service, route=route, bucket_start=bucket_start, **values)


def make_artifact(weights=None, bias: float = 0.0, version: int = 0) -> ModelArtifact:
    """Artifact with identity normalization, so contributions equal weight * raw value"""
    n = len(FEATURE_ORDER)
    weights = weights or [0.0] * n
    return ModelArtifact(
        version=version,
        family="logistic",
        feature_order=tuple(FEATURE_ORDER),
        weights=tuple(float(w) for w in weights),
        bias=bias,
        means=tuple([0.0] * n),
        stds=tuple([1.0] * n),
        trained_at=T0,
    )


def make_prediction(
    risk_score: float,
    bucket_start: datetime = T0,
    service: str = "checkout",
    route: str = "/pay"
) -> PredictionResult:
    return PredictionResult(
        service=service,
        route=route,
        bucket_start=bucket_start,
        risk_score=risk_score,
        top_factors=(("error_rate", 1.0),),
        model_version=1,
    )


def synthetic_events(
    start: datetime = T0,
    hours: int = 6,
    series=(("checkout", "/pay"), ("auth", "/login")),
    per_bucket: int = 5
):
    """
    Telemetry with a repeating degradation cycle per series.

    Every hour (12 buckets) latency, memory and CPU climb for three buckets
    before one bucket of heavy errors and timeouts. With a three-bucket
    lookahead, exactly the climbing buckets precede an incident.
    """
    rng = np.random.RandomState(7)
    events = []
    width = timedelta(minutes=5)
    for offset, (service, route) in enumerate(series):
        for i in range(hours * 12):
            phase = (i + 3 * offset) % 12
            bucket = start + i * width
            for j in range(per_bucket):
                warming = phase in (5, 6, 7)
                degraded = phase == 8
                status = 503 if degraded and j % 2 == 0 else 200
                latency = 120.0 + rng.uniform(0, 30)
                if warming:
                    latency += 400.0
                if degraded:
                    latency += 900.0
                events.append(make_event(
                    timestamp=bucket + timedelta(seconds=30 * j + 5),
                    service=service,
                    route=route,
                    status_code=status,
                    latency_ms=latency,
                    memory_mb=500.0 + rng.uniform(0, 50) + (200.0 if warming else 0.0),
                    cpu_pct=35.0 + rng.uniform(0, 10) + (40.0 if warming else 0.0),
                    retries=1 if degraded and j % 3 == 0 else 0,
                    timeout=degraded and j == per_bucket - 1,
                ))
    return events


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def row_factory():
    return make_row


# Set random seeds for reproducible tests
np.random.seed(42)

# Configure pandas display options for better test output
pd.set_option('display.max_columns', None)
pd.set_option('display.width', None)
