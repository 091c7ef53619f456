"""
Record types flowing through the incident risk pipeline.

Telemetry events, aggregated feature rows, labeled training rows,
predictions, alerts, backtest metrics and model artifacts.
"""

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .config import AlertStatus, FEATURE_ORDER, Severity


SeriesKey = Tuple[str, str]  # (service, route)
BucketKey = Tuple[str, str, datetime]  # (service, route, bucket_start)


def freeze_metadata(value: Any) -> Any:
    """Read-only copy of nested mappings and sequences"""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze_metadata(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_metadata(v) for v in value)
    return value


def thaw_metadata(value: Any) -> Any:
    """Plain dict/list copy of frozen metadata"""
    if isinstance(value, Mapping):
        return {k: thaw_metadata(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw_metadata(v) for v in value]
    return value


@dataclass(frozen=True)
class TelemetryEvent:
    """One observed request/operation"""
    timestamp: datetime
    service: str
    route: str
    status_code: int
    latency_ms: float
    memory_mb: float
    cpu_pct: float
    retries: int
    timeout: bool

    @property
    def key(self) -> SeriesKey:
        return (self.service, self.route)

    @property
    def is_error(self) -> bool:
        return self.status_code >= 500


@dataclass(frozen=True)
class StoredEvent:
    """An accepted event with its arrival metadata"""
    sequence: int
    received_at: datetime
    event: TelemetryEvent


@dataclass(frozen=True)
class FeatureRow:
    """Aggregated statistics for one (service, route, bucket)"""
    service: str
    route: str
    bucket_start: datetime
    error_rate: float
    p95_latency_ms: float
    p99_latency_ms: float
    avg_memory_mb: float
    avg_cpu_pct: float
    retries_rate: float
    timeout_rate: float
    total_requests: int

    @property
    def key(self) -> BucketKey:
        return (self.service, self.route, self.bucket_start)

    @property
    def series_key(self) -> SeriesKey:
        return (self.service, self.route)

    def feature_vector(self, feature_order: List[str] = FEATURE_ORDER) -> np.ndarray:
        return np.array([float(getattr(self, name)) for name in feature_order], dtype=float)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class TrainingRow:
    """A feature row joined with its outcome label"""
    features: FeatureRow
    label: int

    @property
    def bucket_start(self) -> datetime:
        return self.features.bucket_start


@dataclass(frozen=True)
class IncidentRecord:
    """An externally recorded incident for one (service, route)"""
    service: str
    route: str
    occurred_at: datetime

    @property
    def key(self) -> SeriesKey:
        return (self.service, self.route)


@dataclass(frozen=True)
class PredictionResult:
    """One scoring outcome with signed per-feature contributions"""
    service: str
    route: str
    bucket_start: datetime
    risk_score: float
    top_factors: Tuple[Tuple[str, float], ...]
    model_version: int

    @property
    def series_key(self) -> SeriesKey:
        return (self.service, self.route)


@dataclass
class Alert:
    """An actionable preventive warning"""
    service: str
    route: str
    severity: Severity
    risk_score: float
    bucket_start: datetime
    created_at: datetime
    status: AlertStatus = AlertStatus.OPEN
    alert_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    updated_at: Optional[datetime] = None

    @property
    def series_key(self) -> SeriesKey:
        return (self.service, self.route)


@dataclass(frozen=True)
class BacktestMetrics:
    """Ranking-quality summary of a backtest"""
    auc: float
    precision_at_k: float
    recall_incidents: float
    support: int
    rows: int
    k: int
    model_version: int


@dataclass(frozen=True)
class ModelArtifact:
    """
    A trained logistic scorer.

    Immutable once published, metadata included: it is stored as a read-only
    view. `means`/`stds` are the z-score parameters fitted on the training
    split, aligned with `feature_order`.
    """
    version: int
    family: str
    feature_order: Tuple[str, ...]
    weights: Tuple[float, ...]
    bias: float
    means: Tuple[float, ...]
    stds: Tuple[float, ...]
    trained_at: datetime
    metadata: Mapping = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "metadata", freeze_metadata(self.metadata))

    def __getstate__(self):
        # MappingProxyType does not pickle
        state = dict(self.__dict__)
        state["metadata"] = thaw_metadata(self.metadata)
        return state

    def __setstate__(self, state):
        for name, value in state.items():
            object.__setattr__(self, name, value)
        object.__setattr__(self, "metadata", freeze_metadata(self.metadata))

    def metadata_dict(self) -> Dict:
        """Mutable copy of the metadata"""
        return thaw_metadata(self.metadata)

    def with_version(self, version: int) -> "ModelArtifact":
        return replace(self, version=version)

    @property
    def weight_array(self) -> np.ndarray:
        return np.asarray(self.weights, dtype=float)

    @property
    def mean_array(self) -> np.ndarray:
        return np.asarray(self.means, dtype=float)

    @property
    def std_array(self) -> np.ndarray:
        return np.asarray(self.stds, dtype=float)
