"""
Configuration management for the incident risk pipeline.

Contains all configurable parameters, thresholds, and system settings.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Tuple, Union
import logging


class AlertStatus(Enum):
    """Lifecycle states of a preventive alert"""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class Severity(Enum):
    """Alert severity tiers, derived from risk score bands"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class BucketStatus(Enum):
    """Outcome of a single bucket computation during an ETL run"""
    WRITTEN = "written"
    UNCHANGED = "unchanged"
    FROZEN = "frozen"
    OPEN = "open"
    EMPTY = "empty"
    FAILED = "failed"


# Feature schema, in scoring order. total_requests is a volume signal and is
# only appended when training explicitly asks for it.
FEATURE_ORDER: List[str] = [
    "error_rate",
    "p95_latency_ms",
    "p99_latency_ms",
    "avg_memory_mb",
    "avg_cpu_pct",
    "retries_rate",
    "timeout_rate",
]

VOLUME_FEATURE = "total_requests"

# Allowed transitions for alert status changes
ALERT_TRANSITIONS: Dict[AlertStatus, Tuple[AlertStatus, ...]] = {
    AlertStatus.OPEN: (AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED),
    AlertStatus.ACKNOWLEDGED: (AlertStatus.RESOLVED,),
    AlertStatus.RESOLVED: (),
}

# Ingestion validation
INGESTION_CONFIG: Dict[str, Union[int, float]] = {
    "clock_skew_tolerance_seconds": 120,   # Future timestamps tolerated
    "retention_hours": 168,                # Raw events older than this are rejected/pruned
    "min_status_code": 100,
    "max_status_code": 599,
    "max_cpu_pct": 100.0,
}

# Windowed aggregation
ETL_CONFIG: Dict[str, Union[int, float]] = {
    "bucket_minutes": 5,
    "watermark_buckets": 1,       # Delay past bucket end before it closes
    "grace_buckets": 1,           # Allowed lateness after the watermark
    "retry_attempts": 3,          # Store read attempts per bucket
    "retry_base_delay": 0.05,     # Seconds
    "retry_max_delay": 1.0,
    "retry_exponential_base": 2.0,
    "max_workers": 8,
}

# Latency quantiles reported per bucket
LATENCY_QUANTILES: Dict[str, float] = {
    "p95_latency_ms": 0.95,
    "p99_latency_ms": 0.99,
}

# Label construction
LABEL_CONFIG: Dict[str, Union[int, float]] = {
    "lookahead_buckets": 3,
    "incident_threshold": 0.2,    # error_rate/timeout_rate marking a derived incident
}

# Model configuration
TRAINING_CONFIG: Dict[str, Union[int, float, bool, str]] = {
    "model_family": "logistic",
    "min_rows": 20,
    "validation_fraction": 0.2,
    "learning_rate": 0.1,
    "l2": 0.01,
    "max_iterations": 1000,
    "tolerance": 1e-7,
    "std_floor": 1e-6,
    "include_total_requests": False,
}

INFERENCE_CONFIG: Dict[str, int] = {
    "top_k_factors": 3,
    "chunk_size": 512,            # Rows per parallel scoring chunk
    "max_workers": 4,
}

# Score bands, highest first
SEVERITY_BANDS: List[Tuple[float, Severity]] = [
    (0.9, Severity.CRITICAL),
    (0.7, Severity.HIGH),
    (0.5, Severity.MEDIUM),
]

ALERT_CONFIG: Dict[str, Union[int, float]] = {
    "threshold": 0.5,
    "cooldown_minutes": 30,
    "summary_window_hours": 24,
}

BACKTEST_CONFIG: Dict[str, int] = {
    "k": 20,
    "chunk_size": 256,            # Rows scored between cancellation checks
}

# Logging configuration
LOGGING_CONFIG: Dict = {
    "level": logging.INFO,
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "datefmt": "%Y-%m-%d %H:%M:%S"
}


@dataclass
class IngestionSettings:
    """Telemetry validation limits"""
    clock_skew_tolerance: timedelta = timedelta(seconds=INGESTION_CONFIG["clock_skew_tolerance_seconds"])
    retention: timedelta = timedelta(hours=INGESTION_CONFIG["retention_hours"])
    min_status_code: int = INGESTION_CONFIG["min_status_code"]
    max_status_code: int = INGESTION_CONFIG["max_status_code"]
    max_cpu_pct: float = INGESTION_CONFIG["max_cpu_pct"]


@dataclass
class EtlSettings:
    """Bucketing, watermark and retry settings for the aggregator"""
    bucket_minutes: int = ETL_CONFIG["bucket_minutes"]
    watermark_buckets: int = ETL_CONFIG["watermark_buckets"]
    grace_buckets: int = ETL_CONFIG["grace_buckets"]
    retry_attempts: int = ETL_CONFIG["retry_attempts"]
    retry_base_delay: float = ETL_CONFIG["retry_base_delay"]
    retry_max_delay: float = ETL_CONFIG["retry_max_delay"]
    retry_exponential_base: float = ETL_CONFIG["retry_exponential_base"]
    max_workers: int = ETL_CONFIG["max_workers"]

    @property
    def bucket_width(self) -> timedelta:
        return timedelta(minutes=self.bucket_minutes)

    @property
    def watermark_delay(self) -> timedelta:
        return self.bucket_width * self.watermark_buckets

    @property
    def grace_period(self) -> timedelta:
        return self.bucket_width * self.grace_buckets


@dataclass
class LabelSettings:
    lookahead_buckets: int = LABEL_CONFIG["lookahead_buckets"]
    incident_threshold: float = LABEL_CONFIG["incident_threshold"]


@dataclass
class TrainingSettings:
    """Hyperparameters for the logistic scorer"""
    model_family: str = TRAINING_CONFIG["model_family"]
    min_rows: int = TRAINING_CONFIG["min_rows"]
    validation_fraction: float = TRAINING_CONFIG["validation_fraction"]
    learning_rate: float = TRAINING_CONFIG["learning_rate"]
    l2: float = TRAINING_CONFIG["l2"]
    max_iterations: int = TRAINING_CONFIG["max_iterations"]
    tolerance: float = TRAINING_CONFIG["tolerance"]
    std_floor: float = TRAINING_CONFIG["std_floor"]
    include_total_requests: bool = TRAINING_CONFIG["include_total_requests"]

    def feature_order(self) -> List[str]:
        """Feature columns used by a model trained with these settings"""
        if self.include_total_requests:
            return FEATURE_ORDER + [VOLUME_FEATURE]
        return list(FEATURE_ORDER)

    def updated(self, overrides: Dict) -> "TrainingSettings":
        """Copy with hyperparameter overrides applied"""
        unknown = set(overrides) - set(self.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown hyperparameters: {sorted(unknown)}")
        values = {name: getattr(self, name) for name in self.__dataclass_fields__}
        values.update(overrides)
        return TrainingSettings(**values)


@dataclass
class InferenceSettings:
    top_k_factors: int = INFERENCE_CONFIG["top_k_factors"]
    chunk_size: int = INFERENCE_CONFIG["chunk_size"]
    max_workers: int = INFERENCE_CONFIG["max_workers"]


@dataclass
class AlertSettings:
    threshold: float = ALERT_CONFIG["threshold"]
    cooldown: timedelta = timedelta(minutes=ALERT_CONFIG["cooldown_minutes"])
    summary_window: timedelta = timedelta(hours=ALERT_CONFIG["summary_window_hours"])
    bands: List[Tuple[float, Severity]] = field(default_factory=lambda: list(SEVERITY_BANDS))


@dataclass
class BacktestSettings:
    k: int = BACKTEST_CONFIG["k"]
    chunk_size: int = BACKTEST_CONFIG["chunk_size"]


@dataclass
class PipelineSettings:
    """All component settings for one pipeline instance"""
    ingestion: IngestionSettings = field(default_factory=IngestionSettings)
    etl: EtlSettings = field(default_factory=EtlSettings)
    labels: LabelSettings = field(default_factory=LabelSettings)
    training: TrainingSettings = field(default_factory=TrainingSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)
    alerts: AlertSettings = field(default_factory=AlertSettings)
    backtest: BacktestSettings = field(default_factory=BacktestSettings)


def severity_for_score(
    score: float,
    bands: List[Tuple[float, Severity]] = SEVERITY_BANDS
):
    """Map a risk score to its severity tier, or None below the lowest band"""
    for lower_bound, severity in bands:
        if score >= lower_bound:
            return severity
    return None


def validate_config() -> bool:
    """Validate configuration consistency"""
    # Bands must be strictly descending so the first match is the highest tier
    bounds = [bound for bound, _ in SEVERITY_BANDS]
    if bounds != sorted(bounds, reverse=True) or len(set(bounds)) != len(bounds):
        raise ValueError("Severity bands must be strictly descending")

    if not all(0.0 <= b <= 1.0 for b in bounds):
        raise ValueError("Severity bands must lie in [0, 1]")

    if ETL_CONFIG["bucket_minutes"] <= 0:
        raise ValueError("Bucket width must be positive")

    if not 0.0 < TRAINING_CONFIG["validation_fraction"] < 1.0:
        raise ValueError("Validation fraction must be in (0, 1)")

    if LABEL_CONFIG["lookahead_buckets"] <= 0:
        raise ValueError("Lookahead horizon must be positive")

    for name, quantile in LATENCY_QUANTILES.items():
        if not 0.0 < quantile <= 1.0:
            raise ValueError(f"Invalid quantile for {name}: {quantile}")

    return True


# Validate configuration on import
validate_config()
