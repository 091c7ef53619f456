"""
Boundary operations of the incident risk pipeline.

Wires the stores and components together and exposes the operations the
surrounding service calls. Scheduling lives outside: every time-dependent
operation takes an explicit range or evaluation time.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from .alerts import AlertEvaluator, AlertSink
from .backtest import BacktestHarness
from .config import PipelineSettings
from .errors import TelemetryValidationError
from .feature_windows import EtlRunResult, FeatureAggregator
from .inference import InferenceEngine
from .ingestion import TelemetryIngestor
from .labeling import LabelGenerator, incidents_from_feature_rows
from .models import ModelRegistry
from .records import (
    Alert,
    BacktestMetrics,
    FeatureRow,
    ModelArtifact,
    PredictionResult,
    StoredEvent,
    TelemetryEvent,
    TrainingRow,
)
from .store import FeatureStore, IncidentSource, TelemetryStore
from .training import ModelTrainer
from .utils import CancellationToken, ensure_utc, utc_now


logger = logging.getLogger(__name__)


class IncidentRiskPipeline:
    """
    Facade over ingestion, ETL, training, inference, alerting and backtesting.

    Args:
        settings: Component settings; defaults from config
        incident_source: Recorded incident outcomes for labels. When omitted,
            incidents are derived from feature rows crossing the incident threshold.
        model_dir: Persist the model registry here
        alert_sink: Receives each newly created alert
        clock: Current-time provider
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        incident_source: Optional[IncidentSource] = None,
        model_dir: Optional[Union[str, Path]] = None,
        alert_sink: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utc_now,
        telemetry_store: Optional[TelemetryStore] = None,
        feature_store: Optional[FeatureStore] = None
    ):
        self.settings = settings or PipelineSettings()
        self.clock = clock
        self.telemetry_store = telemetry_store if telemetry_store is not None else TelemetryStore()
        self.feature_store = feature_store if feature_store is not None else FeatureStore()
        self.incident_source = incident_source

        self.ingestor = TelemetryIngestor(self.telemetry_store, self.settings.ingestion, clock=clock)
        self.aggregator = FeatureAggregator(
            self.telemetry_store, self.feature_store, self.settings.etl, clock=clock
        )
        self.labeler = LabelGenerator(self.settings.etl.bucket_width, self.settings.labels)
        self.registry = ModelRegistry(model_dir)
        self.trainer = ModelTrainer(self.registry, self.settings.training)
        self.engine = InferenceEngine(self.registry, self.feature_store, self.settings.inference)
        self.evaluator = AlertEvaluator(self.settings.alerts, sink=alert_sink, clock=clock)
        self.harness = BacktestHarness(self.registry, self.settings.backtest)

        self.last_etl_at: Optional[datetime] = None

    # Ingestion

    def ingest_telemetry(self, event: TelemetryEvent, now: Optional[datetime] = None) -> StoredEvent:
        return self.ingestor.ingest(event, now)

    def ingest_telemetry_batch(self, events: Iterable[TelemetryEvent], now: Optional[datetime] = None) -> Dict:
        return self.ingestor.ingest_batch(events, now)

    def replay_telemetry(self, events: Iterable[TelemetryEvent]) -> Dict:
        """
        Ingest historical events as if each arrived at its own timestamp.

        Used to rebuild features from exported telemetry, where wall-clock
        arrival would make every event look late.
        """
        accepted = 0
        errors = []
        ordered = sorted(enumerate(events), key=lambda pair: ensure_utc(pair[1].timestamp))
        for index, event in ordered:
            try:
                self.ingestor.ingest(event, now=event.timestamp)
                accepted += 1
            except TelemetryValidationError as e:
                errors.append({"index": index, "reasons": e.reasons})

        logger.info(f"Replayed telemetry: {accepted} accepted, {len(errors)} rejected")
        return {"accepted": accepted, "rejected": len(errors), "errors": sorted(errors, key=lambda e: e["index"])}

    def prune_telemetry(self, now: Optional[datetime] = None) -> int:
        now = ensure_utc(now or self.clock())
        removed = self.ingestor.prune(now)
        self.aggregator.forget_before(now - self.settings.ingestion.retention)
        return removed

    def summarize_telemetry(self) -> Dict[str, float]:
        return self.ingestor.summarize()

    # ETL

    def run_etl(
        self,
        window_start: datetime,
        window_end: datetime,
        now: Optional[datetime] = None
    ) -> int:
        """Aggregate closed buckets in the window; returns rows produced or updated"""
        result = self.aggregator.run_etl(window_start, window_end, now=now)
        self.last_etl_at = result.ran_at
        return result.rows_written

    @property
    def last_etl_result(self) -> Optional[EtlRunResult]:
        return self.aggregator.last_run

    # Training and model lifecycle

    def training_rows(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[TrainingRow]:
        """Label stored feature rows in [start, end)"""
        rows = self.feature_store.read_range(start, end)
        history = self.feature_store.read_range()
        incidents = self.incident_source
        if incidents is None:
            # Derive from every stored row so lookahead windows past `end` still see outcomes
            incidents = IncidentSource(incidents_from_feature_rows(
                history, self.settings.labels.incident_threshold
            ))
        observed_until = None
        if history:
            observed_until = history[-1].bucket_start + self.settings.etl.bucket_width
        return self.labeler.generate_labels(rows, incidents, observed_until=observed_until)

    def train_model(
        self,
        hyperparameters: Optional[Dict] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> int:
        """Train on labeled history and publish a new version; returns its id"""
        rows = self.training_rows(start, end)
        artifact = self.trainer.train(rows, hyperparameters, cancel_token=cancel_token)
        return artifact.version

    def activate_model(self, version: int) -> ModelArtifact:
        return self.registry.activate(version)

    def list_models(self) -> List[Dict]:
        active = self.registry.active_version
        return [
            {
                "version": artifact.version,
                "family": artifact.family,
                "trained_at": artifact.trained_at,
                "active": artifact.version == active,
                "metadata": artifact.metadata_dict(),
            }
            for artifact in self.registry.versions()
        ]

    # Inference and alerting

    def infer_batch(self, rows: List[FeatureRow], version: Optional[int] = None) -> List[PredictionResult]:
        return self.engine.infer_batch(rows, version)

    def infer_live(self, service: Optional[str] = None, route: Optional[str] = None) -> List[PredictionResult]:
        return self.engine.infer_live(service, route)

    def evaluate_alerts(
        self,
        predictions: Iterable[PredictionResult],
        now: Optional[datetime] = None
    ) -> List[Alert]:
        return self.evaluator.evaluate(predictions, now)

    def acknowledge_alert(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        return self.evaluator.acknowledge(alert_id, now)

    def resolve_alert(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        return self.evaluator.resolve(alert_id, now)

    # Backtesting

    def run_backtest(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        model_version: int,
        k: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> BacktestMetrics:
        rows = self.training_rows(start, end)
        return self.harness.run(rows, model_version, k=k, cancel_token=cancel_token)

    # Status

    def get_summary(self, now: Optional[datetime] = None) -> Dict:
        now = ensure_utc(now or self.clock())
        return {
            "active_model_version": self.registry.active_version,
            "model_versions": len(self.registry.versions()),
            "alerts": self.evaluator.recent_counts(now),
            "last_etl_run": self.last_etl_at,
            "telemetry": self.summarize_telemetry(),
            "feature_rows": len(self.feature_store),
            "late_events_dropped": self.aggregator.late_drop_count,
            "failed_buckets": len(self.aggregator.failed_buckets),
        }
