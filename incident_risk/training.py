"""
Model training for incident risk scoring.

Validates the labeled set, splits it chronologically, fits the logistic
scorer and publishes a new immutable model version. Publishing never
activates a version; promotion is a separate, explicit call.
"""

import logging
import math
import threading
from dataclasses import asdict
from typing import Dict, List, Optional, Tuple

import numpy as np
from sklearn.metrics import log_loss as sk_log_loss
from sklearn.metrics import roc_auc_score

from .config import TrainingSettings
from .errors import (
    InsufficientDataError,
    TrainingBusyError,
    TrainingCancelledError,
    TrainingDivergedError,
)
from .models import LogisticRiskModel, ModelRegistry
from .records import ModelArtifact, TrainingRow
from .utils import CancellationToken, timing_decorator


logger = logging.getLogger(__name__)


def chronological_split(
    rows: List[TrainingRow],
    validation_fraction: float
) -> Tuple[List[TrainingRow], List[TrainingRow]]:
    """
    Split rows by time: the earliest rows fit, the latest validate.

    Rows are ordered by (bucket_start, service, route) first, so the split
    is deterministic for a given row set.
    """
    ordered = sorted(rows, key=lambda r: (r.bucket_start, r.features.service, r.features.route))
    n_validation = int(math.floor(len(ordered) * validation_fraction))
    cut = len(ordered) - n_validation
    return ordered[:cut], ordered[cut:]


def rows_to_matrix(rows: List[TrainingRow], feature_order: List[str]) -> Tuple[np.ndarray, np.ndarray]:
    X = np.vstack([r.features.feature_vector(feature_order) for r in rows])
    y = np.array([r.label for r in rows], dtype=int)
    return X, y


class ModelTrainer:
    """
    Trains and publishes logistic risk models.

    Training is single-flight per model family: a second concurrent run for
    the same family fails fast with TrainingBusyError.
    """

    def __init__(self, registry: ModelRegistry, settings: Optional[TrainingSettings] = None):
        self.registry = registry
        self.settings = settings or TrainingSettings()
        self._guard = threading.Lock()
        self._family_locks: Dict[str, threading.Lock] = {}

    def _family_lock(self, family: str) -> threading.Lock:
        with self._guard:
            return self._family_locks.setdefault(family, threading.Lock())

    def is_training(self, family: Optional[str] = None) -> bool:
        lock = self._family_lock(family or self.settings.model_family)
        return lock.locked()

    @timing_decorator
    def train(
        self,
        rows: List[TrainingRow],
        hyperparameters: Optional[Dict] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ModelArtifact:
        """
        Fit and publish a new model version.

        Args:
            rows: Labeled training rows
            hyperparameters: Overrides for TrainingSettings fields
            cancel_token: Cooperative cancellation / time budget

        Returns:
            The published (not activated) artifact

        Raises:
            TrainingBusyError, InsufficientDataError, TrainingCancelledError,
            TrainingDivergedError
        """
        settings = self.settings.updated(hyperparameters or {})
        lock = self._family_lock(settings.model_family)
        if not lock.acquire(blocking=False):
            raise TrainingBusyError(settings.model_family)

        try:
            return self._train_locked(rows, settings, cancel_token)
        finally:
            lock.release()

    def _train_locked(
        self,
        rows: List[TrainingRow],
        settings: TrainingSettings,
        cancel_token: Optional[CancellationToken]
    ) -> ModelArtifact:
        positives = sum(1 for r in rows if r.label == 1)
        negatives = len(rows) - positives
        if len(rows) < settings.min_rows or positives == 0 or negatives == 0:
            logger.warning(f"Refusing to train: {len(rows)} rows, {positives} positive, {negatives} negative")
            raise InsufficientDataError(len(rows), positives, negatives, settings.min_rows)

        fit_rows, validation_rows = chronological_split(rows, settings.validation_fraction)
        fit_positives = sum(r.label for r in fit_rows)
        if fit_positives == 0 or fit_positives == len(fit_rows):
            # The whole set has both classes but the fit split does not
            raise InsufficientDataError(
                len(fit_rows), fit_positives, len(fit_rows) - fit_positives, settings.min_rows
            )

        feature_order = settings.feature_order()
        X_fit, y_fit = rows_to_matrix(fit_rows, feature_order)

        logger.info(f"Training {settings.model_family} model on {len(fit_rows)} rows "
                    f"({fit_positives} positive), validating on {len(validation_rows)}")

        model = LogisticRiskModel(
            feature_order,
            learning_rate=settings.learning_rate,
            l2=settings.l2,
            std_floor=settings.std_floor,
        )
        report = model.fit(
            X_fit,
            y_fit,
            max_iterations=settings.max_iterations,
            tolerance=settings.tolerance,
            should_stop=cancel_token.should_stop if cancel_token is not None else None,
        )

        if not math.isfinite(report.loss) or not np.all(np.isfinite(model.weights)):
            raise TrainingDivergedError(report.iterations)

        metadata = {
            "rows": len(rows),
            "positives": positives,
            "fit_rows": len(fit_rows),
            "validation_rows": len(validation_rows),
            "fit_start": fit_rows[0].bucket_start.isoformat(),
            "fit_end": fit_rows[-1].bucket_start.isoformat(),
            "iterations": report.iterations,
            "loss": report.loss,
            "converged": report.converged,
            "hyperparameters": asdict(settings),
        }
        metadata.update(self._validation_metrics(model, validation_rows, feature_order))

        if report.cancelled:
            partial = model.to_artifact(version=0, family=settings.model_family, metadata=metadata)
            logger.warning(f"Training cancelled after {report.iterations} iterations; nothing published")
            raise TrainingCancelledError(report.iterations, partial=partial)

        if not report.converged:
            logger.warning(f"Training stopped at max_iterations={settings.max_iterations} "
                           f"without reaching tolerance {settings.tolerance}")

        artifact = self.registry.publish(
            model.to_artifact(version=0, family=settings.model_family, metadata=metadata)
        )
        logger.info(f"Model v{artifact.version}: loss={report.loss:.4f}, "
                    f"iterations={report.iterations}, "
                    f"validation_auc={metadata.get('validation_auc')}")
        return artifact

    @staticmethod
    def _validation_metrics(
        model: LogisticRiskModel,
        validation_rows: List[TrainingRow],
        feature_order: List[str]
    ) -> Dict:
        if not validation_rows:
            return {}
        X_val, y_val = rows_to_matrix(validation_rows, feature_order)
        if len(set(y_val.tolist())) < 2:
            return {"validation_positive_rate": float(y_val.mean())}
        p = model.predict_proba(X_val)
        return {
            "validation_auc": float(roc_auc_score(y_val, p)),
            "validation_log_loss": float(sk_log_loss(y_val, p, labels=[0, 1])),
            "validation_positive_rate": float(y_val.mean()),
        }
