"""
Risk scoring with per-feature explanations.

Scores feature rows against an immutable model snapshot. The contribution
of feature i is weight_i * normalized_feature_i; the top-K contributions
by magnitude are returned with their sign.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import numpy as np
from scipy.special import expit

from .config import InferenceSettings
from .models import ModelRegistry, normalize
from .records import FeatureRow, ModelArtifact, PredictionResult
from .store import FeatureStore
from .utils import chunked


logger = logging.getLogger(__name__)


def top_factors(
    contributions: np.ndarray,
    feature_order: Tuple[str, ...],
    k: int
) -> Tuple[Tuple[str, float], ...]:
    """Top-k (feature, contribution) by |contribution|, ties kept in feature order"""
    order = sorted(range(len(feature_order)), key=lambda i: -abs(contributions[i]))
    return tuple((feature_order[i], float(contributions[i])) for i in order[:k])


def score_rows(
    rows: List[FeatureRow],
    artifact: ModelArtifact,
    k: int
) -> List[PredictionResult]:
    """Score rows against one artifact; pure function of its inputs"""
    if not rows:
        return []

    feature_order = list(artifact.feature_order)
    X = np.vstack([row.feature_vector(feature_order) for row in rows])
    contributions = normalize(X, artifact.mean_array, artifact.std_array) * artifact.weight_array
    scores = expit(contributions.sum(axis=1) + artifact.bias)

    return [
        PredictionResult(
            service=row.service,
            route=row.route,
            bucket_start=row.bucket_start,
            risk_score=float(scores[i]),
            top_factors=top_factors(contributions[i], artifact.feature_order, k),
            model_version=artifact.version,
        )
        for i, row in enumerate(rows)
    ]


class InferenceEngine:
    """
    Batch and live scoring.

    Batch mode scores caller-supplied rows with no side effects; live mode
    scores the latest closed bucket of every monitored series against the
    currently active model.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        feature_store: FeatureStore,
        settings: Optional[InferenceSettings] = None
    ):
        self.registry = registry
        self.feature_store = feature_store
        self.settings = settings or InferenceSettings()

    def score(self, row: FeatureRow, artifact: ModelArtifact) -> PredictionResult:
        return score_rows([row], artifact, self.settings.top_k_factors)[0]

    def infer_batch(
        self,
        rows: List[FeatureRow],
        version: Optional[int] = None
    ) -> List[PredictionResult]:
        """
        Score historical rows, in input order.

        Args:
            rows: Feature rows to score
            version: Pinned model version; the active one when omitted

        Raises:
            ModelNotFoundError: unknown version, or nothing activated
        """
        artifact = self.registry.get(version) if version is not None else self.registry.active()
        k = self.settings.top_k_factors

        chunks = list(chunked(rows, self.settings.chunk_size))
        if len(chunks) <= 1:
            return score_rows(rows, artifact, k)

        # Chunks are independent; map preserves input order
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            results = executor.map(lambda chunk: score_rows(chunk, artifact, k), chunks)
            predictions = [p for chunk_result in results for p in chunk_result]

        logger.info(f"Scored {len(predictions)} rows with model v{artifact.version}")
        return predictions

    def infer_live(
        self,
        service: Optional[str] = None,
        route: Optional[str] = None
    ) -> List[PredictionResult]:
        """Score the most recent closed bucket of each monitored series"""
        artifact = self.registry.active()
        latest = self.feature_store.latest_per_series()
        rows = [
            row for (svc, rt), row in sorted(latest.items())
            if (service is None or svc == service) and (route is None or rt == route)
        ]
        predictions = score_rows(rows, artifact, self.settings.top_k_factors)
        logger.info(f"Live inference: {len(predictions)} series scored with model v{artifact.version}")
        return predictions
