"""
Backtesting of pinned model versions on labeled history.

Metrics are ranking-based: AUC (probability a random positive outranks a
random negative, ties counted half), precision@K and incident recall@K.
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

import numpy as np
from scipy.stats import rankdata

from .config import BacktestSettings
from .errors import BacktestCancelledError, BacktestError
from .inference import score_rows
from .models import ModelRegistry
from .records import BacktestMetrics, TrainingRow
from .utils import CancellationToken, chunked, timing_decorator


logger = logging.getLogger(__name__)


def rank_auc(scores: Sequence[float], labels: Sequence[int]) -> float:
    """
    Rank-based AUC via the Mann-Whitney U statistic.

    Mid-ranks give tied positive/negative pairs half credit, which equals
    counting concordant pairs and the trapezoidal ROC integral.
    """
    scores = np.asarray(scores, dtype=float)
    labels = np.asarray(labels, dtype=int)
    n_pos = int(labels.sum())
    n_neg = len(labels) - n_pos
    if n_pos == 0 or n_neg == 0:
        raise ValueError("AUC needs at least one positive and one negative")

    ranks = rankdata(scores)  # average ranks for ties
    u = ranks[labels == 1].sum() - n_pos * (n_pos + 1) / 2.0
    return float(u / (n_pos * n_neg))


def ranking_order(scores: Sequence[float], bucket_starts: Sequence[datetime]) -> List[int]:
    """Indices by score descending; ties broken by earlier bucket_start, then input order"""
    return sorted(range(len(scores)), key=lambda i: (-scores[i], bucket_starts[i]))


def compute_metrics(
    scores: Sequence[float],
    labels: Sequence[int],
    bucket_starts: Sequence[datetime],
    k: int,
    model_version: int = 0
) -> BacktestMetrics:
    """
    Compute backtest metrics for scored, labeled rows.

    Raises:
        BacktestError: when there are no positives (or no negatives for AUC)
    """
    if k < 1:
        raise ValueError("k must be at least 1")

    n = len(scores)
    positives = int(sum(labels))
    if positives == 0:
        raise BacktestError(n, positives)
    if positives == n:
        raise BacktestError(n, positives, reason="AUC needs at least one negative")

    order = ranking_order(scores, bucket_starts)
    k_eff = min(k, n)
    hits = sum(labels[i] for i in order[:k_eff])

    return BacktestMetrics(
        auc=rank_auc(scores, labels),
        precision_at_k=hits / k_eff,
        recall_incidents=hits / positives,
        support=positives,
        rows=n,
        k=k_eff,
        model_version=model_version,
    )


class BacktestHarness:
    """Replays labeled feature rows through a pinned model version"""

    def __init__(self, registry: ModelRegistry, settings: Optional[BacktestSettings] = None):
        self.registry = registry
        self.settings = settings or BacktestSettings()

    @timing_decorator
    def run(
        self,
        rows: List[TrainingRow],
        model_version: int,
        k: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> BacktestMetrics:
        """
        Score `rows` with `model_version` and compute ranking metrics.

        Raises:
            ModelNotFoundError: unknown version
            BacktestError: no positives in the evaluated set
            BacktestCancelledError: stopped early; carries partial metrics when defined
        """
        artifact = self.registry.get(model_version)
        k = k if k is not None else self.settings.k

        positives = sum(r.label for r in rows)
        if positives == 0:
            logger.error(f"Backtest of v{model_version}: {len(rows)} rows, no positives")
            raise BacktestError(len(rows), positives)

        ordered = sorted(rows, key=lambda r: (r.bucket_start, r.features.service, r.features.route))
        scores: List[float] = []
        scored_rows: List[TrainingRow] = []

        for chunk in chunked(ordered, self.settings.chunk_size):
            if cancel_token is not None and cancel_token.should_stop():
                raise BacktestCancelledError(
                    len(scored_rows), len(ordered), partial=self._partial(scored_rows, scores, k, model_version)
                )
            predictions = score_rows([r.features for r in chunk], artifact, k=0)
            scores.extend(p.risk_score for p in predictions)
            scored_rows.extend(chunk)

        metrics = compute_metrics(
            scores,
            [r.label for r in scored_rows],
            [r.bucket_start for r in scored_rows],
            k,
            model_version=model_version,
        )
        logger.info(f"Backtest v{model_version}: auc={metrics.auc:.4f}, "
                    f"precision@{metrics.k}={metrics.precision_at_k:.3f}, "
                    f"recall={metrics.recall_incidents:.3f}, support={metrics.support}")
        return metrics

    @staticmethod
    def _partial(
        rows: List[TrainingRow],
        scores: List[float],
        k: int,
        model_version: int
    ) -> Optional[BacktestMetrics]:
        labels = [r.label for r in rows]
        if not rows or sum(labels) in (0, len(labels)):
            return None
        return compute_metrics(scores, labels, [r.bucket_start for r in rows], k, model_version)
