"""
Tests for ranking metrics and the backtest harness.
"""

from datetime import timedelta

import numpy as np
import pytest
from sklearn.metrics import roc_auc_score

from incident_risk.backtest import BacktestHarness, compute_metrics, rank_auc, ranking_order
from incident_risk.config import FEATURE_ORDER, BacktestSettings
from incident_risk.errors import BacktestCancelledError, BacktestError, ModelNotFoundError
from incident_risk.models import ModelRegistry
from incident_risk.records import TrainingRow

from conftest import T0, make_artifact, make_row


WIDTH = timedelta(minutes=5)


class StopAfter:
    """Cancellation token that trips after a number of checks"""

    def __init__(self, checks: int):
        self.remaining = checks

    def should_stop(self) -> bool:
        self.remaining -= 1
        return self.remaining < 0


def history(labels, error_rates=None):
    error_rates = error_rates or [0.5 if label else 0.01 for label in labels]
    return [
        TrainingRow(features=make_row(T0 + i * WIDTH, error_rate=rate), label=label)
        for i, (label, rate) in enumerate(zip(labels, error_rates))
    ]


@pytest.fixture
def registry():
    registry = ModelRegistry()
    weights = [5.0 if name == "error_rate" else 0.0 for name in FEATURE_ORDER]
    registry.publish(make_artifact(weights, bias=-1.0))
    return registry


class TestMetrics:
    """Test AUC, precision@K and recall"""

    def test_two_row_sanity(self):
        metrics = compute_metrics([0.9, 0.1], [1, 0], [T0, T0 + WIDTH], k=1)
        assert metrics.auc == 1.0
        assert metrics.precision_at_k == 1.0
        assert metrics.recall_incidents == 1.0
        assert metrics.support == 1

    def test_ties_count_half(self):
        assert rank_auc([0.5, 0.5], [1, 0]) == pytest.approx(0.5)
        assert rank_auc([0.9, 0.5, 0.5], [1, 1, 0]) == pytest.approx(0.75)

    def test_matches_pairwise_definition(self):
        rng = np.random.RandomState(5)
        scores = np.round(rng.rand(80), 1)
        labels = (rng.rand(80) < 0.3).astype(int)

        assert rank_auc(scores, labels) == pytest.approx(roc_auc_score(labels, scores))

    def test_inverted_ranking(self):
        assert rank_auc([0.1, 0.9], [1, 0]) == 0.0

    def test_ties_broken_by_earlier_bucket(self):
        starts = [T0 + WIDTH, T0, T0 + 2 * WIDTH]
        assert ranking_order([0.5, 0.5, 0.7], starts) == [2, 1, 0]

        metrics = compute_metrics([0.5, 0.5], [0, 1], [T0 + WIDTH, T0], k=1)
        assert metrics.precision_at_k == 1.0

    def test_precision_and_recall_at_k(self):
        scores = [0.9, 0.8, 0.7, 0.6, 0.5, 0.4]
        labels = [1, 0, 1, 0, 1, 0]
        starts = [T0 + i * WIDTH for i in range(6)]

        metrics = compute_metrics(scores, labels, starts, k=2)
        assert metrics.precision_at_k == pytest.approx(0.5)
        assert metrics.recall_incidents == pytest.approx(1 / 3)
        assert metrics.support == 3

    def test_k_larger_than_rows(self):
        metrics = compute_metrics([0.9, 0.1, 0.2], [1, 0, 0], [T0] * 3, k=20)
        assert metrics.k == 3
        assert metrics.recall_incidents == 1.0
        assert metrics.precision_at_k == pytest.approx(1 / 3)

    def test_no_positives(self):
        with pytest.raises(BacktestError) as exc_info:
            compute_metrics([0.2, 0.4], [0, 0], [T0, T0], k=1)
        assert exc_info.value.rows == 2
        assert exc_info.value.positives == 0

    def test_no_negatives(self):
        with pytest.raises(BacktestError):
            compute_metrics([0.2, 0.4], [1, 1], [T0, T0], k=1)

    def test_invalid_k(self):
        with pytest.raises(ValueError):
            compute_metrics([0.9, 0.1], [1, 0], [T0, T0], k=0)


class TestBacktestHarness:
    """Test replay of labeled history through a pinned version"""

    def test_run(self, registry):
        rows = history([0, 1, 0, 0, 1, 0, 0, 0])
        metrics = BacktestHarness(registry).run(rows, model_version=1, k=2)

        assert metrics.auc == 1.0
        assert metrics.precision_at_k == 1.0
        assert metrics.recall_incidents == 1.0
        assert metrics.support == 2
        assert metrics.rows == 8
        assert metrics.model_version == 1

    def test_default_k(self, registry):
        metrics = BacktestHarness(registry, BacktestSettings(k=3)).run(history([1, 0, 0, 0, 0]), 1)
        assert metrics.k == 3

    def test_unknown_version(self, registry):
        with pytest.raises(ModelNotFoundError):
            BacktestHarness(registry).run(history([1, 0]), model_version=9)

    def test_no_positives_reports_counts(self, registry):
        with pytest.raises(BacktestError) as exc_info:
            BacktestHarness(registry).run(history([0, 0, 0]), model_version=1)
        assert exc_info.value.rows == 3
        assert "3 rows" in str(exc_info.value)

    def test_cancel_before_scoring(self, registry):
        harness = BacktestHarness(registry, BacktestSettings(chunk_size=2))
        with pytest.raises(BacktestCancelledError) as exc_info:
            harness.run(history([1, 0, 0, 1]), 1, cancel_token=StopAfter(0))

        assert exc_info.value.rows_scored == 0
        assert exc_info.value.partial is None

    def test_cancel_midway_returns_partial_metrics(self, registry):
        harness = BacktestHarness(registry, BacktestSettings(chunk_size=2))
        with pytest.raises(BacktestCancelledError) as exc_info:
            harness.run(history([1, 0, 0, 1, 0, 0]), 1, k=1, cancel_token=StopAfter(1))

        error = exc_info.value
        assert (error.rows_scored, error.rows_total) == (2, 6)
        assert error.partial.rows == 2
        assert error.partial.auc == 1.0
