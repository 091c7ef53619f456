"""
Label construction for incident risk training.

Joins historical feature rows with recorded incident outcomes. A row is
positive when an incident for the same (service, route) occurs within the
lookahead horizon after the row's bucket ends, so labels only ever use
information strictly after the features. Never used on the serving path.
"""

import logging
from bisect import bisect_left
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import pandas as pd

from .config import LabelSettings
from .records import FeatureRow, IncidentRecord, TrainingRow
from .store import IncidentSource


logger = logging.getLogger(__name__)


class LabelGenerator:
    """
    Generates training labels from feature rows with strict no-leakage guarantees.

    For a row with bucket [s, s + w), label = 1 iff an incident for the same
    series occurs in [s + w, s + w + lookahead * w).
    """

    def __init__(
        self,
        bucket_width: timedelta,
        settings: Optional[LabelSettings] = None
    ):
        self.bucket_width = bucket_width
        self.settings = settings or LabelSettings()

    @property
    def horizon(self) -> timedelta:
        return self.bucket_width * self.settings.lookahead_buckets

    def label_window(self, bucket_start: datetime):
        """[start, end) of the lookahead window for a bucket"""
        start = bucket_start + self.bucket_width
        return start, start + self.horizon

    def generate_labels(
        self,
        feature_rows: Iterable[FeatureRow],
        incidents: IncidentSource,
        observed_until: Optional[datetime] = None
    ) -> List[TrainingRow]:
        """
        Label feature rows.

        A row whose lookahead window runs past `observed_until` has an unknown
        outcome unless an incident was already seen inside the window. Such
        rows are left out rather than labeled negative.

        Args:
            feature_rows: Historical feature rows
            incidents: Source of recorded incident times per series
            observed_until: End of the observed history; None labels every row

        Returns:
            Training rows ordered by bucket_start, then service and route
        """
        rows = sorted(feature_rows, key=lambda r: (r.bucket_start, r.service, r.route))
        cache = {}
        labeled = []
        unresolved = 0

        for row in rows:
            times = cache.get(row.series_key)
            if times is None:
                times = incidents.incident_times(row.series_key)
                cache[row.series_key] = times

            start, end = self.label_window(row.bucket_start)
            index = bisect_left(times, start)
            label = 1 if index < len(times) and times[index] < end else 0
            if label == 0 and observed_until is not None and end > observed_until:
                unresolved += 1
                continue
            labeled.append(TrainingRow(features=row, label=label))

        positives = sum(r.label for r in labeled)
        logger.info(f"Labeled {len(labeled)} rows: {positives} positive "
                    f"(lookahead {self.settings.lookahead_buckets} buckets)")
        if unresolved:
            logger.info(f"Skipped {unresolved} rows whose lookahead window ends after the observed history")
        return labeled


def incidents_from_feature_rows(
    feature_rows: Iterable[FeatureRow],
    threshold: float
) -> List[IncidentRecord]:
    """
    Derive incidents from buckets whose error or timeout rate crosses a threshold.

    Used when no external incident source is wired in. The incident is
    placed at the bucket start, so it only labels earlier buckets.
    """
    return [
        IncidentRecord(service=row.service, route=row.route, occurred_at=row.bucket_start)
        for row in feature_rows
        if row.error_rate >= threshold or row.timeout_rate >= threshold
    ]


def training_rows_to_dataframe(rows: List[TrainingRow]) -> pd.DataFrame:
    """Convert training rows to DataFrame format"""
    records = []
    for row in rows:
        record = row.features.to_dict()
        record["label"] = row.label
        records.append(record)
    return pd.DataFrame(records)


def label_statistics(rows: List[TrainingRow]) -> pd.DataFrame:
    """Per-series summary of labeled rows"""
    df = training_rows_to_dataframe(rows)
    if df.empty:
        return pd.DataFrame(columns=["service", "route", "rows", "positives", "positive_rate"])

    stats = (
        df.groupby(["service", "route"])["label"]
        .agg(rows="count", positives="sum")
        .reset_index()
    )
    stats["positive_rate"] = stats["positives"] / stats["rows"]
    return stats
