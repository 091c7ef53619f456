"""
Preventive alert decisioning.

Turns high-risk predictions into alerts, at most one open alert per
(service, route) within the cooldown window, and never more than one alert
for the same bucket. Evaluation for one series is serialized; series are
independent, and a failure in one never blocks the others.
"""

import logging
import threading
from collections import Counter, defaultdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from prometheus_client import Counter as PromCounter

from .config import ALERT_TRANSITIONS, AlertSettings, AlertStatus, Severity, severity_for_score
from .errors import AlertNotFoundError, AlertTransitionError
from .records import Alert, BucketKey, PredictionResult, SeriesKey
from .utils import KeyedLocks, ensure_utc, utc_now


logger = logging.getLogger(__name__)

ALERTS_CREATED = PromCounter(
    "incident_risk_alerts_created_total", "Preventive alerts created", ["severity"]
)
ALERTS_SUPPRESSED = PromCounter(
    "incident_risk_alerts_suppressed_total", "Alert candidates suppressed", ["reason"]
)

AlertSink = Callable[[Alert], None]


class AlertEvaluator:
    """Stateful alert deduplication with cooldown and status transitions"""

    def __init__(
        self,
        settings: Optional[AlertSettings] = None,
        sink: Optional[AlertSink] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.settings = settings or AlertSettings()
        self.sink = sink
        self.clock = clock
        self._locks = KeyedLocks()
        self._alerts: Dict[str, Alert] = {}
        self._by_series: Dict[SeriesKey, List[str]] = defaultdict(list)
        self._alerted_buckets: Set[BucketKey] = set()
        self.suppressed: Counter = Counter()
        self._stats_lock = threading.Lock()
        self.failed_series: Dict[SeriesKey, str] = {}

    def evaluate(
        self,
        predictions: Iterable[PredictionResult],
        now: Optional[datetime] = None
    ) -> List[Alert]:
        """
        Create alerts for qualifying predictions.

        Args:
            predictions: Scored buckets, any mix of series
            now: Evaluation time, used as created_at and for the cooldown check

        Returns:
            Newly created alerts only
        """
        now = ensure_utc(now or self.clock())
        grouped: Dict[SeriesKey, List[PredictionResult]] = defaultdict(list)
        for prediction in predictions:
            grouped[prediction.series_key].append(prediction)

        created: List[Alert] = []
        for key in sorted(grouped):
            try:
                with self._locks.hold(key):
                    for prediction in sorted(grouped[key], key=lambda p: p.bucket_start):
                        alert = self._evaluate_one(prediction, now)
                        if alert is not None:
                            created.append(alert)
                self.failed_series.pop(key, None)
            except Exception as e:
                # Isolate the failure to this series
                self.failed_series[key] = str(e)
                logger.exception(f"Alert evaluation failed for {key[0]}{key[1]}: {e}")

        if created:
            logger.info(f"Created {len(created)} alerts")

        for alert in created:
            self._deliver(alert)
        return created

    def _evaluate_one(self, prediction: PredictionResult, now: datetime) -> Optional[Alert]:
        if prediction.risk_score < self.settings.threshold:
            return None

        severity = severity_for_score(prediction.risk_score, self.settings.bands)
        if severity is None:
            return None

        bucket_key = (prediction.service, prediction.route, prediction.bucket_start)
        if bucket_key in self._alerted_buckets:
            self._suppress("already_alerted")
            return None

        if self._open_alert_in_cooldown(prediction.series_key, now) is not None:
            self._suppress("cooldown")
            return None

        alert = Alert(
            service=prediction.service,
            route=prediction.route,
            severity=severity,
            risk_score=prediction.risk_score,
            bucket_start=prediction.bucket_start,
            created_at=now,
        )
        self._alerts[alert.alert_id] = alert
        self._by_series[prediction.series_key].append(alert.alert_id)
        self._alerted_buckets.add(bucket_key)
        ALERTS_CREATED.labels(severity=severity.value).inc()
        return alert

    def _open_alert_in_cooldown(self, key: SeriesKey, now: datetime) -> Optional[Alert]:
        cutoff = now - self.settings.cooldown
        for alert_id in reversed(self._by_series.get(key, [])):
            alert = self._alerts[alert_id]
            if alert.status == AlertStatus.OPEN and alert.created_at > cutoff:
                return alert
        return None

    def _suppress(self, reason: str) -> None:
        with self._stats_lock:
            self.suppressed[reason] += 1
        ALERTS_SUPPRESSED.labels(reason=reason).inc()

    def _deliver(self, alert: Alert) -> None:
        if self.sink is None:
            return
        try:
            self.sink(alert)
        except Exception as e:
            # Delivery is best-effort; the alert itself stays recorded
            logger.error(f"Alert delivery failed for {alert.alert_id}: {e}")

    # Status transitions

    def _transition(self, alert_id: str, target: AlertStatus, now: Optional[datetime]) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        with self._locks.hold(alert.series_key):
            if target not in ALERT_TRANSITIONS[alert.status]:
                raise AlertTransitionError(alert_id, alert.status.value, target.value)
            alert.status = target
            alert.updated_at = ensure_utc(now or self.clock())
        logger.info(f"Alert {alert_id} -> {target.value}")
        return alert

    def acknowledge(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        return self._transition(alert_id, AlertStatus.ACKNOWLEDGED, now)

    def resolve(self, alert_id: str, now: Optional[datetime] = None) -> Alert:
        return self._transition(alert_id, AlertStatus.RESOLVED, now)

    # Queries

    def get(self, alert_id: str) -> Alert:
        alert = self._alerts.get(alert_id)
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    def alerts(self, status: Optional[AlertStatus] = None) -> List[Alert]:
        result = [a for a in self._alerts.values() if status is None or a.status == status]
        return sorted(result, key=lambda a: a.created_at)

    def recent_counts(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Alert counts by severity and status within the summary window"""
        now = ensure_utc(now or self.clock())
        cutoff = now - self.settings.summary_window
        recent = [a for a in self._alerts.values() if a.created_at >= cutoff]
        counts = {"total": len(recent)}
        for severity in Severity:
            counts[severity.value] = sum(1 for a in recent if a.severity == severity)
        for status in AlertStatus:
            counts[status.value] = sum(1 for a in recent if a.status == status)
        return counts
