"""
Telemetry ingestion with validation.

Valid events are appended to the raw telemetry store; malformed events are
rejected, counted and never retried.
"""

import logging
import math
import threading
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from prometheus_client import Counter as PromCounter

from .config import IngestionSettings
from .errors import TelemetryValidationError
from .records import StoredEvent, TelemetryEvent
from .store import TelemetryStore
from .utils import ensure_utc, safe_divide, utc_now


logger = logging.getLogger(__name__)

TELEMETRY_ACCEPTED = PromCounter(
    "incident_risk_telemetry_accepted_total", "Telemetry events accepted"
)
TELEMETRY_REJECTED = PromCounter(
    "incident_risk_telemetry_rejected_total", "Telemetry events rejected", ["reason"]
)

NON_NEGATIVE_FIELDS = ("latency_ms", "memory_mb", "cpu_pct", "retries")


class TelemetryIngestor:
    """Validates telemetry events and records them durably"""

    def __init__(
        self,
        store: TelemetryStore,
        settings: Optional[IngestionSettings] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.settings = settings or IngestionSettings()
        self.clock = clock
        self._accepted_total = 0
        self._rejections: Counter = Counter()
        self._stats_lock = threading.Lock()

    def validate(self, event: TelemetryEvent, now: Optional[datetime] = None) -> List[str]:
        """Return the list of failed checks for an event (empty when valid)"""
        now = ensure_utc(now or self.clock())
        reasons = []

        if not event.service or not event.service.strip():
            reasons.append("service is empty")
        if not event.route or not event.route.strip():
            reasons.append("route is empty")

        for name in NON_NEGATIVE_FIELDS:
            value = getattr(event, name)
            if value is None or not math.isfinite(value):
                reasons.append(f"{name} is not a finite number")
            elif value < 0:
                reasons.append(f"{name} is negative")

        if not self.settings.min_status_code <= event.status_code <= self.settings.max_status_code:
            reasons.append(f"status_code {event.status_code} out of range")

        if math.isfinite(event.cpu_pct) and event.cpu_pct > self.settings.max_cpu_pct:
            reasons.append(f"cpu_pct above {self.settings.max_cpu_pct}")

        timestamp = ensure_utc(event.timestamp)
        if timestamp > now + self.settings.clock_skew_tolerance:
            reasons.append("timestamp is in the future")
        elif timestamp < now - self.settings.retention:
            reasons.append("timestamp is older than the retention horizon")

        return reasons

    def ingest(self, event: TelemetryEvent, now: Optional[datetime] = None) -> StoredEvent:
        """
        Validate and append a single event.

        Raises:
            TelemetryValidationError: if any check fails
        """
        now = ensure_utc(now or self.clock())
        reasons = self.validate(event, now)
        if reasons:
            self._count_rejection(reasons)
            logger.debug(f"Rejected telemetry for {event.service}{event.route}: {reasons}")
            raise TelemetryValidationError(reasons)

        # Normalize to UTC so bucketing never mixes offsets
        if event.timestamp.tzinfo is None or event.timestamp.utcoffset():
            event = TelemetryEvent(
                timestamp=ensure_utc(event.timestamp),
                service=event.service,
                route=event.route,
                status_code=event.status_code,
                latency_ms=event.latency_ms,
                memory_mb=event.memory_mb,
                cpu_pct=event.cpu_pct,
                retries=event.retries,
                timeout=event.timeout,
            )

        stored = self.store.append(event, received_at=now)
        with self._stats_lock:
            self._accepted_total += 1
        TELEMETRY_ACCEPTED.inc()
        return stored

    def ingest_batch(self, events: Iterable[TelemetryEvent], now: Optional[datetime] = None) -> Dict:
        """
        Ingest many events; valid ones are accepted even if others fail.

        Returns:
            Dictionary with accepted/rejected counts and per-index errors
        """
        accepted = 0
        errors = []
        for index, event in enumerate(events):
            try:
                self.ingest(event, now)
                accepted += 1
            except TelemetryValidationError as e:
                errors.append({"index": index, "reasons": e.reasons})

        if errors:
            logger.warning(f"Telemetry batch: {accepted} accepted, {len(errors)} rejected")
        return {"accepted": accepted, "rejected": len(errors), "errors": errors}

    def _count_rejection(self, reasons: List[str]) -> None:
        with self._stats_lock:
            for reason in reasons:
                self._rejections[reason] += 1
            self._rejections["total"] += 1
        for reason in reasons:
            TELEMETRY_REJECTED.labels(reason=reason.split(" ")[0]).inc()

    @property
    def accepted_count(self) -> int:
        with self._stats_lock:
            return self._accepted_total

    @property
    def rejected_count(self) -> int:
        with self._stats_lock:
            return self._rejections["total"]

    def rejection_reasons(self) -> Dict[str, int]:
        with self._stats_lock:
            return {k: v for k, v in self._rejections.items() if k != "total"}

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop raw events that have aged past the retention horizon"""
        now = ensure_utc(now or self.clock())
        return self.store.prune(now - self.settings.retention)

    def summarize(self) -> Dict[str, float]:
        """Totals over retained raw telemetry"""
        events = [s.event for s in self.store.all_events()]
        total = len(events)
        errors = sum(1 for e in events if e.is_error)
        timeouts = sum(1 for e in events if e.timeout)
        return {
            "total": total,
            "error_rate": safe_divide(errors, total),
            "timeout_rate": safe_divide(timeouts, total),
            "rejected": self.rejected_count,
        }
