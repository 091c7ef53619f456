"""
Exceptions raised by the incident risk pipeline.
"""

from typing import Any, List, Optional


class IncidentRiskError(Exception):
    """Base class for all pipeline errors"""
    pass


class TelemetryValidationError(IncidentRiskError):
    """Raised when a telemetry event fails validation at ingestion."""

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__(f"Invalid telemetry event: {'; '.join(self.reasons)}")


class StoreUnavailableError(IncidentRiskError):
    """Raised by a store collaborator when a read or write cannot be served."""
    pass


class InsufficientDataError(IncidentRiskError):
    """Raised when a training set is too small or has a single class."""

    def __init__(self, rows: int, positives: int, negatives: int, min_rows: int):
        self.rows = rows
        self.positives = positives
        self.negatives = negatives
        self.min_rows = min_rows
        super().__init__(
            f"Insufficient training data: {rows} rows (minimum {min_rows}), "
            f"{positives} positive, {negatives} negative"
        )


class TrainingBusyError(IncidentRiskError):
    """Raised when a training run for the same model family is in progress."""

    def __init__(self, family: str):
        self.family = family
        super().__init__(f"Training already in progress for model family '{family}'")


class TrainingCancelledError(IncidentRiskError):
    """
    Raised when training stops on a cancellation or time-budget signal.

    `partial` holds the best artifact reached so far. It is never published.
    """

    def __init__(self, iterations: int, partial: Optional[Any] = None):
        self.iterations = iterations
        self.partial = partial
        super().__init__(f"Training cancelled after {iterations} iterations")


class ModelNotFoundError(IncidentRiskError):
    """Raised when a model version does not exist or no version is active."""

    def __init__(self, version: Optional[int] = None):
        self.version = version
        if version is None:
            message = "No model version has been activated"
        else:
            message = f"Model version {version} not found"
        super().__init__(message)


class BacktestError(IncidentRiskError):
    """Raised when a backtest cannot produce defined metrics."""

    def __init__(self, rows: int, positives: int, reason: str = "AUC and recall need at least one positive"):
        self.rows = rows
        self.positives = positives
        super().__init__(
            f"Backtest undefined: {rows} rows evaluated, {positives} positives ({reason})"
        )


class BacktestCancelledError(IncidentRiskError):
    """Raised when a backtest stops early. `partial` holds metrics over rows scored so far, if defined."""

    def __init__(self, rows_scored: int, rows_total: int, partial: Optional[Any] = None):
        self.rows_scored = rows_scored
        self.rows_total = rows_total
        self.partial = partial
        super().__init__(f"Backtest cancelled after scoring {rows_scored}/{rows_total} rows")


class AlertNotFoundError(IncidentRiskError):
    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert {alert_id} not found")


class AlertTransitionError(IncidentRiskError):
    """Raised on a status change the alert lifecycle does not allow."""

    def __init__(self, alert_id: str, current: str, requested: str):
        self.alert_id = alert_id
        self.current = current
        self.requested = requested
        super().__init__(f"Alert {alert_id} cannot move from {current} to {requested}")


class TrainingDivergedError(IncidentRiskError):
    """Raised when gradient descent produces non-finite weights or loss."""

    def __init__(self, iterations: int):
        self.iterations = iterations
        super().__init__(f"Training diverged after {iterations} iterations; lower the learning rate")
