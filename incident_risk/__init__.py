"""
Incident Risk Pipeline

Early-warning incident prediction for request-serving services.
Aggregates request telemetry into fixed time buckets, trains a logistic
risk scorer on historical incidents, scores live buckets with per-feature
explanations and raises deduplicated preventive alerts.

Research Question: Do latency, error and saturation signals in a service's
recent buckets reliably predict an incident in the next few buckets?
"""

__version__ = "1.0.0"
__author__ = "Incident Risk Team"

from . import config
from . import utils

__all__ = ["config", "utils"]
