"""
File readers and writers for exported telemetry, feature rows and incidents.

CSV and Parquet are both accepted for inputs; feature rows are written as
Parquet through pyarrow. Timestamps are parsed as UTC.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Sequence, Union

import pandas as pd

from .config import FEATURE_ORDER, VOLUME_FEATURE
from .records import Alert, FeatureRow, IncidentRecord, PredictionResult, TelemetryEvent
from .utils import ensure_directory


logger = logging.getLogger(__name__)

TELEMETRY_COLUMNS = [
    "timestamp", "service", "route", "status_code", "latency_ms",
    "memory_mb", "cpu_pct", "retries", "timeout",
]
FEATURE_COLUMNS = ["service", "route", "bucket_start"] + FEATURE_ORDER + [VOLUME_FEATURE]
INCIDENT_COLUMNS = ["service", "route", "occurred_at"]


def validate_dataframe_columns(df: pd.DataFrame, required: Sequence[str], source: str = "") -> None:
    """Raise ValueError naming the missing columns"""
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"{source or 'DataFrame'} is missing columns: {missing}")


def read_table(path: Union[str, Path]) -> pd.DataFrame:
    """Read a CSV or Parquet file by extension"""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input not found: {path}")

    if path.suffix.lower() in (".parquet", ".pq"):
        df = pd.read_parquet(path, engine="pyarrow")
    else:
        df = pd.read_csv(path)
    logger.info(f"Read {len(df)} rows from {path}")
    return df


def _utc_column(series: pd.Series) -> List:
    return [ts.to_pydatetime() for ts in pd.to_datetime(series, utc=True)]


def dataframe_to_events(df: pd.DataFrame) -> List[TelemetryEvent]:
    validate_dataframe_columns(df, TELEMETRY_COLUMNS, "Telemetry")
    timestamps = _utc_column(df["timestamp"])
    events = []
    for ts, record in zip(timestamps, df[TELEMETRY_COLUMNS[1:]].to_dict("records")):
        events.append(TelemetryEvent(
            timestamp=ts,
            service=str(record["service"]),
            route=str(record["route"]),
            status_code=int(record["status_code"]),
            latency_ms=float(record["latency_ms"]),
            memory_mb=float(record["memory_mb"]),
            cpu_pct=float(record["cpu_pct"]),
            retries=int(record["retries"]),
            timeout=bool(record["timeout"]),
        ))
    return events


def read_telemetry(path: Union[str, Path]) -> List[TelemetryEvent]:
    return dataframe_to_events(read_table(path))


def feature_rows_to_dataframe(rows: Iterable[FeatureRow]) -> pd.DataFrame:
    df = pd.DataFrame([row.to_dict() for row in rows], columns=FEATURE_COLUMNS)
    if not df.empty:
        df["bucket_start"] = pd.to_datetime(df["bucket_start"], utc=True)
    return df


def dataframe_to_feature_rows(df: pd.DataFrame) -> List[FeatureRow]:
    validate_dataframe_columns(df, FEATURE_COLUMNS, "Feature rows")
    starts = _utc_column(df["bucket_start"])
    rows = []
    for start, record in zip(starts, df.to_dict("records")):
        values = {name: float(record[name]) for name in FEATURE_ORDER}
        rows.append(FeatureRow(
            service=str(record["service"]),
            route=str(record["route"]),
            bucket_start=start,
            total_requests=int(record[VOLUME_FEATURE]),
            **values
        ))
    return rows


def write_feature_rows(rows: Iterable[FeatureRow], path: Union[str, Path]) -> Path:
    """Write feature rows to Parquet"""
    path = Path(path)
    ensure_directory(path.parent)
    df = feature_rows_to_dataframe(rows)
    df.to_parquet(path, engine="pyarrow", index=False)
    logger.info(f"Wrote {len(df)} feature rows to {path}")
    return path


def read_feature_rows(path: Union[str, Path]) -> List[FeatureRow]:
    return dataframe_to_feature_rows(read_table(path))


def read_incidents(path: Union[str, Path]) -> List[IncidentRecord]:
    """Read recorded incidents (service, route, occurred_at)"""
    df = read_table(path)
    validate_dataframe_columns(df, INCIDENT_COLUMNS, "Incidents")
    times = _utc_column(df["occurred_at"])
    return [
        IncidentRecord(service=str(service), route=str(route), occurred_at=ts)
        for service, route, ts in zip(df["service"], df["route"], times)
    ]


def predictions_to_dataframe(predictions: Iterable[PredictionResult]) -> pd.DataFrame:
    records = []
    for p in predictions:
        records.append({
            "service": p.service,
            "route": p.route,
            "bucket_start": p.bucket_start,
            "risk_score": p.risk_score,
            "model_version": p.model_version,
            "top_factors": ", ".join(f"{name}={value:+.3f}" for name, value in p.top_factors),
        })
    return pd.DataFrame(records)


def alerts_to_dataframe(alerts: Iterable[Alert]) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "alert_id": a.alert_id,
            "service": a.service,
            "route": a.route,
            "severity": a.severity.value,
            "risk_score": a.risk_score,
            "bucket_start": a.bucket_start,
            "created_at": a.created_at,
            "status": a.status.value,
        }
        for a in alerts
    ])
