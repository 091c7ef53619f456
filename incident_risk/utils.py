"""
Utility functions for the incident risk pipeline.

Includes logging, serialization, retry, locking, cancellation and
common helper functions.
"""

import logging
import random
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, Tuple, Type, Union

import joblib
import psutil
from rich.console import Console
from rich.logging import RichHandler

from .config import LOGGING_CONFIG


# Global console for rich output
console = Console()


def setup_logging(
    level: int = LOGGING_CONFIG["level"],
    log_file: Optional[str] = None
) -> logging.Logger:
    """Setup logging with rich formatting"""

    logger = logging.getLogger("incident_risk")
    logger.setLevel(level)

    # Clear existing handlers
    logger.handlers.clear()

    rich_handler = RichHandler(console=console, show_time=True, show_path=False)
    rich_handler.setFormatter(
        logging.Formatter(
            fmt="%(message)s",
            datefmt="[%Y-%m-%d %H:%M:%S]"
        )
    )
    logger.addHandler(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter(
                fmt=LOGGING_CONFIG["format"],
                datefmt=LOGGING_CONFIG["datefmt"]
            )
        )
        logger.addHandler(file_handler)

    return logger


def get_memory_usage() -> Dict[str, float]:
    """Get current memory usage statistics"""
    process = psutil.Process()
    memory_info = process.memory_info()

    return {
        "rss_gb": memory_info.rss / (1024**3),
        "percent": process.memory_percent(),
        "available_gb": psutil.virtual_memory().available / (1024**3)
    }


def timing_decorator(func):
    """Decorator to time function execution"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        result = func(*args, **kwargs)
        duration = time.time() - start_time

        logger = logging.getLogger("incident_risk")
        logger.info(f"{func.__name__} completed in {format_duration(duration)}")
        return result
    return wrapper


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safe division with default for zero denominator"""
    if abs(denominator) < 1e-10:
        return default
    return numerator / denominator


def ensure_directory(path: Union[str, Path]) -> Path:
    """Ensure directory exists, create if necessary"""
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj


def save_artifact(obj: Any, filepath: Union[str, Path], compress: bool = True) -> None:
    """Save object to disk with joblib"""
    filepath = Path(filepath)
    ensure_directory(filepath.parent)
    joblib.dump(obj, filepath, compress=compress)


def load_artifact(filepath: Union[str, Path]) -> Any:
    """Load object from disk"""
    filepath = Path(filepath)

    if not filepath.exists():
        raise FileNotFoundError(f"Artifact not found: {filepath}")

    return joblib.load(filepath)


def chunked(lst: List[Any], chunk_size: int):
    """Yield successive chunks of specified size from list"""
    for i in range(0, len(lst), chunk_size):
        yield lst[i:i + chunk_size]


def format_duration(seconds: float) -> str:
    """Format duration in seconds to human-readable string"""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        return f"{seconds/60:.1f}m"
    else:
        return f"{seconds/3600:.1f}h"


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: bool = True


def call_with_retry(
    func: Callable[..., Any],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = "",
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call `func` with exponential backoff and jitter.

    Only exceptions listed in `retry_on` are retried; the last one is
    re-raised once attempts are exhausted.
    """
    logger = logging.getLogger("incident_risk")
    name = description or getattr(func, "__name__", "call")

    for attempt in range(config.max_attempts):
        try:
            result = func()
            if attempt > 0:
                logger.info(f"{name} succeeded on attempt {attempt + 1}")
            return result
        except retry_on as e:
            if attempt == config.max_attempts - 1:
                logger.error(f"{name} failed after {config.max_attempts} attempts: {e}")
                raise

            delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
            if config.jitter:
                delay *= (0.5 + random.random() * 0.5)  # 50-100% of calculated delay

            logger.warning(f"{name} attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s")
            sleep(delay)


class KeyedLocks:
    """
    One lock per key, alive only while some thread holds or waits on it.

    Work for the same key is serialized; different keys never contend.
    Idle keys are released, so the table only holds in-flight keys.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class CancellationToken:
    """
    Cooperative cancellation signal with an optional time budget.

    Long loops call `should_stop()` between iterations and wind down
    cleanly when it returns True.
    """

    def __init__(self, budget_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = None
        if budget_seconds is not None:
            self._deadline = time.monotonic() + budget_seconds

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def should_stop(self) -> bool:
        return self.cancelled or self.expired
