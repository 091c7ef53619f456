"""
Logistic risk scorer and versioned model registry.

The scorer is a z-score normalized linear-logistic model fitted by
full-batch gradient descent on regularized log-loss. Fitted models are
published as immutable, versioned artifacts; exactly one version is active.
"""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

import numpy as np
from scipy.special import expit

from .errors import ModelNotFoundError
from .records import ModelArtifact
from .utils import ensure_directory, load_artifact, save_artifact, utc_now


logger = logging.getLogger(__name__)

EPSILON = 1e-12


def normalize(X: np.ndarray, means: np.ndarray, stds: np.ndarray) -> np.ndarray:
    """Z-score features with stored parameters"""
    return (X - means) / stds


def log_loss(p: np.ndarray, y: np.ndarray) -> float:
    p = np.clip(p, EPSILON, 1 - EPSILON)
    return float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))


@dataclass
class FitReport:
    """Outcome of a gradient-descent fit"""
    iterations: int
    loss: float
    converged: bool
    cancelled: bool


class LogisticRiskModel:
    """
    Linear-logistic scorer with per-feature z-score normalization.

    Normalization parameters come from the fit split only; standard
    deviations are floored so constant features never divide by zero.
    """

    def __init__(
        self,
        feature_order: Sequence[str],
        learning_rate: float = 0.1,
        l2: float = 0.01,
        std_floor: float = 1e-6
    ):
        self.feature_order = tuple(feature_order)
        self.learning_rate = learning_rate
        self.l2 = l2
        self.std_floor = std_floor
        n = len(self.feature_order)
        self.weights = np.zeros(n)
        self.bias = 0.0
        self.means = np.zeros(n)
        self.stds = np.ones(n)
        self.is_fitted = False

    def fit_scaler(self, X: np.ndarray) -> None:
        self.means = X.mean(axis=0)
        self.stds = np.maximum(X.std(axis=0), self.std_floor)

    def transform(self, X: np.ndarray) -> np.ndarray:
        return normalize(X, self.means, self.stds)

    def objective(self, Xn: np.ndarray, y: np.ndarray) -> float:
        """Log-loss plus L2 penalty on the weights (bias unpenalized)"""
        p = expit(Xn @ self.weights + self.bias)
        return log_loss(p, y) + 0.5 * self.l2 * float(self.weights @ self.weights)

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        max_iterations: int = 1000,
        tolerance: float = 1e-7,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> FitReport:
        """
        Fit scaler and weights.

        Stops when the objective improves by less than `tolerance`, after
        `max_iterations`, or when `should_stop()` turns True between
        iterations. On a stop signal the best weights seen are kept.
        """
        self.fit_scaler(X)
        Xn = self.transform(X)
        y = y.astype(float)
        n = len(y)

        self.weights = np.zeros(Xn.shape[1])
        self.bias = 0.0
        previous = self.objective(Xn, y)
        best = (previous, self.weights.copy(), self.bias)
        converged = False
        cancelled = False
        iteration = 0

        while iteration < max_iterations:
            if should_stop is not None and should_stop():
                cancelled = True
                break

            p = expit(Xn @ self.weights + self.bias)
            error = p - y
            grad_w = Xn.T @ error / n + self.l2 * self.weights
            grad_b = float(error.mean())
            self.weights = self.weights - self.learning_rate * grad_w
            self.bias = self.bias - self.learning_rate * grad_b
            iteration += 1

            current = self.objective(Xn, y)
            if current < best[0]:
                best = (current, self.weights.copy(), self.bias)
            if abs(previous - current) < tolerance:
                converged = True
                break
            previous = current

        loss, self.weights, self.bias = best
        self.is_fitted = True
        return FitReport(iterations=iteration, loss=loss, converged=converged, cancelled=cancelled)

    def predict_proba(self, X: np.ndarray) -> np.ndarray:
        if not self.is_fitted:
            raise ValueError("Model must be fitted before prediction")
        return expit(self.transform(X) @ self.weights + self.bias)

    def to_artifact(self, version: int, family: str, metadata: Optional[Dict] = None) -> ModelArtifact:
        return ModelArtifact(
            version=version,
            family=family,
            feature_order=self.feature_order,
            weights=tuple(float(w) for w in self.weights),
            bias=float(self.bias),
            means=tuple(float(m) for m in self.means),
            stds=tuple(float(s) for s in self.stds),
            trained_at=utc_now(),
            metadata=dict(metadata or {}),
        )


class ModelRegistry:
    """
    Versioned store of published model artifacts with an explicit active pointer.

    Versions increase monotonically and are never mutated or removed, so
    any version can be backtested or re-activated (rollback). When `root`
    is given, artifacts persist as joblib files and the pointer as JSON.
    """

    ACTIVE_FILE = "active.json"

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root is not None else None
        self._artifacts: Dict[int, ModelArtifact] = {}
        self._active: Optional[int] = None
        self._lock = threading.Lock()
        if self.root is not None:
            self._load()

    def _artifact_path(self, version: int) -> Path:
        return self.root / f"model_v{version:04d}.joblib"

    def _write_pointer(self, version: int) -> None:
        """Replace the active pointer file atomically"""
        pointer = self.root / self.ACTIVE_FILE
        staging = pointer.with_name(pointer.name + ".tmp")
        staging.write_text(
            json.dumps({"active_version": version, "activated_at": utc_now().isoformat()})
        )
        staging.replace(pointer)

    def _load(self) -> None:
        ensure_directory(self.root)
        for path in sorted(self.root.glob("model_v*.joblib")):
            artifact = load_artifact(path)
            self._artifacts[artifact.version] = artifact

        pointer = self.root / self.ACTIVE_FILE
        if pointer.exists():
            version = json.loads(pointer.read_text()).get("active_version")
            if version is not None and version in self._artifacts:
                self._active = int(version)
            elif version is not None:
                logger.warning(f"Active pointer references missing version {version}; ignoring")

        if self._artifacts:
            logger.info(f"Loaded {len(self._artifacts)} model versions from {self.root} "
                        f"(active: {self._active})")

    def publish(self, artifact: ModelArtifact) -> ModelArtifact:
        """Assign the next version id and store the artifact; does not activate it"""
        with self._lock:
            version = max(self._artifacts, default=0) + 1
            published = artifact.with_version(version)
            self._artifacts[version] = published
            if self.root is not None:
                save_artifact(published, self._artifact_path(version))
        logger.info(f"Published model version {version} ({published.family})")
        return published

    def get(self, version: int) -> ModelArtifact:
        with self._lock:
            artifact = self._artifacts.get(version)
        if artifact is None:
            raise ModelNotFoundError(version)
        return artifact

    def activate(self, version: int) -> ModelArtifact:
        """Point serving at `version`; also how rollbacks are done"""
        with self._lock:
            artifact = self._artifacts.get(version)
            if artifact is None:
                raise ModelNotFoundError(version)
            previous = self._active
            if self.root is not None:
                self._write_pointer(version)
            # Set only once the pointer file is in place
            self._active = version
        logger.info(f"Activated model version {version} (previous: {previous})")
        return artifact

    def active(self) -> ModelArtifact:
        """The active artifact snapshot; raises when nothing was ever activated"""
        with self._lock:
            version = self._active
            artifact = self._artifacts.get(version) if version is not None else None
        if artifact is None:
            raise ModelNotFoundError(None)
        return artifact

    @property
    def active_version(self) -> Optional[int]:
        with self._lock:
            return self._active

    def versions(self) -> List[ModelArtifact]:
        with self._lock:
            return [self._artifacts[v] for v in sorted(self._artifacts)]
