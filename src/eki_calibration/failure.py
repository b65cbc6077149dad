"""Classify ensemble members whose forward map output is unusable."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from eki_calibration.errors import ConfigError
from eki_calibration.linalg import weighted_losses
from eki_calibration.registry import register

if TYPE_CHECKING:  # pragma: no cover
    from eki_calibration.engine import EnsembleKalmanInversion


def column_has_nonfinite(G: np.ndarray) -> np.ndarray:
    return ~np.all(np.isfinite(G), axis=0)


def median_absolute_deviation(values: np.ndarray, center: float) -> float:
    return float(np.median(np.abs(values - center)))


def _finite_median(values: np.ndarray) -> float:
    return float(np.median(values)) if values.size else 0.0


class FailureDetector:
    """Base class: ``detector(X, G, engine)`` returns ``True`` for failed particles."""

    name: str = ""

    def __call__(
        self,
        X: np.ndarray,
        G: np.ndarray,
        engine: "EnsembleKalmanInversion",
    ) -> np.ndarray:  # pragma: no cover - interface
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class NormExceedsMedian(FailureDetector):
    """Fail particles whose output norm is non-finite or far above the median."""

    threshold: float = 1.0e9

    name = "norm_exceeds_median"

    def __post_init__(self) -> None:
        if isinstance(self.threshold, bool) or not float(self.threshold) > 0:
            raise ConfigError("NormExceedsMedian.threshold must be > 0.")
        object.__setattr__(self, "threshold", float(self.threshold))

    def __call__(self, X, G, engine=None) -> np.ndarray:
        with np.errstate(invalid="ignore", over="ignore"):
            norms = np.linalg.norm(G, axis=0)
        finite = np.isfinite(norms)
        median = _finite_median(norms[finite])
        failed = ~finite
        failed[finite] = norms[finite] > self.threshold * median
        if not np.any(finite):
            failed[:] = True
        return failed

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "threshold": self.threshold}


@dataclass(frozen=True)
class ObjectiveLossThreshold(FailureDetector):
    """Fail particles whose weighted data misfit is an outlier.

    ``Φₖ = ½‖Γy^{-1/2}(y − Gₖ)‖²`` is compared against
    ``baseline(Φ) + multiple × distance(Φ, baseline(Φ))`` computed over the
    finite losses.
    """

    multiple: float = 5.0
    baseline: Callable[[np.ndarray], float] = field(default=_finite_median)
    distance: Callable[[np.ndarray, float], float] = field(default=median_absolute_deviation)

    name = "objective_loss_threshold"

    def __post_init__(self) -> None:
        if isinstance(self.multiple, bool) or not float(self.multiple) >= 0:
            raise ConfigError("ObjectiveLossThreshold.multiple must be >= 0.")
        object.__setattr__(self, "multiple", float(self.multiple))

    def __call__(self, X, G, engine) -> np.ndarray:
        losses = weighted_losses(
            engine.observations,
            G,
            engine.covariances.inv_sqrt_noise_covariance,
        )
        finite = np.isfinite(losses)
        failed = ~finite
        if not np.any(finite):
            failed[:] = True
            return failed
        finite_losses = losses[finite]
        center = float(self.baseline(finite_losses))
        spread = float(self.distance(finite_losses, center))
        failed[finite] = finite_losses > center + self.multiple * spread
        return failed

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "multiple": self.multiple}


register("failure_detector", NormExceedsMedian.name, NormExceedsMedian)
register("failure_detector", ObjectiveLossThreshold.name, ObjectiveLossThreshold)


__all__ = [
    "FailureDetector",
    "NormExceedsMedian",
    "ObjectiveLossThreshold",
    "column_has_nonfinite",
    "median_absolute_deviation",
]
