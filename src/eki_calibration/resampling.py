"""Replace failed particles with draws from a normal fit to the ensemble."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any, Optional

import numpy as np

from eki_calibration.errors import AllParticlesFailed, ConfigError, FatalResamplingFailure
from eki_calibration.linalg import ensemble_covariance, sample_normal
from eki_calibration.registry import register

if TYPE_CHECKING:  # pragma: no cover
    from eki_calibration.engine import EnsembleKalmanInversion


class EnsembleDistribution:
    """Fit ``(mean, covariance)`` of a normal distribution to ensemble columns."""

    name: str = ""

    def columns(self, failed: np.ndarray) -> np.ndarray:  # pragma: no cover - interface
        raise NotImplementedError

    def __call__(self, X: np.ndarray, failed: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        selected = X[:, self.columns(np.asarray(failed, dtype=bool))]
        if selected.shape[1] == 0:
            raise AllParticlesFailed(
                "No successful particles are available to fit a resampling distribution.",
                failed_count=int(X.shape[1]),
                ensemble_size=int(X.shape[1]),
            )
        return selected.mean(axis=1), ensemble_covariance(selected)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class FullEnsembleDistribution(EnsembleDistribution):
    """Fit to every particle, failed or not."""

    name = "full"

    def columns(self, failed: np.ndarray) -> np.ndarray:
        return np.ones_like(failed, dtype=bool)


class SuccessfulEnsembleDistribution(EnsembleDistribution):
    """Fit only to particles that did not fail."""

    name = "successful"

    def columns(self, failed: np.ndarray) -> np.ndarray:
        return ~failed


register("ensemble_distribution", FullEnsembleDistribution.name, FullEnsembleDistribution)
register(
    "ensemble_distribution",
    SuccessfulEnsembleDistribution.name,
    SuccessfulEnsembleDistribution,
)


def resample_particles(
    X: np.ndarray,
    failed: np.ndarray,
    distribution: EnsembleDistribution,
    rng: np.random.Generator,
) -> np.ndarray:
    """Return a copy of ``X`` whose failed columns are redrawn from ``distribution``."""
    failed = np.asarray(failed, dtype=bool)
    if failed.shape != (X.shape[1],):
        raise ConfigError(
            f"failed mask has shape {failed.shape}, expected ({X.shape[1]},)."
        )
    resampled = np.array(X, dtype=float)
    n_failed = int(failed.sum())
    if n_failed == 0:
        return resampled
    mean, covariance = distribution(X, failed)
    resampled[:, failed] = sample_normal(mean, covariance, n_failed, rng)
    return resampled


def _coerce_fraction(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number in [0, 1].")
    try:
        fraction = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a number in [0, 1].") from exc
    if not 0.0 <= fraction <= 1.0:
        raise ConfigError(f"{label} must be in [0, 1].")
    return fraction


@dataclass
class Resampler:
    """Policy for aborting on, or recovering from, failed particles.

    A failure fraction at or above ``acceptable_failure_fraction`` is fatal.
    Failures at or above ``resample_failure_fraction`` are replaced by
    searching for new particles, drawn from ``distribution``, whose forward
    map succeeds. Below that fraction failed particles are carried along and
    excluded from the next update.
    """

    acceptable_failure_fraction: float = 1.0
    resample_failure_fraction: float = 0.0
    only_failed_particles: bool = True
    distribution: EnsembleDistribution = field(default_factory=SuccessfulEnsembleDistribution)
    max_search_attempts: int = 10

    def __post_init__(self) -> None:
        self.acceptable_failure_fraction = _coerce_fraction(
            self.acceptable_failure_fraction, "acceptable_failure_fraction"
        )
        self.resample_failure_fraction = _coerce_fraction(
            self.resample_failure_fraction, "resample_failure_fraction"
        )
        if not isinstance(self.distribution, EnsembleDistribution):
            raise ConfigError("distribution must be an EnsembleDistribution.")
        if isinstance(self.max_search_attempts, bool) or int(self.max_search_attempts) < 1:
            raise ConfigError("max_search_attempts must be >= 1.")
        self.max_search_attempts = int(self.max_search_attempts)
        self.logger = logging.getLogger("eki_calibration.resampling")

    def check_failures(
        self,
        failed: np.ndarray,
        engine: Optional["EnsembleKalmanInversion"] = None,
    ) -> None:
        n_failed = int(np.count_nonzero(failed))
        n_ensemble = int(np.size(failed))
        if n_failed == 0:
            return
        fraction = n_failed / n_ensemble
        context = {"failed_fraction": fraction}
        if engine is not None:
            context["inverse_problem"] = engine.inverse_problem.summary()
            context["process"] = repr(engine.process)
        if n_failed == n_ensemble:
            raise AllParticlesFailed(
                f"The forward map failed for all {n_ensemble} particles.",
                failed_count=n_failed,
                ensemble_size=n_ensemble,
                context=context,
            )
        if fraction >= self.acceptable_failure_fraction:
            raise FatalResamplingFailure(
                f"The forward map failed for {n_failed} of {n_ensemble} particles "
                f"({100 * fraction:.1f}%), at or above the acceptable failure "
                f"fraction {self.acceptable_failure_fraction}.",
                failed_count=n_failed,
                ensemble_size=n_ensemble,
                context=context,
            )

    def should_resample(self, failed: np.ndarray) -> bool:
        n_failed = int(np.count_nonzero(failed))
        if n_failed == 0:
            return False
        return n_failed / np.size(failed) >= self.resample_failure_fraction

    def resample(
        self,
        X: np.ndarray,
        G: np.ndarray,
        failed: np.ndarray,
        engine: "EnsembleKalmanInversion",
    ) -> tuple[np.ndarray, np.ndarray]:
        """Replace particles by new draws whose forward map is not flagged failed."""
        failed = np.asarray(failed, dtype=bool)
        n_ensemble = X.shape[1]
        if self.only_failed_particles:
            particles = np.flatnonzero(failed)
        else:
            particles = np.arange(n_ensemble)
        n_sample = particles.size
        mean, covariance = self.distribution(X, failed)

        found_X = np.zeros((X.shape[0], 0))
        found_G = np.zeros((G.shape[0], 0))
        for _ in range(self.max_search_attempts):
            self.logger.info(
                "Searching for successful particles (found %s of %s)...",
                found_X.shape[1],
                n_sample,
            )
            X_sample = sample_normal(mean, covariance, n_ensemble, engine.rng)
            G_sample = engine.evaluate_forward_map(X_sample)
            sample_failed = engine.failure_detector(X_sample, G_sample, engine)
            success = ~np.asarray(sample_failed, dtype=bool)
            self.logger.info("    ... found %s successful particles.", int(success.sum()))
            found_X = np.hstack([found_X, X_sample[:, success]])
            found_G = np.hstack([found_G, G_sample[:, success]])
            if found_X.shape[1] >= n_sample:
                break
        else:
            raise FatalResamplingFailure(
                f"Found only {found_X.shape[1]} of {n_sample} replacement particles "
                f"after {self.max_search_attempts} search attempts.",
                failed_count=int(failed.sum()),
                ensemble_size=n_ensemble,
            )

        self.logger.info("Replacing columns %s...", particles.tolist())
        X_new = np.array(X, dtype=float)
        G_new = np.array(G, dtype=float)
        X_new[:, particles] = found_X[:, :n_sample]
        G_new[:, particles] = found_G[:, :n_sample]
        return X_new, G_new

    def to_dict(self) -> dict[str, Any]:
        return {
            "acceptable_failure_fraction": self.acceptable_failure_fraction,
            "resample_failure_fraction": self.resample_failure_fraction,
            "only_failed_particles": self.only_failed_particles,
            "distribution": self.distribution.name,
            "max_search_attempts": self.max_search_attempts,
        }

    def __str__(self) -> str:
        return (
            f"Resampler(acceptable_failure_fraction={self.acceptable_failure_fraction}, "
            f"resample_failure_fraction={self.resample_failure_fraction}, "
            f"only_failed_particles={self.only_failed_particles}, "
            f"distribution={self.distribution!r})"
        )


__all__ = [
    "EnsembleDistribution",
    "FullEnsembleDistribution",
    "SuccessfulEnsembleDistribution",
    "Resampler",
    "resample_particles",
]
