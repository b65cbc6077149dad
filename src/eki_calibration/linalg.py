"""Ensemble statistics, Gaussian draws, and the precomputed covariance cache."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
import scipy.linalg

from eki_calibration.errors import ConfigError, ValidationError


def ensemble_mean(X: np.ndarray) -> np.ndarray:
    return np.mean(X, axis=1)


def ensemble_covariance(X: np.ndarray) -> np.ndarray:
    """Sample covariance of the columns of ``X`` (``Nθ × Nθ``)."""
    X = np.atleast_2d(np.asarray(X, dtype=float))
    n_rows, n_cols = X.shape
    if n_cols < 2:
        return np.zeros((n_rows, n_rows))
    return np.atleast_2d(np.cov(X, rowvar=True, ddof=1))


def cross_covariance(X: np.ndarray, G: np.ndarray) -> np.ndarray:
    """Sample cross-covariance between the columns of ``X`` and ``G``."""
    if X.shape[1] != G.shape[1]:
        raise ValidationError(
            f"X and G must have the same number of columns, got {X.shape[1]} and {G.shape[1]}."
        )
    n_cols = X.shape[1]
    if n_cols < 2:
        return np.zeros((X.shape[0], G.shape[0]))
    X_anom = X - X.mean(axis=1, keepdims=True)
    G_anom = G - G.mean(axis=1, keepdims=True)
    return (X_anom @ G_anom.T) / (n_cols - 1)


def symmetrize(matrix: np.ndarray) -> np.ndarray:
    return 0.5 * (matrix + matrix.T)


def covariance_factor(covariance: np.ndarray) -> np.ndarray:
    """Return ``L`` with ``L @ L.T == covariance``, tolerating semi-definite input."""
    covariance = symmetrize(np.atleast_2d(np.asarray(covariance, dtype=float)))
    try:
        return np.linalg.cholesky(covariance)
    except np.linalg.LinAlgError:
        eigvals, eigvecs = np.linalg.eigh(covariance)
        eigvals = np.maximum(eigvals, 0.0)
        return eigvecs @ np.diag(np.sqrt(eigvals))


def sample_normal(
    mean: np.ndarray,
    covariance: np.ndarray,
    n_samples: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw ``n_samples`` columns from ``N(mean, covariance)``."""
    mean = np.asarray(mean, dtype=float).reshape(-1)
    factor = covariance_factor(covariance)
    noise = rng.standard_normal((mean.size, int(n_samples)))
    return mean[:, None] + factor @ noise


def log_volume(covariance: np.ndarray) -> float:
    """Log-determinant of a covariance; ``-inf`` when it is singular."""
    sign, logdet = np.linalg.slogdet(np.atleast_2d(covariance))
    if sign <= 0:
        return -np.inf
    return float(logdet)


def inverse_and_sqrt(matrix: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Inverse and inverse symmetric square root of an SPD matrix."""
    eigvals, eigvecs = scipy.linalg.eigh(symmetrize(matrix))
    if np.any(eigvals <= 0):
        raise ConfigError("covariance matrix must be positive definite.")
    inverse = (eigvecs / eigvals) @ eigvecs.T
    inv_sqrt = (eigvecs / np.sqrt(eigvals)) @ eigvecs.T
    return symmetrize(inverse), symmetrize(inv_sqrt)


def construct_noise_covariance(noise_covariance: Any, n_observations: int) -> np.ndarray:
    """Promote a scalar or vector noise specification to an ``Nobs × Nobs`` matrix."""
    if isinstance(noise_covariance, bool):
        raise ConfigError("noise_covariance must be a number, vector or matrix.")
    try:
        array = np.asarray(noise_covariance, dtype=float)
    except (TypeError, ValueError) as exc:
        raise ConfigError("noise_covariance must be a number, vector or matrix.") from exc
    if array.ndim == 0:
        if not np.isfinite(array) or float(array) <= 0:
            raise ConfigError("scalar noise_covariance must be finite and > 0.")
        return float(array) * np.eye(n_observations)
    if array.ndim == 1:
        if array.size != n_observations:
            raise ConfigError(
                f"noise_covariance vector has length {array.size}, expected {n_observations}."
            )
        if not np.all(np.isfinite(array)) or np.any(array <= 0):
            raise ConfigError("noise_covariance variances must be finite and > 0.")
        return np.diag(array)
    if array.shape != (n_observations, n_observations):
        raise ConfigError(
            f"noise_covariance has shape {array.shape}, expected "
            f"({n_observations}, {n_observations})."
        )
    if not np.all(np.isfinite(array)):
        raise ConfigError("noise_covariance must be finite.")
    if not np.allclose(array, array.T):
        raise ConfigError("noise_covariance must be symmetric.")
    return array.copy()


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=float)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class CovarianceCache:
    """Linear-algebra quantities computed once per inversion."""

    noise_covariance: np.ndarray
    inv_noise_covariance: np.ndarray
    inv_sqrt_noise_covariance: np.ndarray
    prior_mean: np.ndarray
    prior_covariance: np.ndarray
    inv_prior_covariance: np.ndarray
    inv_sqrt_prior_covariance: np.ndarray
    augmented_covariance: np.ndarray
    inv_augmented_covariance: np.ndarray
    inv_sqrt_augmented_covariance: np.ndarray

    @classmethod
    def build(
        cls,
        noise_covariance: np.ndarray,
        prior_mean: np.ndarray,
        prior_covariance: np.ndarray,
    ) -> "CovarianceCache":
        inv_noise, inv_sqrt_noise = inverse_and_sqrt(noise_covariance)
        inv_prior, inv_sqrt_prior = inverse_and_sqrt(prior_covariance)
        augmented = scipy.linalg.block_diag(noise_covariance, prior_covariance)
        inv_augmented = scipy.linalg.block_diag(inv_noise, inv_prior)
        inv_sqrt_augmented = scipy.linalg.block_diag(inv_sqrt_noise, inv_sqrt_prior)
        return cls(
            noise_covariance=_read_only(noise_covariance),
            inv_noise_covariance=_read_only(inv_noise),
            inv_sqrt_noise_covariance=_read_only(inv_sqrt_noise),
            prior_mean=_read_only(prior_mean),
            prior_covariance=_read_only(prior_covariance),
            inv_prior_covariance=_read_only(inv_prior),
            inv_sqrt_prior_covariance=_read_only(inv_sqrt_prior),
            augmented_covariance=_read_only(augmented),
            inv_augmented_covariance=_read_only(inv_augmented),
            inv_sqrt_augmented_covariance=_read_only(inv_sqrt_augmented),
        )

    def mapped(self, tikhonov: bool) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Covariance, inverse and inverse square root seen by the update."""
        if tikhonov:
            return (
                self.augmented_covariance,
                self.inv_augmented_covariance,
                self.inv_sqrt_augmented_covariance,
            )
        return (
            self.noise_covariance,
            self.inv_noise_covariance,
            self.inv_sqrt_noise_covariance,
        )


def weighted_losses(
    observations: np.ndarray,
    G: np.ndarray,
    inv_sqrt_covariance: np.ndarray,
) -> np.ndarray:
    """Per-particle ``½‖Γ^{-1/2}(y − Gₖ)‖²``; non-finite for failed columns."""
    residuals = observations[:, None] - G
    with np.errstate(invalid="ignore", over="ignore"):
        weighted = inv_sqrt_covariance @ residuals
        return 0.5 * np.sum(weighted**2, axis=0)


__all__ = [
    "ensemble_mean",
    "ensemble_covariance",
    "cross_covariance",
    "symmetrize",
    "covariance_factor",
    "sample_normal",
    "log_volume",
    "inverse_and_sqrt",
    "construct_noise_covariance",
    "CovarianceCache",
    "weighted_losses",
]
