"""Ensemble update rules and adaptive pseudo-time step policies."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import math
from typing import TYPE_CHECKING, Any, Optional

import numpy as np
import scipy.linalg

from eki_calibration.errors import ConfigError
from eki_calibration.linalg import (
    cross_covariance,
    ensemble_covariance,
    log_volume,
    sample_normal,
    weighted_losses,
)
from eki_calibration.registry import register

if TYPE_CHECKING:  # pragma: no cover
    from eki_calibration.engine import EnsembleKalmanInversion

Stepper = Callable[[float], np.ndarray]

DRIFT_EPSILON = 1.0e-15


def _coerce_step(value: Any, label: str, *, allow_inf: bool = False) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a positive number.")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a positive number.") from exc
    if math.isnan(number) or number <= 0:
        raise ConfigError(f"{label} must be > 0.")
    if math.isinf(number) and not allow_inf:
        raise ConfigError(f"{label} must be finite.")
    return number


def mapped_noise(engine: "EnsembleKalmanInversion") -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    return engine.covariances.mapped(engine.tikhonov)


def sampler_drift(G: np.ndarray, observations: np.ndarray, inv_covariance: np.ndarray) -> np.ndarray:
    """``D = (1/N) Eᵀ Γ⁻¹ R`` with ``E = G − Ḡ`` and ``R = G − y``."""
    n_ensemble = G.shape[1]
    E = G - G.mean(axis=1, keepdims=True)
    R = G - observations[:, None]
    return (E.T @ inv_covariance @ R) / n_ensemble


# Processes


class Process:
    """Ensemble update rule: ``update(X, G, engine, step_size=, rng=) -> Xⁿ⁺¹``."""

    name: str = ""

    def update(
        self,
        X: np.ndarray,
        G: np.ndarray,
        engine: "EnsembleKalmanInversion",
        *,
        step_size: float,
        rng: np.random.Generator,
    ) -> np.ndarray:  # pragma: no cover - interface
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class Inversion(Process):
    """Ensemble Kalman inversion with optionally perturbed observations."""

    perturb_observations: bool = True

    name = "inversion"

    def update(self, X, G, engine, *, step_size, rng):
        y = engine.mapped_observations
        covariance, _, _ = mapped_noise(engine)
        n_ensemble = X.shape[1]
        scaled = covariance / step_size
        innovation = y[:, None] - G
        if self.perturb_observations:
            innovation = innovation + sample_normal(
                np.zeros(y.size), scaled, n_ensemble, rng
            )
        C_XG = cross_covariance(X, G)
        C_GG = ensemble_covariance(G)
        correction = scipy.linalg.solve(C_GG + scaled, innovation, assume_a="sym")
        return X + C_XG @ correction

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "perturb_observations": self.perturb_observations}


@dataclass(frozen=True)
class Sampler(Process):
    """Ensemble Kalman sampler: Langevin-type dynamics that keep posterior spread."""

    name = "sampler"

    def update(self, X, G, engine, *, step_size, rng):
        # The prior enters through the implicit term only; Tikhonov rows are ignored.
        y = engine.observations
        G = G[: y.size]
        inv_covariance = engine.covariances.inv_noise_covariance
        prior_mean = engine.covariances.prior_mean
        inv_prior = engine.covariances.inv_prior_covariance
        n_parameters, n_ensemble = X.shape

        drift = sampler_drift(G, y, inv_covariance)
        dtau = step_size / (np.linalg.norm(drift) + DRIFT_EPSILON)
        covariance = ensemble_covariance(X)
        anomalies = X - X.mean(axis=1, keepdims=True)

        implicit = np.eye(n_parameters) + dtau * covariance @ inv_prior
        rhs = X - dtau * anomalies @ drift + dtau * (covariance @ inv_prior @ prior_mean)[:, None]
        X_new = np.linalg.solve(implicit, rhs)
        noise = sample_normal(np.zeros(n_parameters), covariance, n_ensemble, rng)
        return X_new + math.sqrt(2.0 * dtau) * noise


register("process", Inversion.name, Inversion)
register("process", Sampler.name, Sampler)


def step_parameters(
    X: np.ndarray,
    G: np.ndarray,
    engine: "EnsembleKalmanInversion",
    process: Process,
    *,
    step_size: float,
    rng: np.random.Generator,
    covariance_inflation: float = 0.0,
    momentum_parameter: float = 0.0,
    previous_update: Optional[np.ndarray] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Apply ``process`` once, then momentum and additive inflation.

    Returns the new ensemble and the momentum-averaged increment to carry
    into the next step.
    """
    X_new = process.update(X, G, engine, step_size=step_size, rng=rng)
    update = X_new - X
    if momentum_parameter and previous_update is not None:
        update = momentum_parameter * previous_update + update
        X_new = X + update
    if covariance_inflation > 0:
        spread = sample_normal(
            np.zeros(X.shape[0]), ensemble_covariance(X_new), X.shape[1], rng
        )
        X_new = X_new + math.sqrt(covariance_inflation * step_size) * spread
    return X_new, update


# Step size policies


class PseudoSteppingScheme:
    """``scheme(stepper, X, G, engine, step_size) -> (Xⁿ⁺¹, Δt)``."""

    name: str = ""
    max_step_size: float = math.inf

    def clip(self, step_size: float) -> float:
        return min(float(step_size), self.max_step_size)

    def __call__(
        self,
        stepper: Stepper,
        X: np.ndarray,
        G: np.ndarray,
        engine: "EnsembleKalmanInversion",
        step_size: float,
    ) -> tuple[np.ndarray, float]:  # pragma: no cover - interface
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "max_step_size": self.max_step_size}


def volume_ratio(X_new: np.ndarray, X: np.ndarray) -> float:
    """``det Cov(Xⁿ⁺¹) / det Cov(Xⁿ)``; a trace ratio when either is singular."""
    cov_new = ensemble_covariance(X_new)
    cov_old = ensemble_covariance(X)
    log_new = log_volume(cov_new)
    log_old = log_volume(cov_old)
    if np.isfinite(log_new) and np.isfinite(log_old):
        return math.exp(log_new - log_old)
    trace_old = float(np.trace(cov_old))
    if trace_old <= 0:
        return math.nan
    return float(np.trace(cov_new)) / trace_old


@dataclass
class ConstantConvergence(PseudoSteppingScheme):
    """Pick ``Δt`` so the ensemble volume shrinks by ``convergence_ratio`` per step."""

    convergence_ratio: float = 0.7
    max_step_size: float = math.inf
    max_iterations: int = 10
    acceleration: float = 1.1

    name = "constant_convergence"

    def __post_init__(self) -> None:
        ratio = _coerce_step(self.convergence_ratio, "convergence_ratio")
        if not ratio < 1:
            raise ConfigError("convergence_ratio must be in (0, 1).")
        self.convergence_ratio = ratio
        self.max_step_size = _coerce_step(self.max_step_size, "max_step_size", allow_inf=True)

    def __call__(self, stepper, X, G, engine, step_size):
        target = self.convergence_ratio
        step_size = self.clip(step_size)
        X_new = stepper(step_size)
        ratio = volume_ratio(X_new, X)
        tries = 1
        while (
            math.isfinite(ratio)
            and ratio > 0
            and not math.isclose(ratio, target, rel_tol=0.1, abs_tol=0.03)
            and tries < self.max_iterations
        ):
            step_size = self.clip(step_size * (ratio / target) ** self.acceleration)
            X_new = stepper(step_size)
            ratio = volume_ratio(X_new, X)
            tries += 1
        return X_new, step_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "convergence_ratio": self.convergence_ratio,
            "max_step_size": self.max_step_size,
        }


@dataclass
class Kovachki2018(PseudoSteppingScheme):
    """``Δt = initial_step_size / (‖D‖_F + ε)`` (Kovachki & Stuart, 2018)."""

    initial_step_size: float = 1.0
    max_step_size: float = math.inf

    name = "kovachki2018"

    def __post_init__(self) -> None:
        self.initial_step_size = _coerce_step(self.initial_step_size, "initial_step_size")
        self.max_step_size = _coerce_step(self.max_step_size, "max_step_size", allow_inf=True)

    def __call__(self, stepper, X, G, engine, step_size):
        _, inv_covariance, _ = mapped_noise(engine)
        drift = sampler_drift(G, engine.mapped_observations, inv_covariance)
        step_size = self.clip(
            self.initial_step_size / (np.linalg.norm(drift) + DRIFT_EPSILON)
        )
        return stepper(step_size), step_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "initial_step_size": self.initial_step_size,
            "max_step_size": self.max_step_size,
        }


@dataclass
class Iglesias2021(PseudoSteppingScheme):
    """Data-misfit controller (Iglesias & Yang, 2021) targeting pseudotime 1."""

    max_step_size: float = math.inf

    name = "iglesias2021"

    def __post_init__(self) -> None:
        self.max_step_size = _coerce_step(self.max_step_size, "max_step_size", allow_inf=True)

    def __call__(self, stepper, X, G, engine, step_size):
        y = engine.mapped_observations
        _, _, inv_sqrt = mapped_noise(engine)
        losses = weighted_losses(y, G, inv_sqrt)
        n_obs = y.size
        candidates = []
        mean_loss = float(np.mean(losses))
        if mean_loss > 0:
            candidates.append(n_obs / (2.0 * mean_loss))
        variance = float(np.var(losses, ddof=1)) if losses.size > 1 else 0.0
        if variance > 0:
            candidates.append(math.sqrt(n_obs / (2.0 * variance)))
        # A perfect fit gives no misfit information; keep the current step.
        q = max(candidates) if candidates else float(step_size)
        remaining = 1.0 - engine.pseudotime
        # Past pseudotime 1 the controller keeps proposing q.
        if remaining > 0:
            q = min(q, remaining)
        step_size = self.clip(q)
        return stepper(step_size), step_size


register("pseudo_stepping", ConstantConvergence.name, ConstantConvergence)
register("pseudo_stepping", Kovachki2018.name, Kovachki2018)
register("pseudo_stepping", Iglesias2021.name, Iglesias2021)


def adaptive_step_parameters(
    pseudo_stepping: Optional[PseudoSteppingScheme],
    stepper: Stepper,
    X: np.ndarray,
    G: np.ndarray,
    engine: "EnsembleKalmanInversion",
    step_size: float,
) -> tuple[np.ndarray, float]:
    if pseudo_stepping is None:
        return stepper(step_size), float(step_size)
    return pseudo_stepping(stepper, X, G, engine, step_size)


__all__ = [
    "Process",
    "Inversion",
    "Sampler",
    "step_parameters",
    "sampler_drift",
    "volume_ratio",
    "PseudoSteppingScheme",
    "ConstantConvergence",
    "Kovachki2018",
    "Iglesias2021",
    "adaptive_step_parameters",
]
