"""Stateful Ensemble Kalman Inversion driver."""

from __future__ import annotations

import logging
import math
import time
from typing import Any, Optional

import numpy as np
from tqdm import tqdm

from eki_calibration.errors import AllParticlesFailed, ConfigError, ValidationError
from eki_calibration.failure import FailureDetector, NormExceedsMedian
from eki_calibration.inverse_problem import InverseProblem
from eki_calibration.linalg import CovarianceCache, construct_noise_covariance
from eki_calibration.parameters import FreeParameters
from eki_calibration.pseudo_stepping import (
    Inversion,
    Process,
    PseudoSteppingScheme,
    adaptive_step_parameters,
    step_parameters,
)
from eki_calibration.resampling import Resampler, resample_particles
from eki_calibration.summary import IterationSummary

_UNSET = object()


def _coerce_nonnegative(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number >= 0.")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a number >= 0.") from exc
    if not math.isfinite(number) or number < 0:
        raise ConfigError(f"{label} must be finite and >= 0.")
    return number


def _coerce_step_size(value: Any) -> float:
    number = _coerce_nonnegative(value, "pseudo_step_size")
    if number <= 0:
        raise ConfigError("pseudo_step_size must be > 0.")
    return number


def _read_only(array: np.ndarray) -> np.ndarray:
    array = np.array(array, dtype=float)
    array.setflags(write=False)
    return array


def _shape_summary(array: Optional[np.ndarray]) -> str:
    if array is None:
        return "None"
    return "x".join(str(n) for n in array.shape) + f" {array.dtype} array"


class EnsembleKalmanInversion:
    """Iteratively update an ensemble of parameters toward the observations.

    The ensemble ``unconstrained_parameters`` (``Nθ × Nensemble``) lives in
    unconstrained space. Each :meth:`step` applies ``process`` with a
    pseudo-time step ``Δt`` (chosen by ``pseudo_stepping`` when given),
    evaluates the forward map on the new ensemble, handles failed particles
    through ``failure_detector`` and ``resampler`` and appends an
    :class:`IterationSummary`. ``iteration`` is ``-1`` before the first step
    and ``iteration_summaries[0]`` is the snapshot of the initial ensemble.
    """

    def __init__(
        self,
        inverse_problem: InverseProblem,
        *,
        noise_covariance: Any = 1.0e-2,
        process: Optional[Process] = None,
        pseudo_stepping: Optional[PseudoSteppingScheme] = None,
        pseudo_step_size: float = 1.0,
        failure_detector: Optional[FailureDetector] = None,
        resampler: Optional[Resampler] = None,
        tikhonov: bool = False,
        covariance_inflation: float = 0.0,
        momentum_parameter: float = 0.0,
        unconstrained_parameters: Optional[Any] = None,
        forward_map_output: Optional[Any] = None,
        seed: Optional[int] = None,
    ) -> None:
        if not isinstance(inverse_problem, InverseProblem):
            raise ConfigError("inverse_problem must be an InverseProblem.")
        if unconstrained_parameters is None and forward_map_output is not None:
            raise ConfigError(
                "Cannot provide forward_map_output without unconstrained_parameters."
            )
        self.logger = logging.getLogger("eki_calibration.engine")
        self.inverse_problem = inverse_problem
        self.process = process if process is not None else Inversion()
        if not isinstance(self.process, Process):
            raise ConfigError("process must be a Process.")
        self.pseudo_stepping = pseudo_stepping
        self.pseudo_step_size = _coerce_step_size(pseudo_step_size)
        self.failure_detector = (
            failure_detector if failure_detector is not None else NormExceedsMedian()
        )
        self.resampler = resampler if resampler is not None else Resampler()
        self.tikhonov = bool(tikhonov)
        self.covariance_inflation = _coerce_nonnegative(
            covariance_inflation, "covariance_inflation"
        )
        self.momentum_parameter = _coerce_nonnegative(momentum_parameter, "momentum_parameter")
        self.seed = seed
        self.rng = np.random.default_rng(seed)

        free_parameters = self.free_parameters
        y = inverse_problem.observation_map()
        noise = construct_noise_covariance(noise_covariance, y.size)
        self.covariances = CovarianceCache.build(
            noise,
            free_parameters.unconstrained_prior_mean(),
            free_parameters.unconstrained_prior_covariance(),
        )
        if self.tikhonov:
            self.mapped_observations = _read_only(
                np.concatenate([y, self.covariances.prior_mean])
            )
        else:
            self.mapped_observations = y

        self.iteration = -1
        self.pseudotime = 0.0
        self.iteration_summaries: list[IterationSummary] = []
        self._previous_update: Optional[np.ndarray] = None

        if unconstrained_parameters is None:
            X = free_parameters.sample_unconstrained(self.ensemble_size, self.rng)
        else:
            X = self._check_parameters(unconstrained_parameters)

        if forward_map_output is None:
            self.logger.info("Executing forward map while building EnsembleKalmanInversion...")
            start = time.perf_counter()
            X, G = self.resampling_forward_map(X)
            self.logger.info("    ... done (%.3f s).", time.perf_counter() - start)
        else:
            G = self._check_output(forward_map_output)
            X, G = self.resolve_failures(X, G)

        self.unconstrained_parameters = X
        self.forward_map_output = G
        self.iteration_summaries.append(IterationSummary.from_engine(self, X, G))

    # Read-only views

    @property
    def free_parameters(self) -> FreeParameters:
        return self.inverse_problem.free_parameters

    @property
    def ensemble_size(self) -> int:
        return self.inverse_problem.ensemble_size

    @property
    def observations(self) -> np.ndarray:
        return self.inverse_problem.observation_map()

    @property
    def noise_covariance(self) -> np.ndarray:
        return self.covariances.noise_covariance

    @property
    def state(self) -> str:
        if self.iteration < 0:
            return "ready"
        return f"stepped({self.iteration + 1})"

    def summary_at(self, iteration: int) -> IterationSummary:
        """Summary recorded at ``iteration`` (``-1`` is the initial ensemble)."""
        if not -1 <= iteration <= self.iteration:
            raise IndexError(
                f"iteration {iteration} is outside [-1, {self.iteration}]."
            )
        return self.iteration_summaries[iteration + 1]

    def ensemble_mean(self) -> np.ndarray:
        return np.array(self.iteration_summaries[-1].ensemble_mean)

    # Validation

    def _check_parameters(self, X: Any) -> np.ndarray:
        X = np.array(X, dtype=float)
        expected = (len(self.free_parameters), self.ensemble_size)
        if X.shape != expected:
            raise ValidationError(
                f"unconstrained_parameters has shape {X.shape}, expected {expected}."
            )
        if not np.all(np.isfinite(X)):
            raise ValidationError("unconstrained_parameters must be finite.")
        return X

    def _check_output(self, G: Any) -> np.ndarray:
        G = np.array(G, dtype=float)
        expected = (self.inverse_problem.n_observations, self.ensemble_size)
        if G.shape != expected:
            raise ValidationError(
                f"forward_map_output has shape {G.shape}, expected {expected}."
            )
        return G

    # Forward map and failure handling

    def evaluate_forward_map(self, X: np.ndarray) -> np.ndarray:
        return self.inverse_problem.inverting_forward_map(X)

    def resolve_failures(self, X: np.ndarray, G: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Abort on, resample, or tolerate the failed particles of ``(X, G)``."""
        failed = np.asarray(self.failure_detector(X, G, self), dtype=bool)
        n_failed = int(failed.sum())
        if n_failed == 0:
            return X, G
        self.resampler.check_failures(failed, self)
        if self.resampler.should_resample(failed):
            self.logger.warning(
                "%s of %s particles failed; resampling.", n_failed, failed.size
            )
            return self.resampler.resample(X, G, failed, self)
        self.logger.warning(
            "%s of %s particles failed; they are excluded from the next update.",
            n_failed,
            failed.size,
        )
        return X, G

    def resampling_forward_map(self, X: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        G = self.evaluate_forward_map(X)
        return self.resolve_failures(X, G)

    def mapped_output(self, X: np.ndarray, G: np.ndarray) -> np.ndarray:
        """Forward map output as seen by the update (``[G; X]`` in Tikhonov mode)."""
        if self.tikhonov:
            return np.vstack([G, X])
        return G

    # Iteration

    def step_parameters(
        self,
        *,
        pseudo_step_size: float,
        pseudo_stepping: Optional[PseudoSteppingScheme],
        covariance_inflation: float,
        momentum_parameter: float,
    ) -> tuple[np.ndarray, np.ndarray, float]:
        """Return ``(Xⁿ⁺¹, increment, Δt)`` without touching the engine state."""
        X = self.unconstrained_parameters
        G = self.forward_map_output
        failed = np.asarray(self.failure_detector(X, G, self), dtype=bool)
        successful = ~failed
        if not np.any(successful):
            raise AllParticlesFailed(
                "No successful particles are left to update.",
                failed_count=int(failed.size),
                ensemble_size=int(failed.size),
            )
        X_ok = X[:, successful]
        G_ok = self.mapped_output(X_ok, G[:, successful])
        previous = None
        if self._previous_update is not None:
            previous = self._previous_update[:, successful]

        # Every trial step reuses the same draws.
        seed = int(self.rng.integers(np.iinfo(np.int64).max))
        accepted: dict[str, np.ndarray] = {}

        def stepper(step_size: float) -> np.ndarray:
            X_new, increment = step_parameters(
                X_ok,
                G_ok,
                self,
                self.process,
                step_size=step_size,
                rng=np.random.default_rng(seed),
                covariance_inflation=covariance_inflation,
                momentum_parameter=momentum_parameter,
                previous_update=previous,
            )
            accepted["increment"] = increment
            return X_new

        X_ok_new, step_size = adaptive_step_parameters(
            pseudo_stepping, stepper, X_ok, G_ok, self, pseudo_step_size
        )

        X_new = np.array(X, dtype=float)
        X_new[:, successful] = X_ok_new
        increment = np.zeros_like(X_new)
        increment[:, successful] = accepted["increment"]
        if np.any(failed):
            X_new = resample_particles(X_new, failed, self.resampler.distribution, self.rng)
        return X_new, increment, float(step_size)

    def step(
        self,
        *,
        pseudo_step_size: Optional[float] = None,
        pseudo_stepping: Any = _UNSET,
        covariance_inflation: Optional[float] = None,
        momentum_parameter: Optional[float] = None,
    ) -> IterationSummary:
        """Advance one iteration and return its summary."""
        if pseudo_stepping is _UNSET:
            pseudo_stepping = self.pseudo_stepping
        step_size = (
            self.pseudo_step_size
            if pseudo_step_size is None
            else _coerce_step_size(pseudo_step_size)
        )
        inflation = (
            self.covariance_inflation
            if covariance_inflation is None
            else _coerce_nonnegative(covariance_inflation, "covariance_inflation")
        )
        momentum = (
            self.momentum_parameter
            if momentum_parameter is None
            else _coerce_nonnegative(momentum_parameter, "momentum_parameter")
        )

        X_new, increment, step_size = self.step_parameters(
            pseudo_step_size=step_size,
            pseudo_stepping=pseudo_stepping,
            covariance_inflation=inflation,
            momentum_parameter=momentum,
        )
        X_new, G_new = self.resampling_forward_map(X_new)

        self.unconstrained_parameters = X_new
        self.forward_map_output = G_new
        self._previous_update = increment
        self.iteration += 1
        self.pseudotime += step_size
        if pseudo_stepping is not None:
            self.pseudo_step_size = step_size

        summary = IterationSummary.from_engine(self, X_new, G_new, pseudo_step_size=step_size)
        self.iteration_summaries.append(summary)
        self.logger.info(
            "Iteration %s: pseudotime=%.4g, step=%.4g, mean MSE=%.4g",
            self.iteration,
            self.pseudotime,
            step_size,
            float(np.nanmean(summary.mean_square_errors)),
        )
        return summary

    def iterate(
        self,
        iterations: int = 1,
        *,
        pseudo_step_size: Optional[float] = None,
        pseudo_stepping: Any = _UNSET,
        covariance_inflation: Optional[float] = None,
        momentum_parameter: Optional[float] = None,
        show_progress: bool = False,
    ) -> np.ndarray:
        """Step ``iterations`` times and return the constrained ensemble mean."""
        if isinstance(iterations, bool) or int(iterations) != iterations or iterations < 0:
            raise ConfigError("iterations must be a non-negative integer.")
        iterations = int(iterations)
        pbar = tqdm(total=iterations, desc="EKI", unit="iteration", disable=not show_progress)
        try:
            for _ in range(iterations):
                self.step(
                    pseudo_step_size=pseudo_step_size,
                    pseudo_stepping=pseudo_stepping,
                    covariance_inflation=covariance_inflation,
                    momentum_parameter=momentum_parameter,
                )
                pbar.update(1)
        finally:
            pbar.close()
        return self.ensemble_mean()

    def set_parameters(self, unconstrained_parameters: Any) -> None:
        """Replace the ensemble and re-evaluate the forward map right away."""
        X = self._check_parameters(unconstrained_parameters)
        X, G = self.resampling_forward_map(X)
        self.unconstrained_parameters = X
        self.forward_map_output = G
        self._previous_update = None

    def __str__(self) -> str:
        stepping = "None" if self.pseudo_stepping is None else repr(self.pseudo_stepping)
        return "\n".join(
            [
                "EnsembleKalmanInversion",
                f"├── inverse_problem: {self.inverse_problem.summary()}",
                f"├── process: {self.process!r}",
                f"├── mapped_observations: {_shape_summary(self.mapped_observations)}",
                f"├── noise_covariance: {_shape_summary(self.noise_covariance)}",
                f"├── tikhonov: {self.tikhonov}",
                f"├── pseudo_stepping: {stepping}",
                f"├── pseudo_step_size: {self.pseudo_step_size:.4g}",
                f"├── iteration: {self.iteration}",
                f"├── pseudotime: {self.pseudotime:.4g}",
                f"├── resampler: {self.resampler}",
                f"├── failure_detector: {self.failure_detector!r}",
                f"├── unconstrained_parameters: {_shape_summary(self.unconstrained_parameters)}",
                f"└── forward_map_output: {_shape_summary(self.forward_map_output)}",
            ]
        )


__all__ = ["EnsembleKalmanInversion"]
