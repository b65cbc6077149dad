"""Inverse problem definition and forward map adapters."""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
import logging
import pickle
from typing import Any, Optional

import numpy as np

from eki_calibration.errors import ConfigError, ForwardMapError
from eki_calibration.parameters import FreeParameters, build_free_parameters

Simulator = Callable[[np.ndarray], Any]

_EXECUTORS: dict[str, type[Executor]] = {
    "thread": ThreadPoolExecutor,
    "process": ProcessPoolExecutor,
}


def _evaluate_particle(
    particle_map: Callable[[np.ndarray], Any],
    index: int,
    theta: np.ndarray,
) -> tuple[int, Optional[np.ndarray], Optional[str]]:
    try:
        output = np.asarray(particle_map(theta), dtype=float).reshape(-1)
    except Exception as exc:
        return index, None, f"{type(exc).__name__}: {exc}"
    return index, output, None


class ParticleForwardMap:
    """Batch simulator built from a function that runs a single particle.

    Each column of the constrained parameter matrix is simulated
    independently, optionally on a ``concurrent.futures`` pool. A particle
    whose simulation raises is reported as a column of NaNs so that the
    inversion can treat it as a failed particle.
    """

    def __init__(
        self,
        particle_map: Callable[[np.ndarray], Any],
        n_observations: int,
        *,
        max_workers: Optional[int] = None,
        executor: str = "thread",
    ) -> None:
        if not callable(particle_map):
            raise ConfigError("particle_map must be callable.")
        if isinstance(n_observations, bool) or int(n_observations) <= 0:
            raise ConfigError("n_observations must be a positive integer.")
        if executor not in _EXECUTORS:
            raise ConfigError(
                f"executor must be one of {sorted(_EXECUTORS)}, got {executor!r}."
            )
        if executor == "process":
            try:
                pickle.dumps(particle_map)
            except (pickle.PicklingError, AttributeError, TypeError) as exc:
                raise ConfigError(
                    "particle_map must be picklable to run on a process pool; "
                    "use a module-level function or executor=\"thread\"."
                ) from exc
        self.particle_map = particle_map
        self.n_observations = int(n_observations)
        self.max_workers = max_workers
        self.executor = executor
        self.logger = logging.getLogger("eki_calibration.forward_map")

    def _collect(self, theta: np.ndarray) -> list[tuple[int, Optional[np.ndarray], Optional[str]]]:
        columns = [np.array(theta[:, k]) for k in range(theta.shape[1])]
        if self.max_workers is None or self.max_workers <= 1:
            return [
                _evaluate_particle(self.particle_map, k, column)
                for k, column in enumerate(columns)
            ]
        pool_cls = _EXECUTORS[self.executor]
        with pool_cls(max_workers=self.max_workers) as pool:
            futures = [
                pool.submit(_evaluate_particle, self.particle_map, k, column)
                for k, column in enumerate(columns)
            ]
            return [future.result() for future in futures]

    def __call__(self, theta: np.ndarray) -> np.ndarray:
        theta = np.atleast_2d(np.asarray(theta, dtype=float))
        G = np.full((self.n_observations, theta.shape[1]), np.nan)
        for index, output, error in self._collect(theta):
            if error is not None:
                self.logger.warning("Particle %s simulation failed: %s", index, error)
                continue
            if output.size != self.n_observations:
                self.logger.warning(
                    "Particle %s returned %s observations, expected %s.",
                    index,
                    output.size,
                    self.n_observations,
                )
                continue
            G[:, index] = output
        return G


class InverseProblem:
    """Observations, the simulator that predicts them, and the free parameters."""

    def __init__(
        self,
        observations: Any,
        simulator: Simulator,
        free_parameters: Any,
        ensemble_size: int,
        *,
        name: Optional[str] = None,
    ) -> None:
        y = np.asarray(observations, dtype=float)
        if y.ndim == 2 and 1 in y.shape:
            y = y.reshape(-1)
        if y.ndim != 1 or y.size == 0:
            raise ConfigError("observations must be a non-empty vector.")
        if not np.all(np.isfinite(y)):
            raise ConfigError("observations must be finite.")
        if not callable(simulator):
            raise ConfigError("simulator must be callable.")
        if isinstance(ensemble_size, bool):
            raise ConfigError("ensemble_size must be an integer.")
        try:
            ensemble_size = int(ensemble_size)
        except (TypeError, ValueError) as exc:
            raise ConfigError("ensemble_size must be an integer.") from exc
        if ensemble_size < 2:
            raise ConfigError("ensemble_size must be >= 2.")
        y.setflags(write=False)
        self._observations = y
        self.simulator = simulator
        self.free_parameters: FreeParameters = build_free_parameters(free_parameters)
        self.ensemble_size = ensemble_size
        self.name = name or "InverseProblem"

    @property
    def n_observations(self) -> int:
        return int(self._observations.size)

    @property
    def n_parameters(self) -> int:
        return len(self.free_parameters)

    def observation_map(self) -> np.ndarray:
        return self._observations

    def _check_output(self, output: Any, n_columns: int) -> np.ndarray:
        try:
            G = np.asarray(output, dtype=float)
        except (TypeError, ValueError) as exc:
            raise ForwardMapError(
                f"forward map output could not be converted to a float array: {exc}"
            ) from exc
        if G.ndim == 1 and n_columns == 1:
            G = G[:, None]
        expected = (self.n_observations, n_columns)
        if G.shape != expected:
            raise ForwardMapError(
                f"forward map returned shape {G.shape}, expected {expected}.",
                context={"problem": self.name},
            )
        return G

    def forward_map(self, theta: Any) -> np.ndarray:
        """Run the simulator on constrained parameters (vector or ``Nθ × N`` matrix)."""
        theta = np.asarray(theta, dtype=float)
        if theta.ndim == 1:
            theta = theta[:, None]
        view = np.array(theta)
        view.setflags(write=False)
        return self._check_output(self.simulator(view), theta.shape[1])

    def inverting_forward_map(self, X: np.ndarray) -> np.ndarray:
        """Map unconstrained parameters to constrained space, then simulate."""
        X = np.atleast_2d(np.asarray(X, dtype=float))
        return self.forward_map(self.free_parameters.transform_to_constrained(X))

    def summary(self) -> str:
        return (
            f"{self.name} with {self.n_parameters} free parameters "
            f"{list(self.free_parameters.names)}, {self.n_observations} observations "
            f"and {self.ensemble_size} ensemble members"
        )

    def __repr__(self) -> str:
        return f"<{self.summary()}>"


__all__ = ["InverseProblem", "ParticleForwardMap", "Simulator"]
