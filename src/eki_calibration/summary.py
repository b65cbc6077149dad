"""Per-iteration snapshots of ensemble statistics in constrained space."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import numpy as np

from eki_calibration.errors import ValidationError
from eki_calibration.linalg import ensemble_covariance, ensemble_mean

if TYPE_CHECKING:  # pragma: no cover
    from eki_calibration.engine import EnsembleKalmanInversion


def _frozen(array: Any) -> np.ndarray:
    array = np.array(array, dtype=float)
    array.setflags(write=False)
    return array


def mean_square_errors(observations: np.ndarray, G: np.ndarray) -> np.ndarray:
    """``‖y − Gₖ‖² / Nobs`` per particle."""
    with np.errstate(invalid="ignore", over="ignore"):
        return np.sum((observations[:, None] - G) ** 2, axis=0) / observations.size


def _param_str(value: Any) -> str:
    if isinstance(value, str):
        return f"{value[:9]:>10s} | "
    return f"{value: .3e} | "


@dataclass(frozen=True, eq=False)
class IterationSummary:
    """Immutable statistics of one ensemble, all in constrained space."""

    names: tuple[str, ...]
    parameters: np.ndarray
    ensemble_mean: np.ndarray
    ensemble_cov: np.ndarray
    ensemble_var: np.ndarray
    mean_square_errors: np.ndarray
    iteration: int
    pseudotime: float = 0.0
    pseudo_step_size: Optional[float] = None

    @classmethod
    def from_engine(
        cls,
        engine: "EnsembleKalmanInversion",
        X: np.ndarray,
        G: np.ndarray,
        *,
        pseudo_step_size: Optional[float] = None,
    ) -> "IterationSummary":
        free_parameters = engine.free_parameters
        if X.shape[0] != len(free_parameters):
            raise ValidationError(
                f"X has {X.shape[0]} rows, expected {len(free_parameters)} parameters."
            )
        mean = ensemble_mean(X)
        covariance = free_parameters.covariance_transform(mean, ensemble_covariance(X))
        return cls(
            names=tuple(free_parameters.names),
            parameters=_frozen(free_parameters.transform_to_constrained(X)),
            ensemble_mean=_frozen(free_parameters.transform_to_constrained(mean)),
            ensemble_cov=_frozen(covariance),
            ensemble_var=_frozen(np.diag(covariance)),
            mean_square_errors=_frozen(mean_square_errors(engine.observations, G)),
            iteration=int(engine.iteration),
            pseudotime=float(engine.pseudotime),
            pseudo_step_size=None if pseudo_step_size is None else float(pseudo_step_size),
        )

    @property
    def ensemble_size(self) -> int:
        return int(self.parameters.shape[1])

    def named_mean(self) -> dict[str, float]:
        return {name: float(v) for name, v in zip(self.names, self.ensemble_mean)}

    def named_variance(self) -> dict[str, float]:
        return {name: float(v) for name, v in zip(self.names, self.ensemble_var)}

    def particle(self, k: int) -> dict[str, float]:
        return {name: float(v) for name, v in zip(self.names, self.parameters[:, k])}

    def _extreme(self, pick) -> Optional[int]:
        finite = np.isfinite(self.mean_square_errors)
        if not np.any(finite):
            return None
        errors = np.where(finite, self.mean_square_errors, np.nan)
        return int(pick(errors))

    def best_particle(self) -> Optional[int]:
        """Index of the particle with the smallest finite error."""
        return self._extreme(np.nanargmin)

    def worst_particle(self) -> Optional[int]:
        return self._extreme(np.nanargmax)

    def summary(self) -> str:
        return (
            f"IterationSummary for {self.ensemble_size} particles and "
            f"{len(self.names)} parameters at iteration {self.iteration}"
        )

    def _particle_line(self, label: str, k: Optional[int]) -> str:
        head = f"{label:>11s} particle: "
        if k is None:
            return head + "n/a"
        values = "".join(_param_str(v) for v in self.parameters[:, k])
        return head + values + f"error = {self.mean_square_errors[k]:.6e}"

    def __str__(self) -> str:
        lines = [
            self.summary(),
            "                      " + "".join(_param_str(n) for n in self.names),
            "       ensemble_mean: " + "".join(_param_str(v) for v in self.ensemble_mean),
            self._particle_line("best", self.best_particle()),
            self._particle_line("worst", self.worst_particle()),
            "             minimum: "
            + "".join(_param_str(v) for v in self.parameters.min(axis=1)),
            "             maximum: "
            + "".join(_param_str(v) for v in self.parameters.max(axis=1)),
            "   ensemble_variance: " + "".join(_param_str(v) for v in self.ensemble_var),
        ]
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "pseudotime": self.pseudotime,
            "pseudo_step_size": self.pseudo_step_size,
            "ensemble_mean": self.named_mean(),
            "ensemble_var": self.named_variance(),
            "mean_square_errors": self.mean_square_errors.tolist(),
        }


__all__ = ["IterationSummary", "mean_square_errors"]
