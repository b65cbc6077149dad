"""Free parameters, their priors, and constrained/unconstrained transforms."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import math
from typing import Any, Optional

import numpy as np
from scipy.special import erfinv, expit, logit

from eki_calibration.errors import ConfigError, ValidationError
from eki_calibration.registry import register, resolve


def _coerce_float(value: Any, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a number.")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a number.") from exc
    if not math.isfinite(number):
        raise ConfigError(f"{label} must be finite.")
    return number


def _require_nonempty_str(value: Any, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value


def _as_array(value: Any) -> np.ndarray:
    return np.asarray(value, dtype=float)


def _maybe_scalar(result: np.ndarray, value: Any) -> Any:
    if np.ndim(value) == 0:
        return float(result)
    return result


class PriorDistribution:
    """Base class for priors on a single free parameter.

    Every prior maps its physical (constrained) support onto the real line.
    The image of the prior under that map is a normal distribution with
    ``unconstrained_mean`` and ``unconstrained_std``.
    """

    kind: str = ""

    def to_unconstrained(self, value: Any) -> Any:  # pragma: no cover - interface
        raise NotImplementedError

    def to_constrained(self, value: Any) -> Any:  # pragma: no cover - interface
        raise NotImplementedError

    def constrained_derivative(self, value: Any) -> Any:  # pragma: no cover - interface
        """Derivative of ``to_constrained`` at the unconstrained ``value``."""
        raise NotImplementedError

    @property
    def unconstrained_mean(self) -> float:  # pragma: no cover - interface
        raise NotImplementedError

    @property
    def unconstrained_std(self) -> float:  # pragma: no cover - interface
        raise NotImplementedError

    def in_support(self, value: Any) -> bool:
        return bool(np.all(np.isfinite(_as_array(value))))

    def sample_unconstrained(
        self,
        rng: np.random.Generator,
        size: Optional[int] = None,
    ) -> Any:
        return rng.normal(self.unconstrained_mean, self.unconstrained_std, size=size)

    def sample(self, rng: np.random.Generator, size: Optional[int] = None) -> Any:
        return self.to_constrained(self.sample_unconstrained(rng, size=size))

    def to_dict(self) -> dict[str, Any]:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass(frozen=True)
class LogNormalPrior(PriorDistribution):
    mu: float
    sigma: float

    kind = "lognormal"

    def __post_init__(self) -> None:
        mu = _coerce_float(self.mu, "lognormal.mu")
        sigma = _coerce_float(self.sigma, "lognormal.sigma")
        if sigma <= 0:
            raise ConfigError("lognormal.sigma must be > 0.")
        object.__setattr__(self, "mu", mu)
        object.__setattr__(self, "sigma", sigma)

    @property
    def unconstrained_mean(self) -> float:
        return self.mu

    @property
    def unconstrained_std(self) -> float:
        return self.sigma

    def in_support(self, value: Any) -> bool:
        array = _as_array(value)
        return bool(np.all(np.isfinite(array)) and np.all(array > 0))

    def to_unconstrained(self, value: Any) -> Any:
        return _maybe_scalar(np.log(_as_array(value)), value)

    def to_constrained(self, value: Any) -> Any:
        return _maybe_scalar(np.exp(_as_array(value)), value)

    def constrained_derivative(self, value: Any) -> Any:
        return _maybe_scalar(np.exp(_as_array(value)), value)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "mu": self.mu, "sigma": self.sigma}


@dataclass(frozen=True)
class NormalPrior(PriorDistribution):
    mean: float
    std: float

    kind = "normal"

    def __post_init__(self) -> None:
        mean = _coerce_float(self.mean, "normal.mean")
        std = _coerce_float(self.std, "normal.std")
        if std <= 0:
            raise ConfigError("normal.std must be > 0.")
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "std", std)

    # Standardized: the unconstrained prior is N(0, 1).
    @property
    def unconstrained_mean(self) -> float:
        return 0.0

    @property
    def unconstrained_std(self) -> float:
        return 1.0

    def to_unconstrained(self, value: Any) -> Any:
        return _maybe_scalar((_as_array(value) - self.mean) / self.std, value)

    def to_constrained(self, value: Any) -> Any:
        return _maybe_scalar(self.mean + self.std * _as_array(value), value)

    def constrained_derivative(self, value: Any) -> Any:
        return _maybe_scalar(np.full_like(_as_array(value), self.std), value)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind, "mean": self.mean, "std": self.std}


@dataclass(frozen=True)
class ScaledLogitNormalPrior(PriorDistribution):
    """Logit-normal prior rescaled onto the open interval ``(lower, upper)``."""

    lower: float
    upper: float
    mu: float = 0.0
    sigma: float = 1.0

    kind = "scaled_logit_normal"

    def __post_init__(self) -> None:
        lower = _coerce_float(self.lower, "scaled_logit_normal.lower")
        upper = _coerce_float(self.upper, "scaled_logit_normal.upper")
        if upper <= lower:
            raise ConfigError("scaled_logit_normal bounds must satisfy lower < upper.")
        mu = _coerce_float(self.mu, "scaled_logit_normal.mu")
        sigma = _coerce_float(self.sigma, "scaled_logit_normal.sigma")
        if sigma <= 0:
            raise ConfigError("scaled_logit_normal.sigma must be > 0.")
        object.__setattr__(self, "lower", lower)
        object.__setattr__(self, "upper", upper)
        object.__setattr__(self, "mu", mu)
        object.__setattr__(self, "sigma", sigma)

    @classmethod
    def from_interval(
        cls,
        bounds: Sequence[float],
        interval: Sequence[float],
        mass: float = 0.5,
    ) -> "ScaledLogitNormalPrior":
        """Choose ``mu`` and ``sigma`` so that ``mass`` of the prior lies in ``interval``."""
        if len(bounds) != 2 or len(interval) != 2:
            raise ConfigError("bounds and interval must be (low, high) pairs.")
        lower = _coerce_float(bounds[0], "bounds[0]")
        upper = _coerce_float(bounds[1], "bounds[1]")
        low = _coerce_float(interval[0], "interval[0]")
        high = _coerce_float(interval[1], "interval[1]")
        mass = _coerce_float(mass, "mass")
        if not lower < low < high < upper:
            raise ConfigError("interval must lie strictly inside bounds with low < high.")
        if not 0.0 < mass < 1.0:
            raise ConfigError("mass must be in (0, 1).")
        width = upper - lower
        low_u = float(logit((low - lower) / width))
        high_u = float(logit((high - lower) / width))
        mu = 0.5 * (low_u + high_u)
        sigma = (high_u - low_u) / (2.0 * math.sqrt(2.0) * float(erfinv(mass)))
        return cls(lower=lower, upper=upper, mu=mu, sigma=sigma)

    @property
    def unconstrained_mean(self) -> float:
        return self.mu

    @property
    def unconstrained_std(self) -> float:
        return self.sigma

    def in_support(self, value: Any) -> bool:
        array = _as_array(value)
        return bool(
            np.all(np.isfinite(array))
            and np.all(array > self.lower)
            and np.all(array < self.upper)
        )

    def to_unconstrained(self, value: Any) -> Any:
        scaled = (_as_array(value) - self.lower) / (self.upper - self.lower)
        return _maybe_scalar(logit(scaled), value)

    def to_constrained(self, value: Any) -> Any:
        result = self.lower + (self.upper - self.lower) * expit(_as_array(value))
        return _maybe_scalar(result, value)

    def constrained_derivative(self, value: Any) -> Any:
        s = expit(_as_array(value))
        return _maybe_scalar((self.upper - self.lower) * s * (1.0 - s), value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "lower": self.lower,
            "upper": self.upper,
            "mu": self.mu,
            "sigma": self.sigma,
        }


def lognormal_with_mean_std(mean: float, std: float) -> LogNormalPrior:
    """Return the log-normal prior whose constrained mean and std are given."""
    mean = _coerce_float(mean, "lognormal.mean")
    std = _coerce_float(std, "lognormal.std")
    if mean <= 0 or std <= 0:
        raise ConfigError("lognormal mean and std must be > 0.")
    variance = math.log1p((std / mean) ** 2)
    return LogNormalPrior(mu=math.log(mean) - 0.5 * variance, sigma=math.sqrt(variance))


def to_unconstrained(prior: PriorDistribution, value: Any) -> Any:
    if not prior.in_support(value):
        raise ValidationError(
            f"value {value!r} is outside the support of the {prior.kind} prior.",
            context={"prior": prior.to_dict()},
        )
    return prior.to_unconstrained(value)


def to_constrained(prior: PriorDistribution, value: Any) -> Any:
    return prior.to_constrained(value)


def covariance_transform(
    priors: Sequence[PriorDistribution],
    unconstrained_point: Any,
    unconstrained_covariance: Any,
) -> np.ndarray:
    """Propagate an unconstrained covariance through the local Jacobian.

    The transforms act elementwise, so the Jacobian of the constrained map
    is diagonal and ``D @ cov @ D.T`` reduces to an outer-product scaling.
    """
    point = _as_array(unconstrained_point).reshape(-1)
    covariance = np.atleast_2d(_as_array(unconstrained_covariance))
    if len(priors) != point.size or covariance.shape != (point.size, point.size):
        raise ValidationError(
            "covariance_transform shapes do not match the number of priors.",
            context={
                "priors": len(priors),
                "point": point.shape,
                "covariance": covariance.shape,
            },
        )
    jacobian = np.array(
        [float(prior.constrained_derivative(float(u))) for prior, u in zip(priors, point)]
    )
    return covariance * np.outer(jacobian, jacobian)


class FreeParameters:
    """Ordered collection of named parameters with independent priors."""

    def __init__(self, priors: Mapping[str, PriorDistribution]) -> None:
        if not isinstance(priors, Mapping) or not priors:
            raise ConfigError("priors must be a non-empty mapping of name -> prior.")
        names: list[str] = []
        values: list[PriorDistribution] = []
        for name, prior in priors.items():
            name = _require_nonempty_str(name, "parameter name")
            if not isinstance(prior, PriorDistribution):
                raise ConfigError(f"prior for {name!r} must be a PriorDistribution.")
            names.append(name)
            values.append(prior)
        self._names = tuple(names)
        self._priors = tuple(values)

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self):
        return iter(self._names)

    def __repr__(self) -> str:
        kinds = ", ".join(f"{n}={p.kind}" for n, p in zip(self._names, self._priors))
        return f"FreeParameters({kinds})"

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    @property
    def priors(self) -> tuple[PriorDistribution, ...]:
        return self._priors

    def prior(self, name: str) -> PriorDistribution:
        try:
            return self._priors[self._names.index(name)]
        except ValueError as exc:
            raise KeyError(f"Unknown parameter: {name!r}.") from exc

    def _apply(self, values: Any, transform: str) -> np.ndarray:
        array = _as_array(values)
        if array.shape[:1] != (len(self),):
            raise ValidationError(
                f"expected {len(self)} parameter rows, got shape {array.shape}."
            )
        out = np.empty_like(array, dtype=float)
        for idx, prior in enumerate(self._priors):
            out[idx] = getattr(prior, transform)(array[idx])
        return out

    def transform_to_constrained(self, unconstrained: Any) -> np.ndarray:
        return self._apply(unconstrained, "to_constrained")

    def transform_to_unconstrained(self, constrained: Any) -> np.ndarray:
        array = _as_array(constrained)
        for name, prior, row in zip(self._names, self._priors, array):
            if not prior.in_support(row):
                raise ValidationError(
                    f"parameter {name!r} has values outside the prior support.",
                    context={"prior": prior.to_dict()},
                )
        return self._apply(array, "to_unconstrained")

    def sample_unconstrained(self, n_samples: int, rng: np.random.Generator) -> np.ndarray:
        if isinstance(n_samples, bool) or int(n_samples) <= 0:
            raise ConfigError("n_samples must be a positive integer.")
        return np.vstack(
            [prior.sample_unconstrained(rng, size=int(n_samples)) for prior in self._priors]
        )

    def unconstrained_prior_mean(self) -> np.ndarray:
        return np.array([prior.unconstrained_mean for prior in self._priors])

    def unconstrained_prior_covariance(self) -> np.ndarray:
        return np.diag([prior.unconstrained_std**2 for prior in self._priors])

    def covariance_transform(self, unconstrained_point: Any, covariance: Any) -> np.ndarray:
        return covariance_transform(self._priors, unconstrained_point, covariance)

    def named(self, vector: Any) -> dict[str, float]:
        array = _as_array(vector).reshape(-1)
        if array.size != len(self):
            raise ValidationError(
                f"expected {len(self)} parameter values, got {array.size}."
            )
        return {name: float(value) for name, value in zip(self._names, array)}

    def to_payload(self) -> list[dict[str, Any]]:
        return [
            {"name": name, "prior": prior.to_dict()}
            for name, prior in zip(self._names, self._priors)
        ]


def _extract_prior_param(
    prior: Mapping[str, Any],
    *,
    keys: Sequence[str],
    label: str,
) -> Optional[float]:
    for key in keys:
        if key in prior and prior.get(key) is not None:
            return _coerce_float(prior.get(key), f"{label}.{key}")
    return None


def _extract_pair(prior: Mapping[str, Any], key: str, label: str) -> Optional[tuple[float, float]]:
    value = prior.get(key)
    if value is None:
        return None
    if not isinstance(value, Sequence) or isinstance(value, str) or len(value) != 2:
        raise ConfigError(f"{label}.{key} must be a (low, high) pair.")
    return (
        _coerce_float(value[0], f"{label}.{key}[0]"),
        _coerce_float(value[1], f"{label}.{key}[1]"),
    )


def _build_lognormal(prior: Mapping[str, Any], label: str) -> PriorDistribution:
    mu = _extract_prior_param(prior, keys=("mu",), label=label)
    sigma = _extract_prior_param(prior, keys=("sigma",), label=label)
    if mu is not None and sigma is not None:
        return LogNormalPrior(mu=mu, sigma=sigma)
    mean = _extract_prior_param(prior, keys=("mean",), label=label)
    std = _extract_prior_param(prior, keys=("std",), label=label)
    if mean is None or std is None:
        raise ConfigError(f"{label} lognormal prior requires mu/sigma or mean/std.")
    return lognormal_with_mean_std(mean, std)


def _build_normal(prior: Mapping[str, Any], label: str) -> PriorDistribution:
    mean = _extract_prior_param(prior, keys=("mean", "mu"), label=label)
    std = _extract_prior_param(prior, keys=("std", "sigma"), label=label)
    if mean is None or std is None:
        raise ConfigError(f"{label} normal prior requires mean/std.")
    return NormalPrior(mean=mean, std=std)


def _build_scaled_logit_normal(prior: Mapping[str, Any], label: str) -> PriorDistribution:
    bounds = _extract_pair(prior, "bounds", label)
    if bounds is None:
        lower = _extract_prior_param(prior, keys=("lower", "low"), label=label)
        upper = _extract_prior_param(prior, keys=("upper", "high"), label=label)
        if lower is None or upper is None:
            raise ConfigError(f"{label} scaled_logit_normal prior requires bounds.")
        bounds = (lower, upper)
    interval = _extract_pair(prior, "interval", label)
    if interval is not None:
        mass = _extract_prior_param(prior, keys=("mass",), label=label)
        return ScaledLogitNormalPrior.from_interval(
            bounds, interval, 0.5 if mass is None else mass
        )
    mu = _extract_prior_param(prior, keys=("mu",), label=label)
    sigma = _extract_prior_param(prior, keys=("sigma",), label=label)
    return ScaledLogitNormalPrior(
        lower=bounds[0],
        upper=bounds[1],
        mu=0.0 if mu is None else mu,
        sigma=1.0 if sigma is None else sigma,
    )


register("prior", "lognormal", _build_lognormal)
register("prior", "log-normal", _build_lognormal)
register("prior", "log_normal", _build_lognormal)
register("prior", "normal", _build_normal)
register("prior", "gaussian", _build_normal)
register("prior", "scaled_logit_normal", _build_scaled_logit_normal)
register("prior", "logit_normal", _build_scaled_logit_normal)
register("prior", "bounded", _build_scaled_logit_normal)


def parse_prior(entry: Any, *, label: str = "prior") -> PriorDistribution:
    if isinstance(entry, PriorDistribution):
        return entry
    if not isinstance(entry, Mapping):
        raise ConfigError(f"{label} must be a mapping or PriorDistribution.")
    prior_type = entry.get("type") or entry.get("kind") or entry.get("distribution")
    if prior_type is None:
        raise ConfigError(f"{label} prior type must be provided.")
    prior_type = _require_nonempty_str(prior_type, f"{label}.type")
    builder = resolve("prior", prior_type)
    return builder(entry, label)


def build_free_parameters(specs: Any) -> FreeParameters:
    """Build ``FreeParameters`` from ``{name: prior}`` or ``[{name, prior}, ...]``."""
    if isinstance(specs, FreeParameters):
        return specs
    priors: dict[str, PriorDistribution] = {}
    if isinstance(specs, Mapping):
        for name, entry in specs.items():
            priors[str(name)] = parse_prior(entry, label=f"priors.{name}")
        return FreeParameters(priors)
    if not isinstance(specs, Sequence) or isinstance(specs, (str, bytes, bytearray)):
        raise ConfigError("parameter specs must be a mapping or a sequence of mappings.")
    for index, entry in enumerate(specs):
        if not isinstance(entry, Mapping):
            raise ConfigError(f"priors[{index}] must be a mapping.")
        name = _require_nonempty_str(entry.get("name"), f"priors[{index}].name")
        if name in priors:
            raise ConfigError(f"Duplicate parameter name: {name!r}.")
        prior = entry.get("prior")
        if prior is None:
            prior = {key: value for key, value in entry.items() if key != "name"}
        priors[name] = parse_prior(prior, label=f"priors[{index}]")
    return FreeParameters(priors)


__all__ = [
    "PriorDistribution",
    "LogNormalPrior",
    "NormalPrior",
    "ScaledLogitNormalPrior",
    "lognormal_with_mean_std",
    "to_unconstrained",
    "to_constrained",
    "covariance_transform",
    "FreeParameters",
    "parse_prior",
    "build_free_parameters",
]
