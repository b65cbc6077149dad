"""Build inversion components from plain configuration mappings."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import yaml

from eki_calibration.engine import EnsembleKalmanInversion
from eki_calibration.errors import ConfigError
from eki_calibration.failure import FailureDetector
from eki_calibration.inverse_problem import InverseProblem
from eki_calibration.parameters import build_free_parameters
from eki_calibration.pseudo_stepping import Process, PseudoSteppingScheme
from eki_calibration.registry import resolve
from eki_calibration.resampling import Resampler

_DISABLED = {"", "none", "null", "fixed"}


def load_config(path: Union[str, Path]) -> dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to load config from {path}: {exc}") from exc
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise ConfigError(f"Config in {path} must be a mapping.")
    return dict(payload)


def _variant(cfg: Any, label: str) -> tuple[Optional[str], dict[str, Any]]:
    if cfg is None:
        return None, {}
    if isinstance(cfg, str):
        return cfg, {}
    if not isinstance(cfg, Mapping):
        raise ConfigError(f"{label} must be a name or a mapping with 'name'.")
    name = cfg.get("name")
    if name is not None and not isinstance(name, str):
        raise ConfigError(f"{label}.name must be a string.")
    params = cfg.get("params") or {}
    if not isinstance(params, Mapping):
        raise ConfigError(f"{label}.params must be a mapping.")
    return name, dict(params)


def _instantiate(kind: str, name: str, params: Mapping[str, Any], label: str) -> Any:
    factory: Callable[..., Any] = resolve(kind, name)
    try:
        return factory(**params)
    except TypeError as exc:
        raise ConfigError(f"Invalid {label} parameters {dict(params)}: {exc}") from exc


def build_process(cfg: Any = None) -> Process:
    name, params = _variant(cfg, "process")
    return _instantiate("process", name or "inversion", params, "process")


def build_pseudo_stepping(cfg: Any = None) -> Optional[PseudoSteppingScheme]:
    name, params = _variant(cfg, "pseudo_stepping")
    if name is None or name.strip().lower() in _DISABLED:
        return None
    return _instantiate("pseudo_stepping", name, params, "pseudo_stepping")


def build_failure_detector(cfg: Any = None) -> FailureDetector:
    name, params = _variant(cfg, "failure_detector")
    return _instantiate(
        "failure_detector", name or "norm_exceeds_median", params, "failure_detector"
    )


def build_resampler(cfg: Optional[Mapping[str, Any]] = None) -> Resampler:
    if cfg is None:
        return Resampler()
    if not isinstance(cfg, Mapping):
        raise ConfigError("resampler must be a mapping.")
    options = dict(cfg)
    distribution = options.pop("distribution", None) or "successful"
    if isinstance(distribution, str):
        distribution = resolve("ensemble_distribution", distribution)()
    try:
        return Resampler(distribution=distribution, **options)
    except TypeError as exc:
        raise ConfigError(f"Invalid resampler parameters {options}: {exc}") from exc


def _section(cfg: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = cfg.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be a mapping.")
    return value


def _seed(cfg: Mapping[str, Any]) -> Optional[int]:
    seed = _section(cfg, "common").get("seed", cfg.get("seed"))
    if seed is None:
        return None
    try:
        return int(seed)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Seed must be an integer, got {seed!r}.") from exc


def build_inverse_problem(
    cfg: Mapping[str, Any],
    observations: Any,
    simulator: Callable[[np.ndarray], Any],
    *,
    name: Optional[str] = None,
) -> InverseProblem:
    """Pair observations and a simulator with the ``priors`` and ``ensemble_size`` of ``cfg``."""
    if "priors" not in cfg or not cfg["priors"]:
        raise ConfigError("priors must be provided.")
    return InverseProblem(
        observations,
        simulator,
        build_free_parameters(cfg["priors"]),
        cfg.get("ensemble_size", 20),
        name=name,
    )


def build_inversion(
    cfg: Mapping[str, Any],
    inverse_problem: InverseProblem,
) -> EnsembleKalmanInversion:
    """Build an :class:`EnsembleKalmanInversion` from the ``inversion`` section of ``cfg``."""
    if not isinstance(cfg, Mapping):
        raise ConfigError("config must be a mapping.")
    inversion = _section(cfg, "inversion") if "inversion" in cfg else cfg
    known = {
        "noise_covariance",
        "process",
        "pseudo_stepping",
        "pseudo_step_size",
        "failure_detector",
        "resampler",
        "tikhonov",
        "covariance_inflation",
        "momentum_parameter",
        "iterations",
        "common",
        "seed",
        "logging",
        "priors",
        "ensemble_size",
    }
    unknown = sorted(set(inversion) - known)
    if unknown:
        raise ConfigError(
            f"Unknown inversion keys: {', '.join(unknown)}. "
            f"Available: {', '.join(sorted(known))}."
        )
    return EnsembleKalmanInversion(
        inverse_problem,
        noise_covariance=inversion.get("noise_covariance", 1.0e-2),
        process=build_process(inversion.get("process")),
        pseudo_stepping=build_pseudo_stepping(inversion.get("pseudo_stepping")),
        pseudo_step_size=inversion.get("pseudo_step_size", 1.0),
        failure_detector=build_failure_detector(inversion.get("failure_detector")),
        resampler=build_resampler(inversion.get("resampler")),
        tikhonov=bool(inversion.get("tikhonov", False)),
        covariance_inflation=inversion.get("covariance_inflation", 0.0),
        momentum_parameter=inversion.get("momentum_parameter", 0.0),
        seed=_seed(cfg),
    )


__all__ = [
    "load_config",
    "build_free_parameters",
    "build_inverse_problem",
    "build_process",
    "build_pseudo_stepping",
    "build_failure_detector",
    "build_resampler",
    "build_inversion",
]
