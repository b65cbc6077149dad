"""Structured config schema for Hydra."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any


@dataclass
class CommonConfig:
    seed: int = 0


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class VariantConfig:
    # Registry name; an empty name disables optional variants.
    name: str = ""
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResamplerConfig:
    acceptable_failure_fraction: float = 1.0
    resample_failure_fraction: float = 0.0
    only_failed_particles: bool = True
    distribution: str = "successful"
    max_search_attempts: int = 10


@dataclass
class InversionConfig:
    noise_covariance: Any = 0.01
    process: VariantConfig = field(default_factory=lambda: VariantConfig(name="inversion"))
    pseudo_stepping: VariantConfig = field(default_factory=VariantConfig)
    pseudo_step_size: float = 1.0
    failure_detector: VariantConfig = field(
        default_factory=lambda: VariantConfig(name="norm_exceeds_median")
    )
    resampler: ResamplerConfig = field(default_factory=ResamplerConfig)
    tikhonov: bool = False
    covariance_inflation: float = 0.0
    momentum_parameter: float = 0.0
    iterations: int = 10


@dataclass
class AppConfig:
    common: CommonConfig = field(default_factory=CommonConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    ensemble_size: int = 20
    priors: dict[str, Any] = field(default_factory=dict)
    inversion: InversionConfig = field(default_factory=InversionConfig)


def register_configs() -> None:
    from hydra.core.config_store import ConfigStore

    cs = ConfigStore.instance()
    try:
        cs.store(group="schema", name="base", node=AppConfig, package="_global_")
    except Exception as exc:
        logging.getLogger(__name__).warning(
            "Hydra config store registration failed: %s", exc
        )


__all__ = [
    "CommonConfig",
    "LoggingConfig",
    "VariantConfig",
    "ResamplerConfig",
    "InversionConfig",
    "AppConfig",
    "register_configs",
]
