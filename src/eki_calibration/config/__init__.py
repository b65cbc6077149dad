from eki_calibration.config.builders import (
    build_failure_detector,
    build_free_parameters,
    build_inverse_problem,
    build_inversion,
    build_process,
    build_pseudo_stepping,
    build_resampler,
    load_config,
)
from eki_calibration.config.schema import AppConfig, register_configs

__all__ = [
    "AppConfig",
    "register_configs",
    "load_config",
    "build_free_parameters",
    "build_inverse_problem",
    "build_process",
    "build_pseudo_stepping",
    "build_failure_detector",
    "build_resampler",
    "build_inversion",
]
