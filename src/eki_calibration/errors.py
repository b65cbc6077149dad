"""Error hierarchy for eki_calibration."""

from __future__ import annotations

from typing import Any, Mapping, Optional

RESAMPLING_REMEDIATION = (
    "Consider\n"
    "    1. Increasing `Resampler.acceptable_failure_fraction`,\n"
    "    2. Reducing the pseudo step size or the simulation time step,\n"
    "    3. Evolving the simulation for less time,\n"
    "    4. Narrowing the free parameter priors."
)


class EkiCalibrationError(Exception):
    """Base exception for eki_calibration failures."""

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.user_message = message if user_message is None else user_message
        self.context = dict(context) if context else {}

    def log_message(self) -> str:
        if not self.context:
            return str(self)
        return f"{self}: {self.context}"


class ConfigError(EkiCalibrationError):
    """Configuration loading or validation error."""


class ValidationError(EkiCalibrationError):
    """Validation error for input arrays or parameter values."""


class ForwardMapError(EkiCalibrationError):
    """Forward map returned output of the wrong shape or type."""


class InversionError(EkiCalibrationError):
    """Ensemble Kalman inversion could not proceed."""


class FatalResamplingFailure(InversionError):
    """Too many particles failed to recover by resampling."""

    def __init__(
        self,
        message: str,
        *,
        failed_count: int = 0,
        ensemble_size: int = 0,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        payload = dict(context) if context else {}
        payload.setdefault("failed_count", failed_count)
        payload.setdefault("ensemble_size", ensemble_size)
        super().__init__(
            f"{message}\n{RESAMPLING_REMEDIATION}",
            user_message=message,
            context=payload,
        )
        self.failed_count = failed_count
        self.ensemble_size = ensemble_size


class AllParticlesFailed(FatalResamplingFailure):
    """Every particle in the ensemble failed."""


__all__ = [
    "RESAMPLING_REMEDIATION",
    "EkiCalibrationError",
    "ConfigError",
    "ValidationError",
    "ForwardMapError",
    "InversionError",
    "FatalResamplingFailure",
    "AllParticlesFailed",
]
