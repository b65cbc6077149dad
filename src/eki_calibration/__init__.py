"""Ensemble Kalman inversion for calibrating black-box simulators."""

__version__ = "0.1.0"

__all__ = ["__version__"]
