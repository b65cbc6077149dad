"""Tabular convergence diagnostics built from iteration summaries."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Optional

import numpy as np
import pandas as pd

from eki_calibration.errors import ValidationError
from eki_calibration.summary import IterationSummary


def _require_summaries(summaries: Sequence[IterationSummary]) -> None:
    if not summaries:
        raise ValidationError("summaries must contain at least one IterationSummary.")


def convergence_history(
    summaries: Sequence[IterationSummary],
    true_parameters: Optional[Any] = None,
) -> pd.DataFrame:
    """One row per summary with error and parameter statistics.

    When ``true_parameters`` (constrained values, in parameter order) is
    given, a ``parameter_error`` column holds the relative distance of the
    ensemble mean from it.
    """
    _require_summaries(summaries)
    names = summaries[0].names
    truth = None
    if true_parameters is not None:
        truth = np.asarray(true_parameters, dtype=float).reshape(-1)
        if truth.size != len(names):
            raise ValidationError(
                f"expected {len(names)} true parameter values, got {truth.size}."
            )
    rows = []
    for summary in summaries:
        errors = summary.mean_square_errors
        finite = errors[np.isfinite(errors)]
        row = {
            "iteration": summary.iteration,
            "pseudotime": summary.pseudotime,
            "pseudo_step_size": (
                np.nan if summary.pseudo_step_size is None else summary.pseudo_step_size
            ),
            "mean_mse": float(finite.mean()) if finite.size else np.nan,
            "min_mse": float(finite.min()) if finite.size else np.nan,
            "max_mse": float(finite.max()) if finite.size else np.nan,
        }
        for name, value in summary.named_mean().items():
            row[f"mean:{name}"] = value
        for name, value in summary.named_variance().items():
            row[f"var:{name}"] = value
        row["parameter_norm"] = float(np.linalg.norm(summary.ensemble_mean))
        if truth is not None:
            scale = float(np.linalg.norm(truth)) or 1.0
            row["parameter_error"] = float(np.linalg.norm(summary.ensemble_mean - truth)) / scale
        rows.append(row)
    return pd.DataFrame(rows)


def variance_reduction(summaries: Sequence[IterationSummary]) -> pd.DataFrame:
    """Ensemble variance of each parameter relative to the first summary."""
    _require_summaries(summaries)
    initial = np.asarray(summaries[0].ensemble_var, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratios = [np.asarray(s.ensemble_var) / initial for s in summaries]
    return pd.DataFrame(
        ratios,
        columns=list(summaries[0].names),
        index=pd.Index([s.iteration for s in summaries], name="iteration"),
    )


__all__ = ["convergence_history", "variance_reduction"]
