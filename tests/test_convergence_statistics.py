from __future__ import annotations

import numpy as np
import pytest

from eki_calibration.engine import EnsembleKalmanInversion
from eki_calibration.inverse_problem import InverseProblem
from eki_calibration.parameters import NormalPrior
from eki_calibration.pseudo_stepping import Sampler


def test_mean_error_decreases_on_average(linear_problem) -> None:
    initial = []
    final = []
    for seed in range(5):
        eki = EnsembleKalmanInversion(linear_problem, noise_covariance=0.01, seed=seed)
        eki.iterate(5)
        initial.append(np.mean(eki.summary_at(-1).mean_square_errors))
        final.append(np.mean(eki.summary_at(4).mean_square_errors))

    assert np.mean(final) < np.mean(initial)


def test_ensemble_collapses_toward_truth(linear_problem, true_parameters) -> None:
    eki = EnsembleKalmanInversion(linear_problem, seed=0)
    mean = eki.iterate(10)
    initial_spread = eki.summary_at(-1).ensemble_var.sum()
    assert eki.summary_at(9).ensemble_var.sum() < initial_spread
    assert np.linalg.norm(mean - true_parameters) < 0.5


@pytest.mark.parametrize("tikhonov", [False, True])
def test_sampler_mean_matches_linear_gaussian_posterior(tikhonov) -> None:
    operator = np.array([[1.0, 0.5], [0.3, 1.0], [0.8, -0.4]])
    observations = operator @ np.array([1.5, -1.0])
    noise = 4.0
    problem = InverseProblem(
        observations,
        lambda theta: operator @ theta,
        {name: NormalPrior(mean=0.0, std=1.0) for name in ("a", "b")},
        ensemble_size=400,
    )
    eki = EnsembleKalmanInversion(
        problem,
        noise_covariance=noise,
        process=Sampler(),
        tikhonov=tikhonov,
        seed=2,
    )
    eki.iterate(150)

    means = np.array([s.ensemble_mean for s in eki.iteration_summaries[51:]])
    precision = operator.T @ operator / noise + np.eye(2)
    posterior_mean = np.linalg.solve(precision, operator.T @ observations / noise)
    assert np.allclose(means.mean(axis=0), posterior_mean, atol=0.05)
