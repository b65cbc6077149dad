from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from eki_calibration.engine import EnsembleKalmanInversion
from eki_calibration.inverse_problem import InverseProblem
from eki_calibration.linalg import ensemble_covariance
from eki_calibration.parameters import LogNormalPrior, ScaledLogitNormalPrior
from eki_calibration.summary import IterationSummary


@pytest.fixture
def engine(linear_problem):
    return EnsembleKalmanInversion(linear_problem, seed=21)


def test_initial_summary_fields(engine, linear_operator) -> None:
    summary = engine.iteration_summaries[0]
    X = engine.unconstrained_parameters
    G = engine.forward_map_output

    assert summary.iteration == -1
    assert summary.pseudotime == 0.0
    assert summary.pseudo_step_size is None
    assert summary.names == ("a", "b", "c", "d")
    assert summary.parameters.shape == (4, 20)
    assert np.allclose(summary.ensemble_mean, X.mean(axis=1))
    assert np.allclose(summary.ensemble_cov, ensemble_covariance(X))
    assert np.allclose(summary.ensemble_var, np.diag(ensemble_covariance(X)))
    expected = np.sum((engine.observations[:, None] - G) ** 2, axis=0) / 5
    assert np.allclose(summary.mean_square_errors, expected)


def test_summary_is_immutable(engine) -> None:
    summary = engine.iteration_summaries[0]
    with pytest.raises(dataclasses.FrozenInstanceError):
        summary.iteration = 3
    with pytest.raises(ValueError):
        summary.parameters[0, 0] = 1.0


def test_from_engine_does_not_mutate_engine(engine) -> None:
    before = (engine.iteration, len(engine.iteration_summaries))
    X = engine.unconstrained_parameters + 1.0
    G = engine.evaluate_forward_map(X)
    summary = IterationSummary.from_engine(engine, X, G, pseudo_step_size=0.5)
    assert (engine.iteration, len(engine.iteration_summaries)) == before
    assert summary.pseudo_step_size == 0.5
    assert np.allclose(summary.ensemble_mean, X.mean(axis=1))


def test_summary_is_in_constrained_space() -> None:
    def simulator(theta):
        return np.vstack([theta[0], theta[0] + theta[1]])

    problem = InverseProblem(
        [1.0, 1.5],
        simulator,
        {
            "k": LogNormalPrior(mu=0.0, sigma=0.5),
            "p": ScaledLogitNormalPrior(lower=0.0, upper=1.0),
        },
        ensemble_size=10,
    )
    eki = EnsembleKalmanInversion(problem, seed=3)
    summary = eki.iteration_summaries[0]
    X = eki.unconstrained_parameters
    assert np.all(summary.parameters[0] > 0)
    assert np.all((summary.parameters[1] > 0) & (summary.parameters[1] < 1))
    assert np.allclose(summary.parameters[0], np.exp(X[0]))
    assert summary.ensemble_mean[0] == pytest.approx(np.exp(X[0].mean()))
    jacobian = np.exp(X[0].mean())
    assert summary.ensemble_var[0] == pytest.approx(jacobian**2 * np.var(X[0], ddof=1))


def test_best_and_worst_particles(engine) -> None:
    summary = engine.iteration_summaries[0]
    errors = summary.mean_square_errors
    assert summary.best_particle() == int(np.argmin(errors))
    assert summary.worst_particle() == int(np.argmax(errors))
    best = summary.particle(summary.best_particle())
    assert list(best) == ["a", "b", "c", "d"]
    assert set(summary.named_mean()) == {"a", "b", "c", "d"}
    assert set(summary.named_variance()) == {"a", "b", "c", "d"}


def test_best_particle_ignores_failed_particles() -> None:
    summary = IterationSummary(
        names=("x",),
        parameters=np.array([[1.0, 2.0, 3.0]]),
        ensemble_mean=np.array([2.0]),
        ensemble_cov=np.array([[1.0]]),
        ensemble_var=np.array([1.0]),
        mean_square_errors=np.array([np.nan, 0.5, 0.1]),
        iteration=0,
    )
    assert summary.best_particle() == 2
    assert summary.worst_particle() == 1


def test_summary_table(engine) -> None:
    text = str(engine.iteration_summaries[0])
    lines = text.splitlines()
    assert lines[0] == "IterationSummary for 20 particles and 4 parameters at iteration -1"
    assert "ensemble_mean:" in lines[2]
    assert "best particle:" in lines[3]
    assert "error =" in lines[4]
    assert lines[-1].strip().startswith("ensemble_variance:")
