from __future__ import annotations

import math
from types import SimpleNamespace

import numpy as np
import pytest

from eki_calibration.engine import EnsembleKalmanInversion
from eki_calibration.errors import ConfigError
from eki_calibration.linalg import CovarianceCache, weighted_losses
from eki_calibration.pseudo_stepping import (
    ConstantConvergence,
    Iglesias2021,
    Inversion,
    Kovachki2018,
    Sampler,
    adaptive_step_parameters,
    sampler_drift,
    step_parameters,
    volume_ratio,
)


def _stub_engine(observations: np.ndarray, *, pseudotime: float = 0.0) -> SimpleNamespace:
    covariances = CovarianceCache.build(
        0.1 * np.eye(observations.size), np.zeros(2), np.eye(2)
    )
    return SimpleNamespace(
        mapped_observations=observations,
        covariances=covariances,
        tikhonov=False,
        pseudotime=pseudotime,
    )


def _contracting_stepper(X: np.ndarray):
    mean = X.mean(axis=1, keepdims=True)

    def stepper(step_size: float) -> np.ndarray:
        return mean + math.exp(-step_size) * (X - mean)

    return stepper


@pytest.fixture
def engine(linear_problem):
    return EnsembleKalmanInversion(linear_problem, seed=11)


def _mean_misfit(engine, X) -> float:
    G = engine.evaluate_forward_map(X)
    return float(np.mean(np.sum((engine.observations[:, None] - G) ** 2, axis=0)))


def test_inversion_update_reduces_misfit(engine) -> None:
    X = engine.unconstrained_parameters
    G = engine.forward_map_output
    X_new = Inversion(perturb_observations=False).update(
        X, G, engine, step_size=1.0, rng=np.random.default_rng(0)
    )
    assert X_new.shape == X.shape
    assert _mean_misfit(engine, X_new) < 0.1 * _mean_misfit(engine, X)


def test_perturbed_inversion_is_reproducible_for_equal_seeds(engine) -> None:
    X = engine.unconstrained_parameters
    G = engine.forward_map_output
    first = Inversion().update(X, G, engine, step_size=0.5, rng=np.random.default_rng(3))
    second = Inversion().update(X, G, engine, step_size=0.5, rng=np.random.default_rng(3))
    third = Inversion().update(X, G, engine, step_size=0.5, rng=np.random.default_rng(4))
    assert np.array_equal(first, second)
    assert not np.allclose(first, third)


def test_sampler_update_keeps_shape_and_spread(engine) -> None:
    X = engine.unconstrained_parameters
    G = engine.forward_map_output
    X_new = Sampler().update(X, G, engine, step_size=1.0, rng=np.random.default_rng(0))
    assert X_new.shape == X.shape
    assert np.all(np.isfinite(X_new))
    assert np.all(np.var(X_new, axis=1) > 0)


def test_step_parameters_defaults_match_process(engine) -> None:
    X = engine.unconstrained_parameters
    G = engine.forward_map_output
    process = Inversion(perturb_observations=False)
    plain = process.update(X, G, engine, step_size=1.0, rng=np.random.default_rng(0))
    stepped, increment = step_parameters(
        X, G, engine, process, step_size=1.0, rng=np.random.default_rng(0)
    )
    assert np.allclose(stepped, plain)
    assert np.allclose(increment, plain - X)


def test_step_parameters_momentum(engine) -> None:
    X = engine.unconstrained_parameters
    G = engine.forward_map_output
    process = Inversion(perturb_observations=False)
    previous = np.full_like(X, 0.2)
    plain, _ = step_parameters(X, G, engine, process, step_size=1.0, rng=np.random.default_rng(0))
    stepped, increment = step_parameters(
        X,
        G,
        engine,
        process,
        step_size=1.0,
        rng=np.random.default_rng(0),
        momentum_parameter=0.5,
        previous_update=previous,
    )
    assert np.allclose(increment, 0.5 * previous + (plain - X))
    assert np.allclose(stepped, X + increment)


def test_step_parameters_inflation_adds_spread(engine) -> None:
    X = engine.unconstrained_parameters
    G = engine.forward_map_output
    process = Inversion(perturb_observations=False)
    plain, _ = step_parameters(X, G, engine, process, step_size=1.0, rng=np.random.default_rng(0))
    inflated, _ = step_parameters(
        X,
        G,
        engine,
        process,
        step_size=1.0,
        rng=np.random.default_rng(0),
        covariance_inflation=0.5,
    )
    assert not np.allclose(inflated, plain)
    assert np.all(np.isfinite(inflated))


def test_volume_ratio_and_singular_fallback() -> None:
    rng = np.random.default_rng(0)
    X = rng.normal(size=(2, 30))
    mean = X.mean(axis=1, keepdims=True)
    assert volume_ratio(mean + 0.5 * (X - mean), X) == pytest.approx(0.5**4)

    singular = np.vstack([X[0], np.zeros(30)])
    shrunk = np.vstack([0.5 * X[0], np.zeros(30)])
    assert volume_ratio(shrunk, singular) == pytest.approx(0.25)


def test_constant_convergence_hits_target_ratio() -> None:
    X = np.random.default_rng(1).normal(size=(2, 50))
    scheme = ConstantConvergence(convergence_ratio=0.7)
    X_new, step_size = scheme(_contracting_stepper(X), X, None, None, 1.0)
    ratio = volume_ratio(X_new, X)
    assert math.isclose(ratio, 0.7, rel_tol=0.1, abs_tol=0.03)
    assert ratio == pytest.approx(math.exp(-4.0 * step_size))
    assert step_size < 1.0


def test_constant_convergence_respects_max_step_size() -> None:
    X = np.random.default_rng(1).normal(size=(2, 50))
    scheme = ConstantConvergence(convergence_ratio=0.5, max_step_size=0.01)
    _, step_size = scheme(_contracting_stepper(X), X, None, None, 1.0)
    assert step_size == pytest.approx(0.01)


@pytest.mark.parametrize("ratio", [0.0, 1.0, 1.5])
def test_constant_convergence_rejects_bad_ratio(ratio) -> None:
    with pytest.raises(ConfigError):
        ConstantConvergence(convergence_ratio=ratio)


def test_kovachki_step_uses_drift_norm() -> None:
    y = np.array([1.0, 2.0, 3.0])
    G = np.random.default_rng(2).normal(size=(3, 10))
    X = np.random.default_rng(3).normal(size=(2, 10))
    engine = _stub_engine(y)
    drift = sampler_drift(G, y, engine.covariances.inv_noise_covariance)

    _, step_size = Kovachki2018(initial_step_size=2.0)(_contracting_stepper(X), X, G, engine, 1.0)
    assert step_size == pytest.approx(2.0 / np.linalg.norm(drift))

    _, clipped = Kovachki2018(initial_step_size=2.0, max_step_size=1.0e-6)(
        _contracting_stepper(X), X, G, engine, 1.0
    )
    assert clipped == 1.0e-6


def _iglesias_q(y, G, engine) -> float:
    losses = weighted_losses(y, G, engine.covariances.inv_sqrt_noise_covariance)
    return max(
        y.size / (2.0 * losses.mean()),
        math.sqrt(y.size / (2.0 * np.var(losses, ddof=1))),
    )


def test_iglesias_step_is_capped_by_remaining_pseudotime() -> None:
    y = np.zeros(4)
    G = np.random.default_rng(4).normal(loc=0.1, scale=0.05, size=(4, 12))
    X = np.random.default_rng(5).normal(size=(2, 12))

    engine = _stub_engine(y, pseudotime=0.0)
    q = _iglesias_q(y, G, engine)
    _, step_size = Iglesias2021()(_contracting_stepper(X), X, G, engine, 1.0)
    assert step_size == pytest.approx(min(q, 1.0))

    late = _stub_engine(y, pseudotime=0.95)
    _, late_step = Iglesias2021()(_contracting_stepper(X), X, G, late, 1.0)
    assert late_step == pytest.approx(min(q, 0.05))

    finished = _stub_engine(y, pseudotime=1.0)
    _, final_step = Iglesias2021()(_contracting_stepper(X), X, G, finished, 1.0)
    assert final_step == pytest.approx(q)


def test_fixed_step_passes_step_size_through() -> None:
    X = np.random.default_rng(6).normal(size=(2, 5))
    X_new, step_size = adaptive_step_parameters(None, _contracting_stepper(X), X, None, None, 0.3)
    assert step_size == 0.3
    assert np.allclose(X_new, _contracting_stepper(X)(0.3))
