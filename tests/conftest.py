from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

TRUE_PARAMETERS = np.array([0.5, -0.3, 0.8, 0.1])
PARAMETER_NAMES = ("a", "b", "c", "d")


def pytest_configure() -> None:
    src_root = Path(__file__).resolve().parents[1] / "src"
    src_path = str(src_root)
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


@pytest.fixture
def true_parameters() -> np.ndarray:
    return TRUE_PARAMETERS.copy()


@pytest.fixture
def linear_operator() -> np.ndarray:
    rng = np.random.default_rng(42)
    return rng.normal(size=(5, TRUE_PARAMETERS.size))


@pytest.fixture
def make_problem(linear_operator):
    """Factory for a 4-parameter, 5-observation linear-Gaussian inverse problem."""
    from eki_calibration.inverse_problem import InverseProblem
    from eki_calibration.parameters import NormalPrior

    def _make(ensemble_size: int = 20, simulator=None, observations=None):
        if simulator is None:

            def simulator(theta):
                return linear_operator @ theta

        if observations is None:
            observations = linear_operator @ TRUE_PARAMETERS
        priors = {name: NormalPrior(mean=0.0, std=1.0) for name in PARAMETER_NAMES}
        return InverseProblem(
            observations,
            simulator,
            priors,
            ensemble_size,
            name="linear",
        )

    return _make


@pytest.fixture
def linear_problem(make_problem):
    return make_problem()
