from pathlib import Path

import pytest

pytest.importorskip("hydra")

from eki_calibration.config.builders import build_inverse_problem, build_inversion
from eki_calibration.hydra_utils import (
    compose_config,
    format_config,
    resolve_config,
)
from eki_calibration.pseudo_stepping import ConstantConvergence


def _config_dir() -> Path:
    return Path(__file__).resolve().parents[1] / "configs"


def test_hydra_compose_defaults() -> None:
    cfg = compose_config(config_path=_config_dir(), config_name="default")
    resolved = resolve_config(cfg)
    assert resolved["common"]["seed"] == 0
    assert resolved["ensemble_size"] == 20
    assert resolved["inversion"]["process"]["name"] == "inversion"
    assert resolved["inversion"]["pseudo_stepping"]["name"] == ""
    assert resolved["inversion"]["resampler"]["distribution"] == "successful"
    rendered = format_config(cfg)
    assert "inversion:" in rendered


def test_hydra_overrides_and_seed(linear_operator) -> None:
    cfg = compose_config(
        config_path=_config_dir(),
        config_name="default",
        overrides=["common.seed=5", "inversion.pseudo_step_size=0.5"],
    )
    resolved = resolve_config(cfg)
    assert resolved["common"]["seed"] == 5
    assert resolved["inversion"]["pseudo_step_size"] == 0.5

    resolved["priors"] = {"a": {"type": "normal", "mean": 0.0, "std": 1.0}}
    problem = build_inverse_problem(
        resolved, linear_operator[:, 0], lambda theta: linear_operator[:, :1] @ theta
    )
    eki = build_inversion(resolved, problem)
    assert eki.seed == 5
    assert eki.pseudo_step_size == 0.5


def test_adaptive_config_builds_inversion(linear_operator) -> None:
    resolved = resolve_config(
        compose_config(config_path=_config_dir(), config_name="adaptive.yaml")
    )
    resolved["priors"] = {
        name: {"type": "normal", "mean": 0.0, "std": 1.0} for name in ("a", "b", "c", "d")
    }
    problem = build_inverse_problem(
        resolved,
        linear_operator @ [0.5, -0.3, 0.8, 0.1],
        lambda theta: linear_operator @ theta,
    )
    eki = build_inversion(resolved, problem)
    assert isinstance(eki.pseudo_stepping, ConstantConvergence)
    assert eki.resampler.acceptable_failure_fraction == 0.3
    assert eki.seed == 0
