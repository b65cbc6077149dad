from __future__ import annotations

import pytest

from eki_calibration.config.builders import (
    build_failure_detector,
    build_inverse_problem,
    build_inversion,
    build_process,
    build_pseudo_stepping,
    build_resampler,
    load_config,
)
from eki_calibration.errors import ConfigError
from eki_calibration.failure import NormExceedsMedian, ObjectiveLossThreshold
from eki_calibration.pseudo_stepping import ConstantConvergence, Inversion, Kovachki2018, Sampler
from eki_calibration.resampling import FullEnsembleDistribution, SuccessfulEnsembleDistribution

CONFIG_YAML = """
common:
  seed: 7
ensemble_size: 12
priors:
  a: {type: normal, mean: 0.0, std: 1.0}
  b: {type: normal, mean: 0.0, std: 1.0}
  c: {type: normal, mean: 0.0, std: 1.0}
  d: {type: normal, mean: 0.0, std: 1.0}
inversion:
  noise_covariance: [0.01, 0.01, 0.02, 0.02, 0.01]
  process:
    name: inversion
    params: {perturb_observations: false}
  pseudo_stepping:
    name: constant_convergence
    params: {convergence_ratio: 0.5}
  failure_detector:
    name: objective_loss_threshold
    params: {multiple: 8.0}
  resampler:
    acceptable_failure_fraction: 0.4
    distribution: full
  momentum_parameter: 0.2
"""


def test_load_config_roundtrip(tmp_path) -> None:
    path = tmp_path / "inversion.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    cfg = load_config(path)
    assert cfg["common"]["seed"] == 7
    assert cfg["inversion"]["pseudo_stepping"]["name"] == "constant_convergence"


def test_load_config_rejects_non_mapping(tmp_path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_build_inversion_from_mapping(tmp_path, linear_operator) -> None:
    path = tmp_path / "inversion.yaml"
    path.write_text(CONFIG_YAML, encoding="utf-8")
    cfg = load_config(path)
    problem = build_inverse_problem(
        cfg, linear_operator @ [0.5, -0.3, 0.8, 0.1], lambda theta: linear_operator @ theta
    )

    eki = build_inversion(cfg, problem)

    assert problem.ensemble_size == 12
    assert eki.process == Inversion(perturb_observations=False)
    assert isinstance(eki.pseudo_stepping, ConstantConvergence)
    assert eki.pseudo_stepping.convergence_ratio == 0.5
    assert isinstance(eki.failure_detector, ObjectiveLossThreshold)
    assert eki.failure_detector.multiple == 8.0
    assert isinstance(eki.resampler.distribution, FullEnsembleDistribution)
    assert eki.resampler.acceptable_failure_fraction == 0.4
    assert eki.momentum_parameter == 0.2
    assert eki.seed == 7
    assert eki.noise_covariance[2, 2] == 0.02
    eki.iterate(1)
    assert eki.iteration == 0


def test_variant_defaults() -> None:
    assert build_process(None) == Inversion()
    assert isinstance(build_process("Sampler"), Sampler)
    assert build_pseudo_stepping(None) is None
    assert build_pseudo_stepping({"name": ""}) is None
    assert isinstance(
        build_pseudo_stepping({"name": "kovachki2018", "params": {"initial_step_size": 0.5}}),
        Kovachki2018,
    )
    assert build_failure_detector(None) == NormExceedsMedian()
    assert isinstance(build_resampler(None).distribution, SuccessfulEnsembleDistribution)


def test_unknown_variant_lists_options() -> None:
    with pytest.raises(ConfigError) as exc:
        build_process({"name": "ensemble_smoother"})
    message = str(exc.value)
    assert "not registered" in message
    assert "inversion" in message
    assert "sampler" in message


def test_bad_variant_parameters() -> None:
    with pytest.raises(ConfigError) as exc:
        build_pseudo_stepping({"name": "iglesias2021", "params": {"ratio": 0.5}})
    assert "Invalid pseudo_stepping parameters" in str(exc.value)
    with pytest.raises(ConfigError):
        build_resampler({"acceptable_failure_fraction": 0.5, "threshold": 1})


def test_unknown_inversion_keys_rejected(linear_problem) -> None:
    with pytest.raises(ConfigError) as exc:
        build_inversion({"inversion": {"step_size": 0.5}}, linear_problem)
    assert "step_size" in str(exc.value)


def test_inverse_problem_requires_priors(linear_operator) -> None:
    with pytest.raises(ConfigError):
        build_inverse_problem({"priors": {}}, [1.0], lambda theta: theta)
