import pytest

from eki_calibration import registry as default_registry
from eki_calibration.config import builders  # noqa: F401
from eki_calibration.registry import Registry


def test_register_get_list_roundtrip() -> None:
    registry = Registry()
    sentinel = object()

    registry.register("process", "dummy", sentinel)

    assert registry.get("process", "dummy") is sentinel
    assert registry.list("process") == ["dummy"]


def test_unknown_kind_error_is_clear() -> None:
    registry = Registry()

    with pytest.raises(KeyError) as exc:
        registry.get("unknown", "dummy")

    message = str(exc.value)
    assert "Unknown registry kind" in message
    assert "unknown" in message


def test_unknown_name_error_is_clear() -> None:
    registry = Registry()
    registry.register("pseudo_stepping", "s1", object())

    with pytest.raises(KeyError) as exc:
        registry.get("pseudo_stepping", "missing")

    message = str(exc.value)
    assert "not registered" in message
    assert "pseudo_stepping" in message


def test_duplicate_registration_requires_overwrite() -> None:
    registry = Registry()
    registry.register("failure_detector", "f1", 1)

    with pytest.raises(ValueError) as exc:
        registry.register("failure_detector", "f1", 2)

    assert "already registered" in str(exc.value)

    registry.register("failure_detector", "f1", 2, overwrite=True)
    assert registry.get("failure_detector", "f1") == 2


def test_builtin_variants_are_registered() -> None:
    assert set(default_registry.list("process")) == {"inversion", "sampler"}
    assert set(default_registry.list("pseudo_stepping")) == {
        "constant_convergence",
        "kovachki2018",
        "iglesias2021",
    }
    assert set(default_registry.list("ensemble_distribution")) == {"full", "successful"}
    assert {"norm_exceeds_median", "objective_loss_threshold"} <= set(
        default_registry.list("failure_detector")
    )
    assert {"normal", "lognormal", "scaled_logit_normal"} <= set(
        default_registry.list("prior")
    )
