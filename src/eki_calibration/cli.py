"""CLI entry point."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Sequence
from typing import Optional

from eki_calibration import registry
from eki_calibration.config.builders import (
    build_failure_detector,
    build_free_parameters,
    build_process,
    build_pseudo_stepping,
    build_resampler,
)
from eki_calibration.errors import ConfigError
from eki_calibration.hydra_utils import (
    DEFAULT_CONFIG_NAME,
    DEFAULT_CONFIG_PATH,
    compose_config,
    format_config,
    resolve_config,
)
from eki_calibration.logging_utils import configure_logging, run_with_error_handling


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config-path",
        default=DEFAULT_CONFIG_PATH,
        help="Path to the Hydra config directory.",
    )
    parser.add_argument(
        "--config-name",
        default=DEFAULT_CONFIG_NAME,
        help="Hydra config name (without extension).",
    )
    parser.add_argument(
        "overrides",
        nargs=argparse.REMAINDER,
        help="Hydra overrides (ex: inversion.pseudo_step_size=0.5 common.seed=1).",
    )


def _compose(args: argparse.Namespace):
    return compose_config(
        config_path=args.config_path,
        config_name=args.config_name,
        overrides=args.overrides,
    )


def _cfg_handler(args: argparse.Namespace) -> None:
    print(format_config(_compose(args)), end="")


def _variants_handler(args: argparse.Namespace) -> None:
    kinds = [args.kind] if args.kind else list(registry.DEFAULT_KINDS)
    for kind in kinds:
        print(f"{kind}: {', '.join(sorted(registry.list(kind)))}")


def _check_handler(args: argparse.Namespace) -> None:
    cfg = resolve_config(_compose(args))
    logger = logging.getLogger("eki_calibration.cli")
    priors = cfg.get("priors") or {}
    if not priors:
        raise ConfigError(
            "priors must be provided.",
            user_message="No priors configured; add a `priors` mapping to the config.",
        )
    inversion = cfg.get("inversion") or {}
    free_parameters = build_free_parameters(priors)
    process = build_process(inversion.get("process"))
    stepping = build_pseudo_stepping(inversion.get("pseudo_stepping"))
    detector = build_failure_detector(inversion.get("failure_detector"))
    resampler = build_resampler(inversion.get("resampler"))
    logger.info("Config is valid.")
    print(f"free_parameters: {free_parameters!r}")
    print(f"process: {process!r}")
    print(f"pseudo_stepping: {stepping!r}")
    print(f"failure_detector: {detector!r}")
    print(f"resampler: {resampler}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eki",
        description="Ensemble Kalman inversion configuration tools.",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    cfg_parser = subparsers.add_parser(
        "cfg",
        help="Compose and print Hydra config.",
        description="Compose and print Hydra config.",
    )
    _add_config_arguments(cfg_parser)
    cfg_parser.set_defaults(handler=_cfg_handler)

    check_parser = subparsers.add_parser(
        "check",
        help="Build priors and inversion components from a config.",
        description="Build priors and inversion components from a config.",
    )
    _add_config_arguments(check_parser)
    check_parser.set_defaults(handler=_check_handler)

    variants_parser = subparsers.add_parser(
        "variants",
        help="List registered variants.",
        description="List registered variants.",
    )
    variants_parser.add_argument(
        "--kind",
        choices=list(registry.DEFAULT_KINDS),
        help="Only list variants of this kind.",
    )
    variants_parser.set_defaults(handler=_variants_handler)
    return parser


def _cli_main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, force=True)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        raise SystemExit(2)
    handler(args)


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Entry point with standard logging/error handling."""
    logger = configure_logging()
    try:
        run_with_error_handling(_cli_main, argv, logger=logger)
    except ConfigError as exc:
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
