from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List

from .app import BeaconApp
from .config.config_parser import ConfigError, load_config, parse_bridge_target
from .config.logging_config import init_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="huebeacon",
        description=(
            "Answer SSDP discovery on this network segment on behalf of a Hue "
            "bridge reachable only by unicast."
        ),
    )
    parser.add_argument(
        "bridge",
        help="Bridge target in the form 'server:service', e.g. my-hue.local:80",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Optional YAML config (listen address, refresh interval, logging)",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    """
    Main entry point for the responder.
    Parses arguments, loads configuration and runs the event loop until a
    shutdown signal arrives.

    Args:
        argv: Command-line arguments.

    Returns:
        An exit code: 0 on SIGHUP or clean interrupt, 2 on SIGTERM/SIGINT,
        1 on any startup fault.

    Example use:
        CLI:
            huebeacon my-hue.local:80
            PYTHONPATH=src python -m huebeacon.main my-hue.local:80 --config beacon.yaml
    """
    args = build_parser().parse_args(argv)

    try:
        target = parse_bridge_target(args.bridge)
        cfg = load_config(args.config)
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    init_logging(cfg.logging)
    logger = logging.getLogger("huebeacon.main")
    if args.config:
        logger.info("Loaded config from %s", args.config)

    app = BeaconApp(target, cfg)
    try:
        return asyncio.run(app.run())
    except OSError as exc:
        logger.error(
            "Failed to listen on %s:%d (group %s): %s",
            cfg.listen.host,
            cfg.listen.port,
            cfg.listen.multicast_group,
            exc,
        )
        return 1
    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        return 0


def console_main() -> None:
    raise SystemExit(main())


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
