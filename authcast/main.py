"""
Command-line entry point: ``authcast [-c config.yaml] [--host H] [--port P]``.

Flags given on the command line win over the config file and AUTHCAST_*
environment variables.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

import structlog
import uvicorn
import yaml

from .config import AuthcastConfig, LoggingConfig, load_config
from .gateway import create_app

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="authcast",
        description="Broadcast document updates to authorized websocket subscribers.",
    )
    parser.add_argument("-c", "--config", default=None, help="YAML config file (optional)")
    parser.add_argument("--host", default=None, help="Bind address (overrides config)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (overrides config)")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=None,
        help="Log level for authcast and uvicorn output (overrides config)",
    )
    parser.add_argument(
        "--memory",
        action="store_true",
        help="Keep subscriptions and sessions in process memory instead of Redis",
    )
    return parser.parse_args(argv)


def apply_overrides(config: AuthcastConfig, args: argparse.Namespace) -> AuthcastConfig:
    server = config.server.model_copy(
        update={
            key: value
            for key, value in (("host", args.host), ("port", args.port))
            if value is not None
        }
    )
    logging_cfg = config.logging
    if args.log_level:
        logging_cfg = logging_cfg.model_copy(update={"level": args.log_level})
    store = config.store
    if args.memory:
        store = store.model_copy(update={"backend": "memory"})
    return config.model_copy(update={"server": server, "logging": logging_cfg, "store": store})


def configure_logging(settings: LoggingConfig) -> None:
    """
    Route structlog output through one renderer and align stdlib levels.

    uvicorn logs through the standard library, so its loggers get the same
    threshold as ours.
    """
    level = logging.getLevelName(settings.level.upper())
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.format == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)


def run(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)

    try:
        config = apply_overrides(load_config(args.config), args)
    except FileNotFoundError as exc:
        sys.exit(f"authcast: {exc}")
    except (ValueError, yaml.YAMLError) as exc:
        sys.exit(f"authcast: invalid configuration: {exc}")

    configure_logging(config.logging)
    structlog.get_logger().info(
        "authcast.config_loaded",
        config_path=args.config,
        backend=config.store.backend,
        host=config.server.host,
        port=config.server.port,
        ws_path=config.server.ws_path,
    )

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level,
    )


if __name__ == "__main__":
    run()
