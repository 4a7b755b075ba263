#!/usr/bin/env python3
"""
CLI to launch the HTTP/WebSocket API (FastAPI + uvicorn).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

if __package__ is None or __package__ == "":
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    if str(src_dir) not in sys.path:
        sys.path.insert(0, str(src_dir))

from sentinel_vision.api import create_app
from sentinel_vision.cli import add_logging_arguments, setup_logging
from sentinel_vision.config import ConfigError, ServiceConfig, load_config


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sentinel Vision API (FastAPI)")
    parser.add_argument("-c", "--config", help="Path to YAML configuration file (optional)")
    parser.add_argument("--host", default="0.0.0.0", help="HTTP host to bind")
    parser.add_argument("--port", type=int, default=8080, help="HTTP port to bind")
    parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Do not start the Prometheus endpoint even if enabled in config",
    )
    add_logging_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv or sys.argv[1:])
    setup_logging(args)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config) if args.config else ServiceConfig()
    except ConfigError as exc:
        raise SystemExit(f"Failed to load config: {exc}") from exc
    if args.no_metrics:
        config.prometheus.enabled = False

    logger.info("Binding to %s:%d", args.host, args.port)
    app = create_app(config)

    import uvicorn

    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    except KeyboardInterrupt:
        logger.info("API shutdown by user")
    except Exception as exc:
        logger.exception("API failed with error: %s", exc)
        return 1

    logger.info("API shutdown complete")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
