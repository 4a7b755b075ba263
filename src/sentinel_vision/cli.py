"""
Logging setup shared by the command line entrypoints.
"""

from __future__ import annotations

import argparse
import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FORMATS = {
    "standard": "%(asctime)s [%(levelname)-8s] %(name)s | %(message)s",
    "detailed": (
        "%(asctime)s [%(levelname)-8s] [%(process)d:%(thread)d] "
        "%(name)s:%(funcName)s:%(lineno)d | %(message)s"
    ),
    # Simplified JSON-like format (for machine parsing)
    "json": (
        '{"time":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s",'
        '"message":"%(message)s"}'
    ),
}


def add_logging_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        help="Path to log file (optional, logs to file in addition to console)",
    )
    parser.add_argument(
        "--log-format",
        default="standard",
        choices=sorted(LOG_FORMATS),
        help="Log format (default: standard)",
    )
    parser.add_argument(
        "--log-rotate",
        action="store_true",
        help="Enable log rotation (only with --log-file, max 10MB x 5 files)",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored log output",
    )


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for console output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        if record.levelname not in self.COLORS:
            return super().format(record)
        record_copy = logging.makeLogRecord(record.__dict__)
        record_copy.levelname = f"{self.COLORS[record.levelname]}{record.levelname}{self.RESET}"
        return super().format(record_copy)


def setup_logging(args: argparse.Namespace) -> None:
    """
    Configure the root logger from the parsed logging arguments:
    console output (colored on a tty), optional file output with rotation.
    """
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    log_format = LOG_FORMATS.get(args.log_format, LOG_FORMATS["standard"])

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    use_color = not args.no_color and sys.stdout.isatty() and args.log_format != "json"
    console_handler.setFormatter(ColoredFormatter(log_format) if use_color else logging.Formatter(log_format))
    root_logger.addHandler(console_handler)

    if args.log_file:
        log_path = Path(args.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if args.log_rotate:
            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        else:
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(log_level)
        # File logs should never have color codes
        file_handler.setFormatter(logging.Formatter(log_format))
        root_logger.addHandler(file_handler)
        logging.info("Logging to file: %s", log_path)
