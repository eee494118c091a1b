"""Logging configuration for AI Chat Core."""

import logging
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

NOISY_LOGGERS = ("httpx", "httpcore", "anthropic", "aiosqlite")


def setup_logging(
    level: str = "INFO",
    debug: bool = False,
    console: Optional[Console] = None,
) -> None:
    """
    Configure logging for the engine and the CLI.

    Logs go to stderr so streamed answer text on stdout stays clean.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        debug: Enable debug mode with verbose formatting
        console: Render through rich on this console instead of plain text
    """
    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    handler: logging.Handler
    if console is not None:
        handler = RichHandler(console=console, show_path=debug, rich_tracebacks=debug)
        log_format = "%(name)s | %(message)s" if debug else "%(message)s"
    else:
        handler = logging.StreamHandler(sys.stderr)
        if debug:
            log_format = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s"
        else:
            log_format = "%(asctime)s | %(levelname)-8s | %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler],
        force=True,
    )

    logging.getLogger("ai_chat_core").setLevel(log_level)

    # Third-party clients log every request at INFO
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a module."""
    return logging.getLogger(name)
