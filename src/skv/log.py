"""
Structured logging setup.

Technical events (git commands, fetch decisions, cleanup) go through structlog
to stderr. What the user asked for (progress, results) goes through
``output.Output`` instead.

Without -v only warnings are shown; -v adds INFO, -vv adds DEBUG; --quiet
keeps errors only.
"""

from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog


def _verbose_to_level(verbose: int, quiet: bool) -> int:
    if quiet:
        return logging.ERROR
    levels = {
        0: logging.WARNING,
        1: logging.INFO,
    }
    return levels.get(verbose, logging.DEBUG)


def configure_logging(verbose: int = 0, quiet: bool = False, stream: TextIO | None = None) -> None:
    stream = stream if stream is not None else sys.stderr
    level = _verbose_to_level(verbose, quiet)

    logging.root.handlers.clear()
    structlog.reset_defaults()

    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=stream.isatty()),
            foreign_pre_chain=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso", utc=True),
            ],
        )
    )
    logging.root.addHandler(handler)
    logging.root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
