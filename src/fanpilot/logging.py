"""Structured logging for fanpilot.

fanpilot's own events go through structlog. paramiko, tenacity and
APScheduler log through the standard library; their records are written
to the same stream so journald sees one interleaved log.
"""

from __future__ import annotations

import logging
import sys
from typing import Dict, List, Literal, Optional

import structlog

# Floor applied to third-party loggers; paramiko is very chatty at INFO
LIBRARY_LEVELS: Dict[str, int] = {
    "paramiko": logging.WARNING,
    "apscheduler": logging.WARNING,
}


def build_processors(log_format: Literal["json", "text"]) -> List[structlog.typing.Processor]:
    """Processor chain ending in the renderer for ``log_format``.

    The control loop binds ``cycle`` through contextvars, so it shows up on
    every event emitted while a cycle runs.
    """
    processors: List[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.dev.set_exc_info,
    ]
    if log_format == "json":
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(
    log_format: Literal["json", "text"] = "json",
    log_level: str = "INFO",
) -> None:
    """Configure structlog and the standard library loggers.

    Args:
        log_format: "json" for journald or a log shipper, "text" for a terminal.
        log_level: Minimum level (DEBUG, INFO, WARNING, ERROR).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=build_processors(log_format),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(levelname)s %(name)s: %(message)s", stream=sys.stdout, level=level, force=True)
    for name, floor in LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(max(level, floor))


def get_logger(name: Optional[str] = None) -> structlog.typing.FilteringBoundLogger:
    """structlog logger, optionally named after the calling module."""
    return structlog.get_logger(name)
