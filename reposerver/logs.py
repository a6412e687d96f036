"""Structured logging setup.

Every module logs through ``structlog.get_logger(__name__)``. Log events are
named after the stage they describe (``hook.begin``, ``cycle.end``...) and
carry key/value context such as ``repo``, ``branch``, ``commit``, ``result``
and ``duration_ms`` so they can be filtered and alerted on externally.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", fmt: str = "console") -> None:
    """Configure structlog on top of the standard library logging module.

    Args:
        level: Logging level name (``DEBUG``, ``INFO``...).
        fmt: ``console`` for key/value lines, ``json`` for one JSON object per line.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    renderer: structlog.types.Processor
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
        force=True,
    )
