from __future__ import annotations

import logging
import sys

import structlog


def configure_structured_logging(
    level: str = "INFO",
    environment: str = "local",
    service_name: str = "inventory-engine",
    enable_json: bool = False,
) -> None:
    """Configure stdlib logging and structlog with a shared processor chain.

    JSON output is meant for deployed environments; the console renderer is
    used locally and in tests. Logs go to stderr; stdout is reserved for the
    CLI's JSON output.
    """

    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if enable_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name, environment=environment)
