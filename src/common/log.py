from __future__ import annotations

import logging
import sys

import structlog


_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog on top of stdlib logging (JSON lines to stderr).

    Safe to call more than once; only the first call takes effect.
    """
    global _configured
    if _configured:
        return

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=level.upper(),
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_broker_context(logger: structlog.stdlib.BoundLogger, broker: str) -> structlog.stdlib.BoundLogger:
    """Return a logger with the broker identifier bound to every event."""
    return logger.bind(broker=broker)


__all__ = ["configure_logging", "get_logger", "bind_broker_context"]
