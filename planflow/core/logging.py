from __future__ import annotations

import contextvars
import logging
from typing import Any, Mapping

import structlog


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Configure structlog and standard logging for planflow consumers."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if kwargs:
        return logger.bind(**kwargs)
    return logger


def bind_correlation_id(correlation_id: str | None) -> Mapping[str, contextvars.Token[Any]]:
    """Attach the plan correlation id to every log line emitted in the current context.

    Returns the tokens needed by :func:`reset_correlation_id` to restore the
    previous binding.
    """
    if correlation_id:
        return structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    structlog.contextvars.unbind_contextvars("correlation_id")
    return {}


def reset_correlation_id(tokens: Mapping[str, contextvars.Token[Any]]) -> None:
    if tokens:
        structlog.contextvars.reset_contextvars(**tokens)
