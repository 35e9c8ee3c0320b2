"""
Structured logging setup for the unsub update bridge.
Provides JSON-formatted logs with consistent fields for operator monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_component,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_component(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every entry so operators can grep bridge logs out of a shared stream."""
    event_dict.setdefault("component", "unsub-update")
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_postback_result(
    user_id: int,
    event: str,
    ok: bool,
    status_code: int | None = None,
    duration_ms: float | None = None,
    error: str | None = None,
    body_excerpt: str | None = None,
) -> None:
    """Log a webhook delivery attempt with consistent fields."""
    logger = get_logger("postback")

    log_data = {
        "user_id": user_id,
        "postback_event": event,
        "ok": ok,
    }
    if status_code is not None:
        log_data["status_code"] = status_code
    if duration_ms is not None:
        log_data["duration_ms"] = duration_ms
    if error:
        log_data["error"] = error
    if body_excerpt:
        log_data["body"] = body_excerpt

    if ok:
        logger.info("POST OK", **log_data)
    else:
        logger.warning("POST FAILED", **log_data)
