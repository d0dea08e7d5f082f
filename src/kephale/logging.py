"""structlog configuration.

Learn: Every module logs through structlog.get_logger() with dotted event
names (presence.heartbeat_failed, push.subscription_pruned) and keyword
context. merge_contextvars pulls in what RequestIdMiddleware binds, so
every line of one request carries the same request_id.

JSON lines in production, colored console output in development.
"""

import logging

import structlog

from kephale.config import settings


def configure_logging() -> None:
    """Configure structlog once, at app creation."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
