"""Structured logging setup and the security audit trail."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog

from .config import Settings

audit_logger = structlog.get_logger("quickroom.security")


def configure_logging(settings: Settings) -> None:
    """Configure structlog for the current environment.

    Production emits one JSON object per line; development renders
    human-readable console output.
    """
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.is_production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def log_security_event(event: str, user_id: Optional[UUID], **details: Any) -> None:
    """Record an authorization failure for audit."""
    audit_logger.warning(
        "security_audit",
        audit_event=event,
        user_id=str(user_id) if user_id else None,
        timestamp=datetime.now(timezone.utc).isoformat(),
        **{key: str(value) if isinstance(value, UUID) else value for key, value in details.items()},
    )
