from __future__ import annotations

import logging
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from loyalty.db.session import SessionLocal
from loyalty.models import EventCategory, EventLevel, SystemEvent

logger = logging.getLogger(__name__)


def coerce_level(level: Union[EventLevel, str]) -> EventLevel:
    """Accept ``EventLevel`` members or level names in any case."""

    if isinstance(level, EventLevel):
        return level
    return EventLevel(level.strip().upper())


def coerce_category(category: Union[EventCategory, str]) -> EventCategory:
    if isinstance(category, EventCategory):
        return category
    return EventCategory(category.strip().lower())


def record_system_event(
    db: Session,
    *,
    level: Union[EventLevel, str],
    category: Union[EventCategory, str],
    message: str,
    correlation_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> SystemEvent:
    """Store one engine event in the caller's session and commit it.

    Unknown levels or categories raise ``ValueError`` before anything is
    written. ``details`` must be JSON-serialisable; amounts and timestamps
    should be passed as strings.
    """

    event = SystemEvent(
        level=coerce_level(level),
        category=coerce_category(category),
        message=message[:255],
        correlation_id=correlation_id,
        details=dict(details) if details else None,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def emit_system_event(
    *,
    level: Union[EventLevel, str],
    category: Union[EventCategory, str],
    message: str,
    correlation_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    """Record an event from background work in its own session.

    The store may be the very thing that is failing, so errors here are
    logged and not raised into the caller's loop.
    """

    try:
        with SessionLocal() as db:
            record_system_event(
                db,
                level=level,
                category=category,
                message=message,
                correlation_id=correlation_id,
                details=details,
            )
    except Exception:
        logger.warning("Failed to record system event %r", message, exc_info=True)


__all__ = [
    "coerce_category",
    "coerce_level",
    "emit_system_event",
    "record_system_event",
]
