from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Index, Integer, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from loyalty.db.base import Base
from loyalty.db.types import UTCDateTime


class EventLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class EventCategory(str, Enum):
    # Raised by the reconciliation loop: fetch failures and rate limiting.
    ACCRUAL = "accrual"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class SystemEvent(Base):
    """Problem or notable condition seen by the accrual engine.

    The engine runs without a caller to report to, so tick-level failures
    land here and are served by ``/api/system-events``.
    """

    __tablename__ = "system_events"

    __table_args__ = (
        Index("ix_system_events_category_created_at", "category", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level: Mapped[EventLevel] = mapped_column(
        SAEnum(
            EventLevel,
            name="system_event_level",
            native_enum=False,
            create_constraint=True,
            length=16,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    category: Mapped[EventCategory] = mapped_column(
        SAEnum(
            EventCategory,
            name="system_event_category",
            native_enum=False,
            create_constraint=True,
            length=32,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(String(255), nullable=False)
    # Tick id of the reconciliation pass that raised the event.
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )


__all__ = ["EventCategory", "EventLevel", "SystemEvent"]
