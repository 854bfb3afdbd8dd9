from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Index, String
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loyalty.db.base import Base
from loyalty.db.types import Money, UTCDateTime


class OrderStatus(str, Enum):
    NEW = "NEW"
    PROCESSING = "PROCESSING"
    INVALID = "INVALID"
    PROCESSED = "PROCESSED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.INVALID, OrderStatus.PROCESSED}
)
PENDING_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.NEW, OrderStatus.PROCESSING}
)


class Order(Base):
    __tablename__ = "orders"

    __table_args__ = (
        CheckConstraint("accrued_amount >= 0", name="ck_orders_accrued_non_negative"),
        Index("ix_orders_status_created_at", "status", "created_at"),
        Index("ix_orders_owner_id", "owner_id"),
    )

    number: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        SAEnum(
            OrderStatus,
            name="order_status",
            native_enum=False,
            create_constraint=True,
            length=16,
        ),
        nullable=False,
        default=OrderStatus.NEW,
    )
    accrued_amount: Mapped[Decimal] = mapped_column(
        Money(), nullable=False, default=Decimal("0.00")
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    accrual: Mapped[Optional["Accrual"]] = relationship(  # noqa: F821
        back_populates="order", uselist=False
    )


__all__ = ["Order", "OrderStatus", "PENDING_STATUSES", "TERMINAL_STATUSES"]
