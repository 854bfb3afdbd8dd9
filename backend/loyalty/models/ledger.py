from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from loyalty.db.base import Base
from loyalty.db.types import Money, UTCDateTime

from .order import Order


class Accrual(Base):
    """Immutable record of the bonus credited for one processed order."""

    __tablename__ = "accruals"

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_accruals_amount_non_negative"),
        Index("ix_accruals_owner_id", "owner_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_number: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("orders.number", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )

    order: Mapped[Order] = relationship(back_populates="accrual")


class Balance(Base):
    """Per-owner aggregate of earned and withdrawn bonuses."""

    __tablename__ = "balances"

    __table_args__ = (
        CheckConstraint("earned >= 0", name="ck_balances_earned_non_negative"),
        CheckConstraint("withdrawn >= 0", name="ck_balances_withdrawn_non_negative"),
        CheckConstraint("withdrawn <= earned", name="ck_balances_current_non_negative"),
    )

    owner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    earned: Mapped[Decimal] = mapped_column(
        Money(), nullable=False, default=Decimal("0.00")
    )
    withdrawn: Mapped[Decimal] = mapped_column(
        Money(), nullable=False, default=Decimal("0.00")
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def current(self) -> Decimal:
        return self.earned - self.withdrawn


class Withdrawal(Base):
    __tablename__ = "withdrawals"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_withdrawals_amount_positive"),
        Index("ix_withdrawals_owner_id", "owner_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=lambda: datetime.now(UTC)
    )


__all__ = ["Accrual", "Balance", "Withdrawal"]
