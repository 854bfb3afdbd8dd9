from __future__ import annotations

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy import BigInteger, DateTime
from sqlalchemy.types import TypeDecorator

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce a number (or numeric string) to a Decimal rounded to cents."""

    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, float):
        amount = Decimal(repr(value))
    else:
        amount = Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


class Money(TypeDecorator):
    """Decimal amount persisted as an integer count of cents.

    Integer storage keeps ``earned = earned + :amount`` exact on every backend,
    including SQLite which has no native decimal type.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(  # type: ignore[override]
        self, value: Optional[Any], dialect
    ) -> Optional[int]:
        if value is None:
            return None
        return int(to_money(value) * 100)

    def process_result_value(  # type: ignore[override]
        self, value: Optional[int], dialect
    ) -> Optional[Decimal]:
        if value is None:
            return None
        return (Decimal(int(value)) / 100).quantize(CENT)


class UTCDateTime(TypeDecorator):
    """Naive-UTC storage, tz-aware UTC on the way out."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(  # type: ignore[override]
        self, value: Optional[datetime], dialect
    ) -> Optional[datetime]:
        if value is None or value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(  # type: ignore[override]
        self, value: Optional[datetime], dialect
    ) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


__all__ = ["CENT", "Money", "UTCDateTime", "to_money"]
