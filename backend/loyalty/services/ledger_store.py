from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, List, Protocol

from sqlalchemy import insert, literal, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loyalty.core.context import ReconcileContext
from loyalty.core.logging import log_fields
from loyalty.core.luhn import is_valid_order_number
from loyalty.db.session import SessionLocal
from loyalty.db.types import Money, to_money
from loyalty.models import (
    PENDING_STATUSES,
    Accrual,
    Balance,
    Order,
    OrderStatus,
    Withdrawal,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class LedgerError(RuntimeError):
    """Base class for ledger rule violations."""


class InvalidOrderNumber(LedgerError):
    def __init__(self, number: str) -> None:
        super().__init__(f"Order number {number!r} is not a valid Luhn number.")
        self.number = number


class OrderOwnedByAnotherUser(LedgerError):
    def __init__(self, number: str) -> None:
        super().__init__(f"Order {number} was already submitted by another user.")
        self.number = number


class OrderAlreadySettled(LedgerError):
    def __init__(self, number: str) -> None:
        super().__init__(f"Order {number} is not pending any more.")
        self.number = number


class CommitCancelled(LedgerError):
    def __init__(self, number: str) -> None:
        super().__init__(f"Commit for order {number} was cancelled.")
        self.number = number


class InsufficientFunds(LedgerError):
    pass


class DuplicateWithdrawal(LedgerError):
    pass


class InvalidAmount(LedgerError):
    pass


@dataclass(frozen=True)
class PendingOrder:
    number: str
    owner_id: str
    status: OrderStatus
    created_at: datetime


@dataclass(frozen=True)
class OrderView:
    number: str
    owner_id: str
    status: OrderStatus
    accrued_amount: Decimal
    created_at: datetime


@dataclass(frozen=True)
class SubmitResult:
    order: OrderView
    created: bool


@dataclass(frozen=True)
class BalanceView:
    owner_id: str
    earned: Decimal
    withdrawn: Decimal

    @property
    def current(self) -> Decimal:
        return self.earned - self.withdrawn


@dataclass(frozen=True)
class WithdrawalView:
    owner_id: str
    order_number: str
    amount: Decimal
    created_at: datetime


class LedgerStore(Protocol):
    """What the reconciliation engine needs from persistence."""

    def fetch_pending(self, ctx: ReconcileContext) -> List[PendingOrder]: ...

    def commit_outcome(
        self,
        ctx: ReconcileContext,
        order: PendingOrder,
        new_status: OrderStatus,
        amount: Decimal,
    ) -> None: ...


def _order_view(order: Order) -> OrderView:
    return OrderView(
        number=order.number,
        owner_id=order.owner_id,
        status=order.status,
        accrued_amount=order.accrued_amount,
        created_at=order.created_at,
    )


def _money(value: Decimal):  # noqa: ANN202
    return literal(value, Money())


class SqlLedgerStore:
    """SQLAlchemy-backed ledger: orders, accrual entries and balances.

    Every write transaction starts with a conditional UPDATE so it takes the
    write lock up front; balance changes are applied as SQL-side increments
    so concurrent settlements for one owner never lose an update.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    # -- reconciliation contract --------------------------------------------

    def fetch_pending(self, ctx: ReconcileContext) -> List[PendingOrder]:
        """Return every non-terminal order, oldest first."""

        stmt = (
            select(Order.number, Order.owner_id, Order.status, Order.created_at)
            .where(Order.status.in_(sorted(PENDING_STATUSES)))
            .order_by(Order.created_at.asc(), Order.number.asc())
        )
        with self._session_factory() as db:
            rows = db.execute(stmt).all()
        return [
            PendingOrder(
                number=row.number,
                owner_id=row.owner_id,
                status=row.status,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def commit_outcome(
        self,
        ctx: ReconcileContext,
        order: PendingOrder,
        new_status: OrderStatus,
        amount: Decimal,
    ) -> None:
        """Atomically settle ``order`` with a terminal status.

        PROCESSED records the accrual entry and credits the owner's balance in
        the same transaction as the status flip. INVALID only flips the status
        and stores a zero accrued amount.
        """

        if not new_status.is_terminal:
            raise ValueError(f"{new_status.value} is not a terminal status")

        credited = to_money(amount) if new_status is OrderStatus.PROCESSED else ZERO
        if credited < 0:
            raise InvalidAmount(f"Accrual for order {order.number} is negative.")

        now = datetime.now(UTC)
        with self._session_factory() as db:
            try:
                res = db.execute(
                    update(Order)
                    .where(
                        Order.number == order.number,
                        Order.status.in_(sorted(PENDING_STATUSES)),
                    )
                    .values(status=new_status, accrued_amount=credited, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise OrderAlreadySettled(order.number)

                if new_status is OrderStatus.PROCESSED:
                    db.execute(
                        insert(Accrual).values(
                            order_number=order.number,
                            owner_id=order.owner_id,
                            amount=credited,
                            created_at=now,
                        )
                    )
                    self._credit_earned(db, order.owner_id, credited, now)

                if ctx.cancelled:
                    raise CommitCancelled(order.number)
                db.commit()
            except Exception:
                db.rollback()
                raise

        log_fields(
            logger,
            logging.INFO,
            "Order settled",
            tick_id=ctx.tick_id,
            order=order.number,
            owner_id=order.owner_id,
            status=new_status.value,
            amount=str(credited),
        )

    def _credit_earned(
        self, db: Session, owner_id: str, amount: Decimal, now: datetime
    ) -> None:
        stmt = (
            update(Balance)
            .where(Balance.owner_id == owner_id)
            .values(earned=Balance.earned + _money(amount), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if db.execute(stmt).rowcount == 1:
            return

        self._ensure_balance_row(db, owner_id, now)
        if db.execute(stmt).rowcount != 1:
            raise LedgerError(f"Balance row for owner {owner_id} is missing.")

    def _ensure_balance_row(self, db: Session, owner_id: str, now: datetime) -> None:
        values = {
            "owner_id": owner_id,
            "earned": ZERO,
            "withdrawn": ZERO,
            "updated_at": now,
        }
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            db.execute(
                pg_insert(Balance)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[Balance.owner_id])
            )
            return
        if dialect == "sqlite":
            db.execute(
                sqlite_insert(Balance)
                .values(**values)
                .on_conflict_do_nothing(index_elements=[Balance.owner_id])
            )
            return

        try:
            with db.begin_nested():
                db.execute(insert(Balance).values(**values))
        except IntegrityError:
            # Another transaction created the row first.
            pass

    # -- ledger operations ----------------------------------------------------

    def submit_order(self, owner_id: str, number: str) -> SubmitResult:
        """Register a new order for accrual, or report the existing one.

        Re-submitting one's own order is a no-op (``created=False``); an order
        number already claimed by someone else raises
        :class:`OrderOwnedByAnotherUser`.
        """

        number = (number or "").strip()
        if not is_valid_order_number(number):
            raise InvalidOrderNumber(number)

        with self._session_factory() as db:
            existing = db.get(Order, number)
            if existing is None:
                order = Order(
                    number=number,
                    owner_id=owner_id,
                    status=OrderStatus.NEW,
                    accrued_amount=ZERO,
                )
                db.add(order)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    existing = db.get(Order, number)
                    if existing is None:
                        raise
                else:
                    return SubmitResult(order=_order_view(order), created=True)

            if existing.owner_id != owner_id:
                raise OrderOwnedByAnotherUser(number)
            return SubmitResult(order=_order_view(existing), created=False)

    def list_orders(self, owner_id: str) -> List[OrderView]:
        with self._session_factory() as db:
            orders = (
                db.query(Order)
                .filter(Order.owner_id == owner_id)
                .order_by(Order.created_at.desc(), Order.number.desc())
                .all()
            )
            return [_order_view(o) for o in orders]

    def get_balance(self, owner_id: str) -> BalanceView:
        with self._session_factory() as db:
            row = db.get(Balance, owner_id)
            if row is None:
                return BalanceView(owner_id=owner_id, earned=ZERO, withdrawn=ZERO)
            return BalanceView(
                owner_id=owner_id, earned=row.earned, withdrawn=row.withdrawn
            )

    def withdraw(self, owner_id: str, order_number: str, amount: Decimal) -> WithdrawalView:
        """Spend ``amount`` of the owner's current balance against an order.

        The balance check and the debit are one conditional UPDATE, so two
        concurrent withdrawals can never drive ``current`` below zero.
        """

        order_number = (order_number or "").strip()
        if not is_valid_order_number(order_number):
            raise InvalidOrderNumber(order_number)
        value = to_money(amount)
        if value <= 0:
            raise InvalidAmount("Withdrawal amount must be positive.")

        now = datetime.now(UTC)
        with self._session_factory() as db:
            try:
                res = db.execute(
                    update(Balance)
                    .where(
                        Balance.owner_id == owner_id,
                        (Balance.earned - Balance.withdrawn) >= _money(value),
                    )
                    .values(withdrawn=Balance.withdrawn + _money(value), updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    raise InsufficientFunds(
                        f"Balance of {owner_id} does not cover {value}."
                    )
                db.add(
                    Withdrawal(
                        owner_id=owner_id,
                        order_number=order_number,
                        amount=value,
                        created_at=now,
                    )
                )
                db.flush()
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateWithdrawal(
                    f"A withdrawal for order {order_number} already exists."
                ) from exc
            except Exception:
                db.rollback()
                raise

        return WithdrawalView(
            owner_id=owner_id, order_number=order_number, amount=value, created_at=now
        )

    def list_withdrawals(self, owner_id: str) -> List[WithdrawalView]:
        with self._session_factory() as db:
            rows = (
                db.query(Withdrawal)
                .filter(Withdrawal.owner_id == owner_id)
                .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
                .all()
            )
            return [
                WithdrawalView(
                    owner_id=w.owner_id,
                    order_number=w.order_number,
                    amount=w.amount,
                    created_at=w.created_at,
                )
                for w in rows
            ]


__all__ = [
    "BalanceView",
    "CommitCancelled",
    "DuplicateWithdrawal",
    "InsufficientFunds",
    "InvalidAmount",
    "InvalidOrderNumber",
    "LedgerError",
    "LedgerStore",
    "OrderAlreadySettled",
    "OrderOwnedByAnotherUser",
    "OrderView",
    "PendingOrder",
    "SqlLedgerStore",
    "SubmitResult",
    "WithdrawalView",
]
