from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from loyalty.core.context import ReconcileContext
from loyalty.db.base import Base
from loyalty.db.session import SessionLocal, engine
from loyalty.models import Accrual, Balance, Order, OrderStatus
from loyalty.services.ledger_store import (
    CommitCancelled,
    DuplicateWithdrawal,
    InsufficientFunds,
    InvalidAmount,
    InvalidOrderNumber,
    OrderAlreadySettled,
    OrderOwnedByAnotherUser,
    PendingOrder,
    SqlLedgerStore,
)

store = SqlLedgerStore()


def setup_function() -> None:  # type: ignore[override]
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _seed_order(
    number: str,
    owner_id: str = "user-1",
    status: OrderStatus = OrderStatus.NEW,
    created_at: datetime | None = None,
) -> PendingOrder:
    created = created_at or datetime.now(UTC)
    with SessionLocal() as db:
        db.add(
            Order(number=number, owner_id=owner_id, status=status, created_at=created)
        )
        db.commit()
    return PendingOrder(number=number, owner_id=owner_id, status=status, created_at=created)


def _seed_balance(owner_id: str, earned: str, withdrawn: str = "0") -> None:
    with SessionLocal() as db:
        db.add(Balance(owner_id=owner_id, earned=Decimal(earned), withdrawn=Decimal(withdrawn)))
        db.commit()


def _ctx() -> ReconcileContext:
    return ReconcileContext.new()


def test_fetch_pending_excludes_terminal_and_orders_oldest_first() -> None:
    now = datetime.now(UTC)
    _seed_order("26", created_at=now - timedelta(minutes=1))
    _seed_order("18", created_at=now - timedelta(minutes=5), status=OrderStatus.PROCESSING)
    _seed_order("34", status=OrderStatus.PROCESSED)
    _seed_order("42", status=OrderStatus.INVALID)

    pending = store.fetch_pending(_ctx())

    assert [o.number for o in pending] == ["18", "26"]
    assert pending[0].status is OrderStatus.PROCESSING


def test_processed_commit_flips_status_records_accrual_and_credits_balance() -> None:
    order = _seed_order("79927398713")

    store.commit_outcome(_ctx(), order, OrderStatus.PROCESSED, Decimal("500.5"))

    with SessionLocal() as db:
        saved = db.get(Order, order.number)
        assert saved.status is OrderStatus.PROCESSED
        assert saved.accrued_amount == Decimal("500.50")
        accrual = db.query(Accrual).filter(Accrual.order_number == order.number).one()
        assert accrual.amount == Decimal("500.50")
        assert accrual.owner_id == "user-1"
    assert store.get_balance("user-1").earned == Decimal("500.50")

    # Settled orders never come back, so reconciling again is a no-op.
    assert store.fetch_pending(_ctx()) == []


def test_invalid_commit_sets_zero_and_leaves_balance_alone() -> None:
    _seed_balance("user-1", "100")
    order = _seed_order("18")

    store.commit_outcome(_ctx(), order, OrderStatus.INVALID, Decimal("999"))

    with SessionLocal() as db:
        saved = db.get(Order, "18")
        assert saved.status is OrderStatus.INVALID
        assert saved.accrued_amount == Decimal("0.00")
        assert db.query(Accrual).count() == 0
    balance = store.get_balance("user-1")
    assert balance.earned == Decimal("100.00")
    assert balance.current == Decimal("100.00")


def test_second_commit_for_same_order_is_rejected_without_double_credit() -> None:
    order = _seed_order("18")
    store.commit_outcome(_ctx(), order, OrderStatus.PROCESSED, Decimal("10"))

    with pytest.raises(OrderAlreadySettled):
        store.commit_outcome(_ctx(), order, OrderStatus.PROCESSED, Decimal("10"))

    assert store.get_balance("user-1").earned == Decimal("10.00")


def test_non_terminal_status_cannot_be_committed() -> None:
    order = _seed_order("18")
    with pytest.raises(ValueError):
        store.commit_outcome(_ctx(), order, OrderStatus.PROCESSING, Decimal("1"))


def test_cancelled_commit_rolls_back_everything() -> None:
    order = _seed_order("18")
    stop = threading.Event()
    stop.set()

    with pytest.raises(CommitCancelled):
        store.commit_outcome(
            ReconcileContext.new(stop), order, OrderStatus.PROCESSED, Decimal("5")
        )

    with SessionLocal() as db:
        assert db.get(Order, "18").status is OrderStatus.NEW
        assert db.query(Accrual).count() == 0
        assert db.get(Balance, "user-1") is None


def test_concurrent_credits_for_one_owner_do_not_lose_updates() -> None:
    _seed_balance("user-1", "100")
    first = _seed_order("18")
    second = _seed_order("26")
    barrier = threading.Barrier(2)
    errors: list[BaseException] = []

    def settle(order: PendingOrder, amount: str) -> None:
        try:
            barrier.wait(timeout=5)
            store.commit_outcome(_ctx(), order, OrderStatus.PROCESSED, Decimal(amount))
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [
        threading.Thread(target=settle, args=(first, "50")),
        threading.Thread(target=settle, args=(second, "70")),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    balance = store.get_balance("user-1")
    assert balance.earned == Decimal("220.00")
    assert balance.withdrawn == Decimal("0.00")


def test_first_credit_creates_balance_row() -> None:
    order = _seed_order("18", owner_id="fresh-user")
    store.commit_outcome(_ctx(), order, OrderStatus.PROCESSED, Decimal("7.25"))
    balance = store.get_balance("fresh-user")
    assert balance.earned == Decimal("7.25")
    assert balance.current == Decimal("7.25")


def test_submit_order_validates_and_is_idempotent_per_owner() -> None:
    created = store.submit_order("user-1", "79927398713")
    assert created.created is True
    assert created.order.status is OrderStatus.NEW
    assert created.order.accrued_amount == Decimal("0.00")

    again = store.submit_order("user-1", " 79927398713 ")
    assert again.created is False

    with pytest.raises(OrderOwnedByAnotherUser):
        store.submit_order("user-2", "79927398713")
    with pytest.raises(InvalidOrderNumber):
        store.submit_order("user-1", "1234567812345345")
    with pytest.raises(InvalidOrderNumber):
        store.submit_order("user-1", "12a3")

    assert [o.number for o in store.list_orders("user-1")] == ["79927398713"]


def test_withdraw_debits_current_balance_and_rejects_overdraft() -> None:
    _seed_balance("user-1", "100")

    store.withdraw("user-1", "2377225624", Decimal("40"))
    balance = store.get_balance("user-1")
    assert balance.withdrawn == Decimal("40.00")
    assert balance.current == Decimal("60.00")

    with pytest.raises(InsufficientFunds):
        store.withdraw("user-1", "79927398713", Decimal("60.01"))
    with pytest.raises(DuplicateWithdrawal):
        store.withdraw("user-1", "2377225624", Decimal("1"))
    with pytest.raises(InvalidAmount):
        store.withdraw("user-1", "79927398713", Decimal("0"))
    with pytest.raises(InvalidOrderNumber):
        store.withdraw("user-1", "12345", Decimal("1"))
    with pytest.raises(InsufficientFunds):
        store.withdraw("nobody", "79927398713", Decimal("1"))

    assert store.get_balance("user-1").current == Decimal("60.00")
    withdrawals = store.list_withdrawals("user-1")
    assert [(w.order_number, w.amount) for w in withdrawals] == [
        ("2377225624", Decimal("40.00"))
    ]


def test_accrual_then_withdraw_round_trip() -> None:
    order = _seed_order("18")
    store.commit_outcome(_ctx(), order, OrderStatus.PROCESSED, Decimal("25"))
    store.withdraw("user-1", "79927398713", Decimal("25"))
    balance = store.get_balance("user-1")
    assert balance.earned == Decimal("25.00")
    assert balance.current == Decimal("0.00")
