from __future__ import annotations

import json
from decimal import Decimal
from typing import Dict, Tuple

import httpx

from loyalty.clients.reward_service import RewardServiceClient
from loyalty.db.base import Base
from loyalty.db.session import SessionLocal, engine
from loyalty.models import Accrual, EventCategory, Order, OrderStatus, SystemEvent
from loyalty.services.accrual_scheduler import AccrualScheduler
from loyalty.services.ledger_store import SqlLedgerStore
from loyalty.services.order_reconciler import OrderReconciler
from loyalty.services.system_events import emit_system_event

# order number -> (status code, body or headers)
Script = Dict[str, Tuple[int, dict]]


def setup_function() -> None:  # type: ignore[override]
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _engine_for(script: Script, *, pool_size: int = 3) -> Tuple[AccrualScheduler, list]:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        number = request.url.path.rsplit("/", 1)[-1]
        calls.append(number)
        status, data = script[number]
        if status == 200:
            return httpx.Response(200, content=json.dumps(data).encode())
        return httpx.Response(status, headers=data)

    client = RewardServiceClient(
        "http://accrual.test",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    store = SqlLedgerStore()
    scheduler = AccrualScheduler(
        store,
        OrderReconciler(client, store),
        base_interval_seconds=10,
        pool_size=pool_size,
        event_sink=emit_system_event,
    )
    return scheduler, calls


def _submit(owner_id: str, *numbers: str) -> None:
    store = SqlLedgerStore()
    for number in numbers:
        store.submit_order(owner_id, number)


def test_processed_invalid_and_unregistered_orders_settle_in_one_tick() -> None:
    _submit("user-1", "79927398713", "18", "26")
    scheduler, _ = _engine_for(
        {
            "79927398713": (200, {"order": "79927398713", "status": "PROCESSED", "accrual": 500}),
            "18": (200, {"order": "18", "status": "INVALID"}),
            "26": (204, {}),
        }
    )
    try:
        report = scheduler.run_tick()
    finally:
        scheduler.stop()

    assert report.counts == {"COMMITTED": 3}
    store = SqlLedgerStore()
    with SessionLocal() as db:
        orders = {o.number: o for o in db.query(Order).all()}
        assert orders["79927398713"].status is OrderStatus.PROCESSED
        assert orders["79927398713"].accrued_amount == Decimal("500.00")
        assert orders["18"].status is OrderStatus.INVALID
        assert orders["18"].accrued_amount == Decimal("0.00")
        assert orders["26"].status is OrderStatus.INVALID
        assert db.query(Accrual).count() == 1
    assert store.get_balance("user-1").earned == Decimal("500.00")


def test_rerunning_after_settlement_is_a_no_op() -> None:
    _submit("user-1", "79927398713")
    scheduler, calls = _engine_for(
        {"79927398713": (200, {"order": "79927398713", "status": "PROCESSED", "accrual": 42})}
    )
    try:
        scheduler.run_tick()
        second = scheduler.run_tick()
    finally:
        scheduler.stop()

    assert calls == ["79927398713"]
    assert second.pending == 0
    assert SqlLedgerStore().get_balance("user-1").earned == Decimal("42.00")


def test_server_error_on_one_order_does_not_block_the_other_four() -> None:
    numbers = ["18", "26", "34", "42", "59"]
    _submit("user-1", *numbers)
    script: Script = {
        n: (200, {"order": n, "status": "PROCESSED", "accrual": 10}) for n in numbers
    }
    script["34"] = (500, {})
    scheduler, _ = _engine_for(script)
    try:
        report = scheduler.run_tick()
    finally:
        scheduler.stop()

    assert report.counts == {"COMMITTED": 4, "SKIPPED": 1}
    with SessionLocal() as db:
        statuses = {o.number: o.status for o in db.query(Order).all()}
    assert statuses.pop("34") is OrderStatus.NEW
    assert set(statuses.values()) == {OrderStatus.PROCESSED}
    assert SqlLedgerStore().get_balance("user-1").earned == Decimal("40.00")


def test_rate_limit_widens_interval_and_keeps_order_pending() -> None:
    _submit("user-1", "18", "26")
    script: Script = {
        "18": (429, {"Retry-After": "30"}),
        "26": (200, {"order": "26", "status": "PROCESSING"}),
    }
    scheduler, _ = _engine_for(script)
    try:
        report = scheduler.run_tick()
        assert report.next_interval_seconds == 40
        assert scheduler.current_interval_seconds == 40

        script["18"] = (200, {"order": "18", "status": "PROCESSED", "accrual": 3})
        report = scheduler.run_tick()
        assert report.next_interval_seconds == 10
    finally:
        scheduler.stop()

    with SessionLocal() as db:
        assert db.get(Order, "18").status is OrderStatus.PROCESSED
        assert db.get(Order, "26").status is OrderStatus.NEW
        events = (
            db.query(SystemEvent)
            .filter(SystemEvent.category == EventCategory.ACCRUAL)
            .all()
        )
        assert any("rate limited" in e.message for e in events)
