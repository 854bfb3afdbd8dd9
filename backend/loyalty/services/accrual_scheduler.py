from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from threading import Event, Lock, Thread
from typing import Any, Callable, Iterable, Optional

from loyalty.clients.reward_service import RewardServiceClient
from loyalty.core.config import Settings, get_settings
from loyalty.core.context import ReconcileContext
from loyalty.core.logging import log_fields
from loyalty.models import EventCategory, EventLevel
from loyalty.services.ledger_store import LedgerStore, PendingOrder, SqlLedgerStore
from loyalty.services.order_reconciler import (
    OrderReconciler,
    OutcomeKind,
    WorkerOutcome,
)
from loyalty.services.system_events import emit_system_event

logger = logging.getLogger(__name__)

EventSink = Callable[..., None]

JOIN_POLL_SECONDS = 0.1


@dataclass(frozen=True)
class TickReport:
    tick_id: str
    started_at: datetime
    finished_at: datetime
    pending: int
    next_interval_seconds: float
    counts: dict[str, int] = field(default_factory=dict)
    max_retry_after_seconds: Optional[int] = None
    fetch_error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "tick_id": self.tick_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "pending": self.pending,
            "next_interval_seconds": self.next_interval_seconds,
            "counts": dict(self.counts),
            "max_retry_after_seconds": self.max_retry_after_seconds,
            "fetch_error": self.fetch_error,
        }


def compute_next_interval(
    base_interval_seconds: float, outcomes: Iterable[WorkerOutcome]
) -> float:
    """Widen the base interval by the largest Retry-After of the tick.

    Only rate-limited outcomes matter; failed and skipped orders simply come
    back in the next tick's pending set.
    """

    waits = [
        int(o.retry_after_seconds or 0)
        for o in outcomes
        if o.kind is OutcomeKind.RATE_LIMITED
    ]
    if not waits:
        return float(base_interval_seconds)
    return float(base_interval_seconds) + max(waits)


class AccrualScheduler:
    """Timer-driven owner of the reconciliation loop.

    Each tick fetches all pending orders, runs one reconciler task per order on
    a bounded thread pool, waits for every task and derives the next interval
    from the collected outcomes. Workers report back through their futures
    only; one failing order never cancels its siblings.
    """

    def __init__(
        self,
        store: LedgerStore,
        reconciler: OrderReconciler,
        *,
        base_interval_seconds: float,
        pool_size: int,
        event_sink: Optional[EventSink] = None,
        on_stop: Optional[Callable[[], None]] = None,
    ) -> None:
        if base_interval_seconds <= 0:
            raise ValueError("base_interval_seconds must be positive")
        if pool_size < 1:
            raise ValueError("pool_size must be at least 1")

        self._store = store
        self._reconciler = reconciler
        self._base_interval = float(base_interval_seconds)
        self._pool_size = int(pool_size)
        self._event_sink = event_sink
        self._on_stop = on_stop

        self._stop_event = Event()
        self._lock = Lock()
        self._current_interval = self._base_interval
        self._executor: ThreadPoolExecutor | None = None
        self._thread: Thread | None = None
        self._last_report: TickReport | None = None
        self._ticks = 0

    @property
    def current_interval_seconds(self) -> float:
        with self._lock:
            return self._current_interval

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def new_context(self) -> ReconcileContext:
        return ReconcileContext.new(self._stop_event)

    def _pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._stop_event.is_set():
                raise RuntimeError("Accrual scheduler is stopped.")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._pool_size,
                    thread_name_prefix="accrual-worker",
                )
            return self._executor

    # -- one tick ---------------------------------------------------------------

    def run_tick(self, ctx: ReconcileContext | None = None) -> TickReport:
        ctx = ctx or self.new_context()
        started = datetime.now(UTC)

        with self._lock:
            self._current_interval = self._base_interval

        try:
            orders = self._store.fetch_pending(ctx)
        except Exception as exc:
            logger.exception(
                "Failed to fetch pending orders; skipping tick",
                extra={"extra": {"tick_id": ctx.tick_id}},
            )
            self._emit(
                level=EventLevel.ERROR,
                message="Pending order fetch failed",
                correlation_id=ctx.tick_id,
                details={"error": str(exc)},
            )
            report = TickReport(
                tick_id=ctx.tick_id,
                started_at=started,
                finished_at=datetime.now(UTC),
                pending=0,
                next_interval_seconds=self._base_interval,
                fetch_error=str(exc),
            )
            self._finish(report)
            return report

        outcomes = self._fan_out(ctx, orders)
        next_interval = compute_next_interval(self._base_interval, outcomes)
        counts = Counter(o.kind.value for o in outcomes)
        waits = [
            int(o.retry_after_seconds or 0)
            for o in outcomes
            if o.kind is OutcomeKind.RATE_LIMITED
        ]

        report = TickReport(
            tick_id=ctx.tick_id,
            started_at=started,
            finished_at=datetime.now(UTC),
            pending=len(orders),
            next_interval_seconds=next_interval,
            counts=dict(counts),
            max_retry_after_seconds=max(waits) if waits else None,
        )
        self._finish(report)

        if waits:
            self._emit(
                level=EventLevel.WARNING,
                message="Reward service rate limited reconciliation",
                correlation_id=ctx.tick_id,
                details={
                    "rate_limited": len(waits),
                    "next_interval_seconds": next_interval,
                },
            )
        return report

    def _fan_out(
        self, ctx: ReconcileContext, orders: list[PendingOrder]
    ) -> list[WorkerOutcome]:
        if not orders:
            return []

        futures: dict[str, Future[WorkerOutcome]] = {}
        try:
            pool = self._pool()
            for order in orders:
                futures[order.number] = pool.submit(
                    self._reconciler.process, ctx, order
                )
        except RuntimeError:
            # stop() shut the pool down; the rest of the batch stays unsubmitted.
            pass

        self._join(ctx, futures.values())
        return [
            self._collect(ctx, order, futures.get(order.number)) for order in orders
        ]

    def _join(
        self, ctx: ReconcileContext, futures: Iterable[Future[WorkerOutcome]]
    ) -> None:
        """Wait for every task, or stop waiting as soon as ``ctx`` is cancelled.

        Futures cancelled by ``shutdown(cancel_futures=True)`` report ``done()``
        but never wake ``wait()``, so the join polls.
        """

        pending = set(futures)
        while pending:
            wait(pending, timeout=JOIN_POLL_SECONDS)
            pending = {fut for fut in pending if not fut.done()}
            if pending and ctx.cancelled:
                log_fields(
                    logger,
                    logging.WARNING,
                    "Abandoning in-flight reconciler tasks",
                    tick_id=ctx.tick_id,
                    in_flight=len(pending),
                )
                return

    def _collect(
        self,
        ctx: ReconcileContext,
        order: PendingOrder,
        fut: Future[WorkerOutcome] | None,
    ) -> WorkerOutcome:
        if fut is None or fut.cancelled():
            return WorkerOutcome(order.number, OutcomeKind.FAILED, reason="cancelled")
        if not fut.done():
            # Left running after stop; a late answer is discarded by the client
            # and a late commit is rolled back by the store.
            return WorkerOutcome(order.number, OutcomeKind.FAILED, reason="abandoned")

        exc = fut.exception()
        if exc is not None:
            logger.error(
                "Reconciler task crashed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"extra": {"tick_id": ctx.tick_id, "order": order.number}},
            )
            return WorkerOutcome(order.number, OutcomeKind.FAILED, reason=str(exc))
        return fut.result()

    def _finish(self, report: TickReport) -> None:
        with self._lock:
            self._current_interval = report.next_interval_seconds
            self._last_report = report
            self._ticks += 1

        log_fields(
            logger,
            logging.INFO,
            "Accrual tick finished",
            tick_id=report.tick_id,
            pending=report.pending,
            counts=report.counts,
            next_interval_seconds=report.next_interval_seconds,
        )

    def _emit(self, **kwargs: Any) -> None:
        if self._event_sink is None:
            return
        try:
            self._event_sink(category=EventCategory.ACCRUAL, **kwargs)
        except Exception:
            logger.warning("Event sink failed", exc_info=True)

    # -- timer loop -------------------------------------------------------------

    def run_forever(self) -> None:
        """Tick every ``current_interval_seconds`` until the stop event is set."""

        while not self._stop_event.wait(timeout=self.current_interval_seconds):
            try:
                self.run_tick()
            except Exception:
                logger.exception("Accrual tick crashed")

    def start(self) -> bool:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return False
            if self._stop_event.is_set():
                raise RuntimeError("A stopped scheduler cannot be restarted.")
            self._thread = Thread(
                target=self.run_forever,
                name="accrual-scheduler",
                daemon=True,
            )
            self._thread.start()

        log_fields(
            logger,
            logging.INFO,
            "Accrual scheduler started",
            base_interval_seconds=self._base_interval,
            pool_size=self._pool_size,
        )
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        """Cancel the timer and all queued tasks, then join the loop thread.

        A tick in progress stops waiting for its in-flight tasks and reports
        them as FAILED; answers that arrive after the stop are discarded.
        """

        self._stop_event.set()
        with self._lock:
            executor = self._executor
            thread = self._thread
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)
        if self._on_stop is not None:
            self._on_stop()
            self._on_stop = None
        logger.info("Accrual scheduler stopped")

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            report = self._last_report
            return {
                "running": self.running,
                "base_interval_seconds": self._base_interval,
                "current_interval_seconds": self._current_interval,
                "pool_size": self._pool_size,
                "ticks": self._ticks,
                "last_tick": report.as_dict() if report is not None else None,
            }


def build_accrual_engine(settings: Settings | None = None) -> AccrualScheduler:
    """Wire store, reward client, reconciler and scheduler from settings."""

    cfg = settings or get_settings()
    client = RewardServiceClient(
        cfg.accrual_system_address,
        timeout_seconds=cfg.accrual_request_timeout_seconds,
        default_retry_after=cfg.accrual_default_retry_after_seconds,
    )
    store = SqlLedgerStore()
    return AccrualScheduler(
        store,
        OrderReconciler(client, store),
        base_interval_seconds=cfg.accrual_poll_interval_seconds,
        pool_size=cfg.accrual_worker_pool_size,
        event_sink=emit_system_event,
        on_stop=client.close,
    )


_engine: AccrualScheduler | None = None
_engine_lock = Lock()


def schedule_accrual_engine(settings: Settings | None = None) -> AccrualScheduler:
    """Start the process-wide accrual engine once."""

    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = build_accrual_engine(settings)
        _engine.start()
        return _engine


def get_accrual_engine() -> AccrualScheduler | None:
    return _engine


def stop_accrual_engine(timeout: float | None = 5.0) -> None:
    global _engine
    with _engine_lock:
        engine, _engine = _engine, None
    if engine is not None:
        engine.stop(timeout=timeout)


__all__ = [
    "AccrualScheduler",
    "TickReport",
    "build_accrual_engine",
    "compute_next_interval",
    "get_accrual_engine",
    "schedule_accrual_engine",
    "stop_accrual_engine",
]
