from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from loyalty.clients.reward_service import RewardResult
from loyalty.core.context import ReconcileContext
from loyalty.core.logging import log_fields
from loyalty.services.accrual_classifier import (
    RateLimited,
    Retryable,
    Skip,
    Terminal,
    classify,
)
from loyalty.services.ledger_store import LedgerStore, PendingOrder

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    COMMITTED = "COMMITTED"
    SKIPPED = "SKIPPED"
    RATE_LIMITED = "RATE_LIMITED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class WorkerOutcome:
    order_number: str
    kind: OutcomeKind
    retry_after_seconds: Optional[int] = None
    reason: Optional[str] = None


class RewardFetcher(Protocol):
    def fetch(self, ctx: ReconcileContext, order_number: str) -> RewardResult: ...


class OrderReconciler:
    """Settle one pending order with a single reward service round trip.

    ``process`` never sleeps and never retries: a rate limit, a transient
    failure or a not-yet-final answer is reported back to the scheduler and
    the order stays pending for the next tick.
    """

    def __init__(self, client: RewardFetcher, store: LedgerStore) -> None:
        self._client = client
        self._store = store

    def process(self, ctx: ReconcileContext, order: PendingOrder) -> WorkerOutcome:
        number = order.number
        if ctx.cancelled:
            return WorkerOutcome(number, OutcomeKind.FAILED, reason="cancelled")

        decision = classify(self._client.fetch(ctx, number))

        if isinstance(decision, Terminal):
            try:
                self._store.commit_outcome(ctx, order, decision.status, decision.amount)
            except Exception as exc:
                logger.warning(
                    "Commit failed; order stays pending",
                    exc_info=True,
                    extra={
                        "extra": {
                            "tick_id": ctx.tick_id,
                            "order": number,
                            "status": decision.status.value,
                        }
                    },
                )
                return WorkerOutcome(number, OutcomeKind.FAILED, reason=str(exc))
            return WorkerOutcome(number, OutcomeKind.COMMITTED)

        if isinstance(decision, Skip):
            log_fields(
                logger,
                logging.INFO,
                "Order left pending",
                tick_id=ctx.tick_id,
                order=number,
                reason=decision.reason,
            )
            return WorkerOutcome(number, OutcomeKind.SKIPPED, reason=decision.reason)

        if isinstance(decision, RateLimited):
            return WorkerOutcome(
                number,
                OutcomeKind.RATE_LIMITED,
                retry_after_seconds=decision.retry_after_seconds,
            )

        if isinstance(decision, Retryable):
            log_fields(
                logger,
                logging.WARNING,
                "Reward lookup failed; retrying next tick",
                tick_id=ctx.tick_id,
                order=number,
                reason=decision.reason,
            )
            return WorkerOutcome(number, OutcomeKind.FAILED, reason=decision.reason)

        raise TypeError(f"unhandled classification: {decision!r}")


__all__ = ["OrderReconciler", "OutcomeKind", "RewardFetcher", "WorkerOutcome"]
