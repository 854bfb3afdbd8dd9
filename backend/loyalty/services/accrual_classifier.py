from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from loyalty.clients.reward_service import (
    RewardClientError,
    RewardNotRegistered,
    RewardRateLimited,
    RewardResult,
    RewardSuccess,
    RewardTransientError,
)
from loyalty.models import OrderStatus

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class Terminal:
    status: OrderStatus
    amount: Decimal


@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class RateLimited:
    retry_after_seconds: int


@dataclass(frozen=True)
class Retryable:
    reason: str


Classification = Union[Terminal, Skip, RateLimited, Retryable]


def classify(result: RewardResult) -> Classification:
    """Map one reward service result to the action the reconciler should take.

    Not-yet-final statuses and client errors leave the order pending without
    touching it; the next tick picks it up again.
    """

    if isinstance(result, RewardSuccess):
        if result.status == "PROCESSED":
            return Terminal(OrderStatus.PROCESSED, result.amount)
        if result.status == "INVALID":
            return Terminal(OrderStatus.INVALID, ZERO)
        if result.status in ("REGISTERED", "PROCESSING"):
            return Skip(f"reward status {result.status}")
        raise TypeError(f"unknown reward status: {result.status!r}")
    if isinstance(result, RewardNotRegistered):
        return Terminal(OrderStatus.INVALID, ZERO)
    if isinstance(result, RewardRateLimited):
        return RateLimited(result.retry_after_seconds)
    if isinstance(result, RewardTransientError):
        return Retryable(result.reason)
    if isinstance(result, RewardClientError):
        return Skip(f"reward service answered HTTP {result.status_code}")
    raise TypeError(f"unhandled reward result: {result!r}")


__all__ = ["Classification", "RateLimited", "Retryable", "Skip", "Terminal", "classify"]
