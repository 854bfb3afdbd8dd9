from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Literal, Optional, Union
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError, field_validator

from loyalty.core.context import ReconcileContext
from loyalty.core.logging import log_fields
from loyalty.db.types import to_money

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_RETRY_AFTER_SECONDS = 30

RewardStatus = Literal["REGISTERED", "PROCESSING", "INVALID", "PROCESSED"]


class RewardPayload(BaseModel):
    """Body of a 200 response from ``GET /api/orders/{number}``."""

    order: str
    status: RewardStatus
    accrual: Decimal = Decimal("0.00")

    @field_validator("accrual", mode="before")
    @classmethod
    def _none_is_zero(cls, value):  # noqa: ANN001
        return Decimal("0.00") if value is None else value

    @field_validator("accrual")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("accrual must be non-negative")
        return to_money(value)


@dataclass(frozen=True)
class RewardSuccess:
    status: RewardStatus
    amount: Decimal


@dataclass(frozen=True)
class RewardNotRegistered:
    pass


@dataclass(frozen=True)
class RewardRateLimited:
    retry_after_seconds: int


@dataclass(frozen=True)
class RewardTransientError:
    reason: str


@dataclass(frozen=True)
class RewardClientError:
    status_code: int
    reason: str = ""


RewardResult = Union[
    RewardSuccess,
    RewardNotRegistered,
    RewardRateLimited,
    RewardTransientError,
    RewardClientError,
]


def parse_retry_after(raw: Optional[str], default: int = DEFAULT_RETRY_AFTER_SECONDS) -> int:
    """Read ``Retry-After`` as whole seconds; anything else yields ``default``."""

    if raw is None:
        return default
    try:
        seconds = int(raw.strip())
    except ValueError:
        return default
    return seconds if seconds >= 0 else default


class RewardServiceClient:
    """Single-shot client for the external reward calculation service.

    ``fetch`` performs exactly one HTTP call and folds every transport and
    HTTP outcome into a :data:`RewardResult`. It never retries or sleeps;
    backoff is decided by the caller.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        default_retry_after: int = DEFAULT_RETRY_AFTER_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.default_retry_after = int(default_retry_after)
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=self.timeout_seconds)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def order_url(self, order_number: str) -> str:
        return f"{self.base_url}/api/orders/{quote(order_number, safe='')}"

    def fetch(self, ctx: ReconcileContext, order_number: str) -> RewardResult:
        if ctx.cancelled:
            return RewardTransientError("cancelled")

        try:
            resp = self._client.get(
                self.order_url(order_number),
                headers={"Accept": "application/json"},
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            log_fields(
                logger,
                logging.WARNING,
                "Reward service call timed out",
                tick_id=ctx.tick_id,
                order=order_number,
                error=str(exc),
            )
            return RewardTransientError(f"timeout: {exc}")
        except httpx.HTTPError as exc:
            log_fields(
                logger,
                logging.WARNING,
                "Reward service call failed",
                tick_id=ctx.tick_id,
                order=order_number,
                error=str(exc),
            )
            return RewardTransientError(f"transport: {exc}")

        # The engine may have stopped while this call was blocked; whoever
        # waited for the answer has already given up on it.
        if ctx.cancelled:
            return RewardTransientError("cancelled")

        return self._to_result(ctx, order_number, resp)

    def _to_result(
        self, ctx: ReconcileContext, order_number: str, resp: httpx.Response
    ) -> RewardResult:
        status = resp.status_code

        if status == 429:
            retry_after = parse_retry_after(
                resp.headers.get("Retry-After"), self.default_retry_after
            )
            return RewardRateLimited(retry_after_seconds=retry_after)

        if status == 204:
            return RewardNotRegistered()

        if status != 200:
            return RewardClientError(status_code=status, reason=resp.text[:200])

        try:
            payload = RewardPayload.model_validate_json(resp.content)
        except ValidationError as exc:
            log_fields(
                logger,
                logging.WARNING,
                "Malformed reward service response",
                tick_id=ctx.tick_id,
                order=order_number,
                error=str(exc),
            )
            return RewardTransientError("malformed response body")

        if payload.order and payload.order != order_number:
            log_fields(
                logger,
                logging.WARNING,
                "Reward service answered for a different order",
                tick_id=ctx.tick_id,
                order=order_number,
                answered=payload.order,
            )
            return RewardTransientError("order number mismatch")

        return RewardSuccess(status=payload.status, amount=payload.accrual)


__all__ = [
    "DEFAULT_RETRY_AFTER_SECONDS",
    "DEFAULT_TIMEOUT_SECONDS",
    "RewardClientError",
    "RewardNotRegistered",
    "RewardPayload",
    "RewardRateLimited",
    "RewardResult",
    "RewardServiceClient",
    "RewardStatus",
    "RewardSuccess",
    "RewardTransientError",
    "parse_retry_after",
]
