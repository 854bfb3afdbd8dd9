from __future__ import annotations

from fastapi import APIRouter, Depends

from loyalty.core.config import Settings, get_settings
from loyalty.schemas.accrual import AccrualEngineStatus
from loyalty.services.accrual_scheduler import get_accrual_engine

# ruff: noqa: B008  # FastAPI dependency injection pattern

router = APIRouter()


@router.get("/status", response_model=AccrualEngineStatus)
def accrual_status(settings: Settings = Depends(get_settings)) -> AccrualEngineStatus:
    """Report the reconciliation loop's interval and last tick."""

    engine = get_accrual_engine()
    if engine is None:
        return AccrualEngineStatus(enabled=settings.accrual_enabled)
    return AccrualEngineStatus(enabled=settings.accrual_enabled, **engine.snapshot())


__all__ = ["router"]
