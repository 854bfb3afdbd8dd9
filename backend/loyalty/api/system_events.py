from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from loyalty.db.session import get_db
from loyalty.models import SystemEvent
from loyalty.schemas.system_events import SystemEventRead
from loyalty.services.system_events import coerce_category, coerce_level

# ruff: noqa: B008  # FastAPI dependency injection pattern

router = APIRouter()


@router.get("/", response_model=List[SystemEventRead])
def list_system_events(
    level: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> List[SystemEvent]:
    """Return recent engine events, most recent first."""

    query = db.query(SystemEvent)
    try:
        if level is not None:
            query = query.filter(SystemEvent.level == coerce_level(level))
        if category is not None:
            query = query.filter(SystemEvent.category == coerce_category(category))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown event filter: {exc}",
        ) from exc

    return (
        query.order_by(SystemEvent.created_at.desc(), SystemEvent.id.desc())
        .limit(limit)
        .all()
    )


__all__ = ["router"]
