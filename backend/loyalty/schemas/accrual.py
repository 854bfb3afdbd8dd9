from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


class TickRead(BaseModel):
    tick_id: str
    started_at: datetime
    finished_at: datetime
    pending: int
    next_interval_seconds: float
    counts: Dict[str, int] = Field(default_factory=dict)
    max_retry_after_seconds: Optional[int] = None
    fetch_error: Optional[str] = None


class AccrualEngineStatus(BaseModel):
    enabled: bool
    running: bool = False
    base_interval_seconds: Optional[float] = None
    current_interval_seconds: Optional[float] = None
    pool_size: Optional[int] = None
    ticks: int = 0
    last_tick: Optional[TickRead] = None


__all__ = ["AccrualEngineStatus", "TickRead"]
