from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from loyalty.models import EventCategory, EventLevel


class SystemEventRead(BaseModel):
    id: int
    level: EventLevel
    category: EventCategory
    message: str
    correlation_id: Optional[str]
    details: Optional[Dict[str, Any]]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


__all__ = ["SystemEventRead"]
