from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from threading import Event


@dataclass(frozen=True)
class ReconcileContext:
    """Identity and cancellation scope for one reconciliation tick.

    The scheduler creates one context per tick and hands it explicitly to
    every worker, client call and store operation of that tick. All contexts
    of one engine share its ``stop_event``; setting it cancels the engine.
    """

    tick_id: str
    stop_event: Event = field(default_factory=Event, compare=False)

    @classmethod
    def new(cls, stop_event: Event | None = None) -> "ReconcileContext":
        return cls(tick_id=uuid.uuid4().hex[:12], stop_event=stop_event or Event())

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()


__all__ = ["ReconcileContext"]
