from .ledger import Accrual, Balance, Withdrawal
from .order import PENDING_STATUSES, TERMINAL_STATUSES, Order, OrderStatus
from .system_event import EventCategory, EventLevel, SystemEvent

__all__ = [
    "Accrual",
    "Balance",
    "EventCategory",
    "EventLevel",
    "Order",
    "OrderStatus",
    "PENDING_STATUSES",
    "SystemEvent",
    "TERMINAL_STATUSES",
    "Withdrawal",
]
