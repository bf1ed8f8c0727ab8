"""Shared enumerations and defaults."""

from enum import Enum


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @property
    def entry_action(self) -> str:
        """Broker order side that opens a position on this side."""
        return "buy" if self is Side.LONG else "sell"

    @property
    def exit_action(self) -> str:
        return "sell" if self is Side.LONG else "buy"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CloseReason(str, Enum):
    STOP = "STOP"
    TARGET = "TARGET"
    MAX_LOSS = "MAX_LOSS"
    RISK = "RISK"
    TTL = "TTL"
    MANUAL = "MANUAL"
    KILL_SWITCH = "KILL_SWITCH"


class OpportunityStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"


class OrderStatus(str, Enum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"


class ProfitTakeStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    EXPIRED = "EXPIRED"


class LimitScope(str, Enum):
    TRADE = "TRADE"
    GROUP = "GROUP"


class CapType(str, Enum):
    PCT = "PCT"
    USD = "USD"


VALID_TIMEFRAMES = ["1h", "1d"]

# Trailing stops ratchet in half-R increments
TRAIL_STEP = 0.5

LIVE_ORDER_STATUSES = (OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED)

# Broker order states that end an order without a complete fill
BROKER_TERMINAL_CANCELED = {
    "canceled",
    "cancelled",
    "expired",
    "rejected",
    "done_for_day",
    "stopped",
    "suspended",
}
