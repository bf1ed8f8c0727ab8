"""Database models."""

from tradeguard.models.opportunity import Opportunity
from tradeguard.models.position import Position
from tradeguard.models.order import Order, Fill
from tradeguard.models.profit_take import ProfitTakeRequest
from tradeguard.models.risk_limit import RiskLimit
from tradeguard.models.audit_entry import AuditEntry
from tradeguard.models.idempotency import IdempotencyRecord
from tradeguard.models.credential import Credential
from tradeguard.models.tick_log import TickLog

__all__ = [
    "Opportunity",
    "Position",
    "Order",
    "Fill",
    "ProfitTakeRequest",
    "RiskLimit",
    "AuditEntry",
    "IdempotencyRecord",
    "Credential",
    "TickLog",
]
