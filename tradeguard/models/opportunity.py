"""Opportunity model: a proposed trade awaiting a human decision."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field

from tradeguard.schemas.plan import EntryPlan
from tradeguard.utils.constants import Side, OpportunityStatus


class Opportunity(SQLModel, table=True):
    __tablename__ = "opportunity"

    id: int | None = Field(default=None, primary_key=True)
    symbol: str = Field(index=True)
    side: str  # Side value
    timeframe: str = "1d"
    entry_price: float
    stop_price: float
    target_price: float
    correlation_group: str | None = None
    expected_return: float | None = None
    confidence: float | None = None
    ai_summary: str | None = None  # advisory only
    ai_risks: str | None = None
    status: str = Field(default=OpportunityStatus.PENDING_APPROVAL.value, index=True)
    rejection_reason: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def plan(self) -> EntryPlan:
        return EntryPlan(
            side=Side(self.side),
            entry=self.entry_price,
            stop=self.stop_price,
            target=self.target_price,
        )
