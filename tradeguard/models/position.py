"""Position model: one approved trade, from entry order through close."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field

from tradeguard.utils.constants import Side, PositionStatus


class Position(SQLModel, table=True):
    __tablename__ = "position"

    id: int | None = Field(default=None, primary_key=True)
    opportunity_id: int | None = Field(default=None, foreign_key="opportunity.id", index=True)
    symbol: str = Field(index=True)
    side: str  # Side value
    requested_quantity: int
    quantity: int = 0  # filled quantity; 0 until the entry order fills
    correlation_group: str = ""
    entry_price: float
    target_price: float | None = None

    # Stop state, validated through schemas.plan.StopState on every trail
    current_stop: float
    initial_stop: float
    trail_level: float = 0.0

    last_price: float | None = None
    status: str = Field(default=PositionStatus.OPEN.value, index=True)
    close_reason: str | None = None
    exit_price: float | None = None
    realized_pnl: float | None = None
    needs_review: bool = False
    version: int = 1

    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: datetime | None = None

    @property
    def side_enum(self) -> Side:
        return Side(self.side)

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN.value
