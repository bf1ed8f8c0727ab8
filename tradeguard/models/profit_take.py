"""ProfitTakeRequest model: human-in-the-loop approval to take profit at target."""

from datetime import datetime, timezone

from sqlalchemy import Index, text
from sqlmodel import SQLModel, Field

from tradeguard.utils.constants import ProfitTakeStatus


class ProfitTakeRequest(SQLModel, table=True):
    __tablename__ = "profit_take_request"
    # At most one PENDING request per position
    __table_args__ = (
        Index(
            "ix_profit_take_one_pending",
            "position_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    price: float
    status: str = Field(default=ProfitTakeStatus.PENDING.value)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime
    decided_at: datetime | None = None
