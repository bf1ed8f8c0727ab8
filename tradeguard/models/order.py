"""Order and Fill models: broker orders placed for a position."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON

from tradeguard.utils.constants import OrderStatus


class Order(SQLModel, table=True):
    __tablename__ = "trade_order"

    id: int | None = Field(default=None, primary_key=True)
    position_id: int = Field(foreign_key="position.id", index=True)
    client_order_id: str = Field(unique=True, index=True)  # "{position_id}-{attempt}"
    broker_order_id: str | None = None
    attempt: int = 1
    order_type: str = "market"
    side: str  # "buy" / "sell"
    quantity: int
    status: str = Field(default=OrderStatus.NEW.value, index=True)
    filled_quantity: int = 0
    avg_fill_price: float | None = None
    raw_request: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    raw_response: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Fill(SQLModel, table=True):
    __tablename__ = "fill"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="trade_order.id", index=True)
    price: float
    quantity: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
