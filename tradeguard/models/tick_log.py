"""TickLog model: one row per reconciliation tick."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class TickLog(SQLModel, table=True):
    __tablename__ = "tick_log"

    id: int | None = Field(default=None, primary_key=True)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    status: str  # "success", "error", "skipped"
    evaluated: int = 0
    closed: int = 0
    skipped: int = 0
    errors: int = 0
    kill_switch_triggered: bool = False
    message: str | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
