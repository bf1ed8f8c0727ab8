"""AuditEntry model: append-only, hash-chained event log."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class AuditEntry(SQLModel, table=True):
    __tablename__ = "audit_entry"

    id: int | None = Field(default=None, primary_key=True)
    actor: str
    action: str = Field(index=True)
    entity_type: str | None = None
    entity_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    # Unique so two writers can never chain off the same head
    prev_hash: str = Field(unique=True)
    hash: str = Field(unique=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
