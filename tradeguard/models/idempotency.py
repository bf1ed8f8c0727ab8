"""IdempotencyRecord model: external request key -> created entity."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class IdempotencyRecord(SQLModel, table=True):
    __tablename__ = "idempotency_record"

    key: str = Field(primary_key=True, max_length=255)
    entity_type: str
    entity_id: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
