"""Credential model: encrypted broker API credentials."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Credential(SQLModel, table=True):
    __tablename__ = "credential"

    id: int | None = Field(default=None, primary_key=True)
    name: str = "default"
    api_key_id: str
    secret_encrypted: str = ""  # Fernet-encrypted API secret
    paper: bool = True
    base_url: str | None = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
