"""Pydantic schemas for the opportunities API."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from tradeguard.schemas.plan import EntryPlan
from tradeguard.utils.constants import Side, VALID_TIMEFRAMES


class OpportunityCreate(BaseModel):
    symbol: str = Field(min_length=1, max_length=20)
    side: Side
    timeframe: str = "1d"
    entry_price: float
    stop_price: float
    target_price: float
    correlation_group: str | None = None
    expected_return: float | None = None
    confidence: float | None = Field(default=None, ge=0, le=1)

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("timeframe")
    @classmethod
    def _validate_timeframe(cls, value: str) -> str:
        if value not in VALID_TIMEFRAMES:
            raise ValueError(f"must be one of {VALID_TIMEFRAMES}")
        return value

    @model_validator(mode="after")
    def _validate_plan(self):
        EntryPlan(side=self.side, entry=self.entry_price, stop=self.stop_price, target=self.target_price)
        return self


class OpportunityRead(BaseModel):
    id: int
    symbol: str
    side: str
    timeframe: str
    entry_price: float
    stop_price: float
    target_price: float
    correlation_group: str | None
    expected_return: float | None
    confidence: float | None
    ai_summary: str | None
    ai_risks: str | None
    status: str
    rejection_reason: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class ApproveRequest(BaseModel):
    qty: int


class RejectRequest(BaseModel):
    reason: str | None = None


class StatusRequest(BaseModel):
    status: str
    reason: str | None = None
