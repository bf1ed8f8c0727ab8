"""RiskLimit model: externally configured caps, read-only to the engine."""

from sqlmodel import SQLModel, Field


class RiskLimit(SQLModel, table=True):
    __tablename__ = "risk_limit"

    id: int | None = Field(default=None, primary_key=True)
    scope: str  # LimitScope value: "TRADE" or "GROUP"
    cap_type: str  # CapType value: "PCT" or "USD"
    value: float
    group: str | None = None  # GROUP scope only; None applies to every group
    active: bool = True
