"""Portfolio read models for the positions API."""

from datetime import datetime, timezone

from sqlmodel import Session, select

from tradeguard.database import engine
from tradeguard.models.position import Position
from tradeguard.services.risk_sizer import (
    daily_pnl,
    exposure_by_group,
    total_open_risk,
    unrealized_pnl,
    weekly_pnl,
)
from tradeguard.utils.constants import PositionStatus


def list_open_positions() -> list[Position]:
    with Session(engine) as session:
        return list(
            session.exec(
                select(Position)
                .where(Position.status == PositionStatus.OPEN.value)
                .order_by(Position.opened_at)
            ).all()
        )


def get_portfolio_pnl(reference: datetime | None = None) -> dict:
    """Realized day/week PnL plus open exposure, risk and unrealized PnL."""
    reference = reference or datetime.now(timezone.utc)
    with Session(engine) as session:
        closed = session.exec(
            select(Position).where(Position.status == PositionStatus.CLOSED.value)
        ).all()
    open_positions = list_open_positions()

    unrealized = sum(
        unrealized_pnl(p.side, p.entry_price, p.last_price, p.quantity)
        for p in open_positions
        if p.last_price is not None
    )
    return {
        "daily_pnl": round(daily_pnl(closed, reference), 2),
        "weekly_pnl": round(weekly_pnl(closed, reference), 2),
        "realized_pnl": round(sum(p.realized_pnl or 0.0 for p in closed), 2),
        "unrealized_pnl": round(unrealized, 2),
        "open_positions": len(open_positions),
        "open_risk": round(total_open_risk(open_positions), 2),
        "exposure_by_group": {g: round(v, 2) for g, v in exposure_by_group(open_positions).items()},
    }
