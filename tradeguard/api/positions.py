"""Positions API: open book, portfolio PnL, manual close."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from tradeguard.api.deps import get_broker_client
from tradeguard.database import get_session
from tradeguard.engine import approvals
from tradeguard.engine.portfolio import get_portfolio_pnl, list_open_positions
from tradeguard.models.order import Fill, Order
from tradeguard.models.position import Position

router = APIRouter(prefix="/api/positions", tags=["positions"])


@router.get("")
def list_positions(
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(Position).order_by(Position.opened_at.desc())
    if status is not None:
        stmt = stmt.where(Position.status == status)
    return session.exec(stmt.offset(offset).limit(limit)).all()


@router.get("/open")
def open_positions():
    return list_open_positions()


@router.get("/pnl")
def portfolio_pnl():
    return get_portfolio_pnl()


@router.get("/{position_id}")
def get_position(position_id: int, session: Session = Depends(get_session)):
    """Position with its orders and fills."""
    position = session.get(Position, position_id)
    if not position:
        raise HTTPException(status_code=404, detail="Position not found")
    orders = session.exec(select(Order).where(Order.position_id == position_id).order_by(Order.id)).all()
    order_ids = [o.id for o in orders]
    fills = session.exec(select(Fill).where(Fill.order_id.in_(order_ids))).all() if order_ids else []  # type: ignore[attr-defined]
    return {"position": position, "orders": orders, "fills": fills}


@router.post("/{position_id}/close")
async def close_position(position_id: int, broker=Depends(get_broker_client)):
    """Manually close an open position."""
    return await approvals.close_position_manually(position_id, broker=broker)
