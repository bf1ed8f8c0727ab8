"""Kill switch: cancel broker orders, liquidate, and close every local position."""

import logging
from datetime import datetime, timezone

from sqlalchemy import case, update
from sqlmodel import Session, select

from tradeguard.database import engine
from tradeguard.models.order import Order
from tradeguard.models.position import Position
from tradeguard.models.profit_take import ProfitTakeRequest
from tradeguard.services import audit_ledger
from tradeguard.utils.constants import (
    CloseReason,
    LIVE_ORDER_STATUSES,
    OrderStatus,
    PositionStatus,
    ProfitTakeStatus,
    Side,
)

logger = logging.getLogger(__name__)


async def trigger_kill_switch(broker=None, actor: str = "operator", reason: str | None = None) -> dict:
    """Flatten everything.

    Broker failures are collected in ``errors`` and never stop the local
    close. Running it again closes nothing new.

    Returns dict with orders_canceled, positions_closed,
    broker_positions_liquidated, local_orders_canceled and errors.
    """
    result = {
        "orders_canceled": 0,
        "positions_closed": 0,
        "broker_positions_liquidated": 0,
        "local_orders_canceled": 0,
        "errors": [],
    }

    if broker is None:
        from tradeguard.services.broker import get_broker

        try:
            broker = get_broker()
        except Exception as e:
            error_msg = f"No broker available: {e}"
            logger.error(f"[kill_switch] {error_msg}")
            result["errors"].append(error_msg)

    if broker is not None:
        try:
            result["orders_canceled"] = await broker.cancel_all_orders()
        except Exception as e:
            error_msg = f"Cancel all orders failed: {e}"
            logger.error(f"[kill_switch] {error_msg}", exc_info=True)
            result["errors"].append(error_msg)

        try:
            result["broker_positions_liquidated"] = await broker.close_all_positions()
        except Exception as e:
            error_msg = f"Liquidate all positions failed: {e}"
            logger.error(f"[kill_switch] {error_msg}", exc_info=True)
            result["errors"].append(error_msg)

    now = datetime.now(timezone.utc)
    with Session(engine) as session:
        position_ids = session.exec(
            select(Position.id).where(Position.status != PositionStatus.CLOSED.value)
        ).all()

        # Exit at the last observed price; PnL stays unknown without one
        pnl = case(
            (Position.side == Side.LONG.value, (Position.last_price - Position.entry_price) * Position.quantity),
            else_=(Position.entry_price - Position.last_price) * Position.quantity,
        )
        closed = session.execute(
            update(Position)
            .where(Position.status != PositionStatus.CLOSED.value)
            .values(
                status=PositionStatus.CLOSED.value,
                close_reason=CloseReason.KILL_SWITCH.value,
                closed_at=now,
                exit_price=Position.last_price,
                realized_pnl=pnl,
                version=Position.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result["positions_closed"] = closed.rowcount

        orders = session.execute(
            update(Order)
            .where(Order.status.in_([s.value for s in LIVE_ORDER_STATUSES]))
            .values(status=OrderStatus.CANCELED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result["local_orders_canceled"] = orders.rowcount

        session.execute(
            update(ProfitTakeRequest)
            .where(ProfitTakeRequest.status == ProfitTakeStatus.PENDING.value)
            .values(status=ProfitTakeStatus.EXPIRED.value, decided_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()

    audit_ledger.append(
        actor,
        "KILL_SWITCH_TRIGGERED",
        "system",
        "kill_switch",
        {**result, "reason": reason, "position_ids": list(position_ids)},
    )
    logger.warning(
        f"[kill_switch] Triggered by {actor}: {result['positions_closed']} positions closed, "
        f"{result['orders_canceled']} broker orders canceled, {len(result['errors'])} errors"
    )
    return result
