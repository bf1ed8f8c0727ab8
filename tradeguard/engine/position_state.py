"""Versioned position writes and the shared close path.

Every mutation of an OPEN position goes through ``conditional_update``, which
only matches the row at the version the caller read. A zero row count means
somebody else got there first (or the position is already closed) and is
reported as ``ConcurrencyConflict``.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from tradeguard.database import engine
from tradeguard.errors import BrokerError, ConcurrencyConflict, PersistenceError
from tradeguard.models.order import Order
from tradeguard.models.position import Position
from tradeguard.models.profit_take import ProfitTakeRequest
from tradeguard.services import audit_ledger
from tradeguard.services.risk_sizer import realized_pnl
from tradeguard.utils.constants import (
    CloseReason,
    LIVE_ORDER_STATUSES,
    OrderStatus,
    PositionStatus,
    ProfitTakeStatus,
)

logger = logging.getLogger(__name__)

EXIT_ATTEMPT = 0  # attempt number recorded on exit orders; entry attempts start at 1


def exit_client_order_id(position_id: int) -> str:
    return f"{position_id}-exit"


def conditional_update(session: Session, position: Position, **values: Any) -> int:
    """Apply ``values`` if the row still holds ``position.version`` and is OPEN.

    Returns the new version. Does not commit.
    """
    new_version = position.version + 1
    stmt = (
        update(Position)
        .where(
            Position.id == position.id,
            Position.version == position.version,
            Position.status == PositionStatus.OPEN.value,
        )
        .values(version=new_version, **values)
    )
    result = session.execute(stmt)
    if result.rowcount == 0:
        raise ConcurrencyConflict(
            f"Position {position.id} changed since version {position.version} was read"
        )
    return new_version


def update_position(position: Position, **values: Any) -> Position:
    """Conditional update in its own transaction; returns the fresh row."""
    with Session(engine) as session:
        conditional_update(session, position, **values)
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Position {position.id} update failed: {e}") from e
        fresh = session.get(Position, position.id, populate_existing=True)
        session.expunge(fresh)
        return fresh


def load_position(position_id: int) -> Position | None:
    with Session(engine) as session:
        position = session.get(Position, position_id)
        if position is not None:
            session.expunge(position)
        return position


def expire_pending_profit_takes(session: Session, position_id: int, now: datetime) -> int:
    """Mark every PENDING request of a position EXPIRED. Does not commit."""
    stmt = (
        update(ProfitTakeRequest)
        .where(
            ProfitTakeRequest.position_id == position_id,
            ProfitTakeRequest.status == ProfitTakeStatus.PENDING.value,
        )
        .values(status=ProfitTakeStatus.EXPIRED.value, decided_at=now)
    )
    return session.execute(stmt).rowcount


async def close_position(
    position: Position,
    reason: CloseReason,
    exit_price: float,
    broker=None,
    actor: str = "reconciler",
    now: datetime | None = None,
    metrics: dict[str, Any] | None = None,
) -> Position:
    """Close an OPEN position locally, audit it once, then exit at the broker.

    The local close commits first; the broker exit order is best-effort and a
    failure there is logged, not raised.
    """
    now = now or datetime.now(timezone.utc)
    pnl = realized_pnl(position.side, position.entry_price, exit_price, position.quantity)

    with Session(engine) as session:
        conditional_update(
            session,
            position,
            status=PositionStatus.CLOSED.value,
            close_reason=reason.value,
            closed_at=now,
            exit_price=exit_price,
            realized_pnl=pnl,
            last_price=exit_price,
        )
        expired = expire_pending_profit_takes(session, position.id, now)
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Close of position {position.id} failed: {e}") from e
        closed = session.get(Position, position.id, populate_existing=True)
        session.expunge(closed)

    payload = {
        "reason": reason.value,
        "symbol": position.symbol,
        "side": position.side,
        "quantity": position.quantity,
        "entry_price": position.entry_price,
        "exit_price": exit_price,
        "realized_pnl": pnl,
        "stop": position.current_stop,
        "trail_level": position.trail_level,
        "profit_takes_expired": expired,
    }
    if metrics:
        payload["metrics"] = metrics
    audit_ledger.append(actor, "POSITION_CLOSED", "position", position.id, payload)
    logger.info(
        f"[position {position.id}] Closed {position.symbol} ({reason.value}) "
        f"at {exit_price} PnL={pnl:.2f}"
    )

    if broker is not None:
        await _exit_at_broker(closed, broker)
    return closed


async def _exit_at_broker(position: Position, broker):
    """Cancel live entry orders and flatten the filled quantity."""
    with Session(engine) as session:
        live = session.exec(
            select(Order).where(
                Order.position_id == position.id,
                Order.status.in_([s.value for s in LIVE_ORDER_STATUSES]),
            )
        ).all()
        live_broker_ids = [o.broker_order_id for o in live if o.broker_order_id]

    for broker_order_id in live_broker_ids:
        try:
            await broker.cancel_order(broker_order_id)
        except BrokerError as e:
            logger.warning(f"[position {position.id}] Cancel of order {broker_order_id} failed: {e}")

    if position.quantity <= 0:
        return

    client_order_id = exit_client_order_id(position.id)
    with Session(engine) as session:
        existing = session.exec(
            select(Order).where(Order.client_order_id == client_order_id)
        ).first()
        if existing:
            logger.info(f"[order {client_order_id}] Exit already submitted, skipping")
            return

    side = position.side_enum.exit_action
    try:
        broker_order = await broker.submit_order(
            symbol=position.symbol,
            side=side,
            quantity=position.quantity,
            client_order_id=client_order_id,
        )
    except BrokerError as e:
        logger.error(f"[order {client_order_id}] Exit order failed, broker still holds the position: {e}")
        return

    with Session(engine) as session:
        session.add(
            Order(
                position_id=position.id,
                client_order_id=client_order_id,
                broker_order_id=broker_order.order_id,
                attempt=EXIT_ATTEMPT,
                side=side,
                quantity=position.quantity,
                status=OrderStatus.NEW.value,
                raw_request={"symbol": position.symbol, "side": side, "quantity": position.quantity},
                raw_response=broker_order.raw,
            )
        )
        session.commit()
