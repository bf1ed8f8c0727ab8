"""Entry order placement and bounded fill tracking.

Client order ids are deterministic (``"{position_id}-{attempt}"``) so a retried
placement can never create a second broker order for the same attempt. The
local ``Order`` row is written before the broker call; a row that exists is
returned as-is and tracking resolves it at the broker by client order id.
"""

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tradeguard.config import settings
from tradeguard.database import engine
from tradeguard.engine.position_state import EXIT_ATTEMPT, load_position, update_position
from tradeguard.errors import BrokerError, ConcurrencyConflict, FillMismatch
from tradeguard.models.order import Fill, Order
from tradeguard.models.position import Position
from tradeguard.services import audit_ledger
from tradeguard.services.broker import BrokerOrder
from tradeguard.utils.constants import BROKER_TERMINAL_CANCELED, OrderStatus
from tradeguard.utils.retry import RetryPolicy, attempts

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (OrderStatus.FILLED.value, OrderStatus.CANCELED.value)
_POSITION_SYNC_ATTEMPTS = 3


def client_order_id_for(position_id: int, attempt: int) -> str:
    return f"{position_id}-{attempt}"


def local_status(broker_status: str, filled: int, quantity: int) -> OrderStatus:
    """Map a broker order state onto the local order lifecycle."""
    if broker_status == "filled" or (quantity > 0 and filled >= quantity):
        return OrderStatus.FILLED
    if broker_status in BROKER_TERMINAL_CANCELED:
        return OrderStatus.CANCELED
    if filled > 0 or broker_status == "partially_filled":
        return OrderStatus.PARTIALLY_FILLED
    return OrderStatus.NEW


def _find_order(client_order_id: str) -> Order | None:
    with Session(engine) as session:
        return session.exec(select(Order).where(Order.client_order_id == client_order_id)).first()


def _get_order(order_id: int) -> Order:
    with Session(engine) as session:
        order = session.get(Order, order_id)
        if order is None:
            raise BrokerError(f"Local order {order_id} not found")
        return order


async def place_order(
    position: Position,
    quantity: int,
    attempt: int,
    broker,
    order_type: str = "market",
    limit_price: float | None = None,
) -> Order:
    """Submit the entry order for ``attempt`` of a position, at most once."""
    client_order_id = client_order_id_for(position.id, attempt)
    existing = _find_order(client_order_id)
    if existing:
        logger.info(f"[order {client_order_id}] Already placed, returning existing order")
        return existing

    side = position.side_enum.entry_action
    raw_request = {
        "symbol": position.symbol,
        "side": side,
        "quantity": quantity,
        "order_type": order_type,
        "limit_price": limit_price,
        "client_order_id": client_order_id,
    }

    with Session(engine) as session:
        order = Order(
            position_id=position.id,
            client_order_id=client_order_id,
            attempt=attempt,
            order_type=order_type,
            side=side,
            quantity=quantity,
            raw_request=raw_request,
        )
        session.add(order)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent caller inserted the same attempt first
            session.rollback()
            return _find_order(client_order_id)
        session.refresh(order)
        order_id = order.id

    audit_ledger.append("system", "ORDER_SUBMIT_REQUESTED", "order", client_order_id, raw_request)

    try:
        broker_order = await broker.submit_order(
            symbol=position.symbol,
            side=side,
            quantity=quantity,
            client_order_id=client_order_id,
            order_type=order_type,
            limit_price=limit_price,
        )
    except BrokerError as e:
        _mark_canceled(order_id, f"submit failed: {e}", raw_response={"error": str(e), "status_code": e.status_code})
        audit_ledger.append(
            "system", "ORDER_SUBMIT_FAILED", "order", client_order_id,
            {"error": str(e), "status_code": e.status_code},
        )
        raise

    with Session(engine) as session:
        order = session.get(Order, order_id)
        order.broker_order_id = broker_order.order_id
        order.raw_response = broker_order.raw
        if broker_order.status in BROKER_TERMINAL_CANCELED:
            order.status = OrderStatus.CANCELED.value
        order.updated_at = datetime.now(timezone.utc)
        session.add(order)
        session.commit()
        session.refresh(order)

    audit_ledger.append(
        "system", "ORDER_SUBMITTED", "order", client_order_id,
        {"broker_order_id": broker_order.order_id, "status": broker_order.status},
    )
    logger.info(f"[order {client_order_id}] Submitted as {broker_order.order_id} ({broker_order.status})")
    return order


async def sync_order(order_id: int, broker) -> Order:
    """Poll the broker once and fold the observed state into the local order."""
    order = _get_order(order_id)
    if order.status in TERMINAL_STATUSES:
        return order
    if order.broker_order_id:
        broker_order = await broker.get_order(order.broker_order_id)
    else:
        broker_order = await broker.get_order_by_client_id(order.client_order_id)
    return apply_broker_state(order_id, broker_order)


def apply_broker_state(order_id: int, broker_order: BrokerOrder) -> Order:
    """Record new fills and the mapped status from one broker observation."""
    with Session(engine) as session:
        order = session.get(Order, order_id)
        reported = int(round(broker_order.filled_quantity or 0))
        if reported > order.quantity:
            raise FillMismatch(
                f"Broker reports {reported} filled for order {order.client_order_id} "
                f"of quantity {order.quantity}"
            )

        delta = reported - order.filled_quantity
        if delta > 0:
            price = _delta_price(order, reported, broker_order.filled_avg_price)
            session.add(Fill(order_id=order.id, price=price, quantity=delta))
            order.filled_quantity = reported
            order.avg_fill_price = broker_order.filled_avg_price or price
            logger.info(f"[order {order.client_order_id}] Filled {delta} @ {price} ({reported}/{order.quantity})")

        previous = order.status
        order.status = local_status(broker_order.status, order.filled_quantity, order.quantity).value
        order.broker_order_id = order.broker_order_id or broker_order.order_id
        order.raw_response = broker_order.raw or order.raw_response
        order.updated_at = datetime.now(timezone.utc)
        session.add(order)
        session.commit()
        session.refresh(order)

    if delta > 0 and order.attempt != EXIT_ATTEMPT:
        sync_position_from_fills(order.position_id)
    if order.status != previous and order.status in TERMINAL_STATUSES:
        audit_ledger.append(
            "system", f"ORDER_{order.status}", "order", order.client_order_id,
            {"filled_quantity": order.filled_quantity, "avg_fill_price": order.avg_fill_price},
        )
    return order


def _delta_price(order: Order, reported: int, avg_price: float | None) -> float:
    # Price of the newly filled slice, recovered from the running average
    if avg_price is None:
        return order.avg_fill_price or 0.0
    if order.filled_quantity and order.avg_fill_price:
        slice_notional = avg_price * reported - order.avg_fill_price * order.filled_quantity
        return slice_notional / (reported - order.filled_quantity)
    return avg_price


def sync_position_from_fills(position_id: int):
    """Set the position's filled quantity and average entry from its entry fills."""
    with Session(engine) as session:
        qty, notional = session.exec(
            select(func.coalesce(func.sum(Fill.quantity), 0), func.coalesce(func.sum(Fill.quantity * Fill.price), 0.0))
            .select_from(Fill)
            .join(Order, Fill.order_id == Order.id)
            .where(Order.position_id == position_id, Order.attempt != EXIT_ATTEMPT)
        ).one()

    if not qty:
        return
    for _ in range(_POSITION_SYNC_ATTEMPTS):
        position = load_position(position_id)
        if position is None or not position.is_open:
            logger.warning(f"[position {position_id}] Fill arrived after close; left for review")
            return
        try:
            update_position(position, quantity=int(qty), entry_price=notional / qty)
            return
        except ConcurrencyConflict:
            continue
    logger.error(f"[position {position_id}] Could not record fills after {_POSITION_SYNC_ATTEMPTS} attempts")


def _mark_canceled(order_id: int, reason: str, raw_response: dict | None = None) -> Order:
    with Session(engine) as session:
        order = session.get(Order, order_id)
        if order.status not in TERMINAL_STATUSES:
            order.status = OrderStatus.CANCELED.value
            order.updated_at = datetime.now(timezone.utc)
            if raw_response is not None:
                order.raw_response = raw_response
            session.add(order)
            session.commit()
            session.refresh(order)
            logger.info(f"[order {order.client_order_id}] Marked CANCELED: {reason}")
        return order


def abandon_unplaced_order(order_id: int) -> Order:
    """Cancel locally an order the broker has no record of."""
    order = _mark_canceled(order_id, "unknown at broker")
    audit_ledger.append(
        "system", "ORDER_CANCELED", "order", order.client_order_id,
        {"reason": "not_found_at_broker", "filled_quantity": order.filled_quantity},
    )
    return order


async def track_order(
    order_id: int,
    broker,
    max_attempts: int | None = None,
    poll_interval: float | None = None,
    deadline: float | None = None,
) -> Order:
    """Poll an order until it is terminal or the polling budget runs out.

    On exhaustion or deadline the remainder is canceled at the broker
    (best-effort) and the order is marked CANCELED locally.
    """
    max_attempts = max_attempts if max_attempts is not None else settings.order_poll_attempts
    poll_interval = poll_interval if poll_interval is not None else settings.order_poll_interval_seconds
    if deadline is None:
        deadline = settings.order_track_deadline_seconds
    policy = RetryPolicy.constant(max_attempts, poll_interval)

    async def poll() -> Order | None:
        async for attempt in attempts(policy):
            try:
                order = await sync_order(order_id, broker)
            except FillMismatch:
                raise
            except BrokerError as e:
                logger.warning(f"[order {order_id}] Status poll {attempt}/{max_attempts} failed: {e}")
                continue
            if order.status in TERMINAL_STATUSES:
                return order
        return None

    try:
        if deadline:
            result = await asyncio.wait_for(poll(), timeout=deadline)
        else:
            result = await poll()
    except asyncio.TimeoutError:
        logger.warning(f"[order {order_id}] Tracking deadline of {deadline}s reached")
        result = None
    except asyncio.CancelledError:
        _mark_canceled(order_id, "tracking cancelled")
        raise

    if result is not None:
        return result

    order = _get_order(order_id)
    if order.broker_order_id:
        try:
            await broker.cancel_order(order.broker_order_id)
        except BrokerError as e:
            logger.warning(f"[order {order.client_order_id}] Broker cancel failed: {e}")
    order = _mark_canceled(order_id, "polling budget exhausted")
    audit_ledger.append(
        "system", "ORDER_CANCELED", "order", order.client_order_id,
        {"reason": "tracking_exhausted", "filled_quantity": order.filled_quantity},
    )
    return order
