"""Human decisions: opportunity approval/rejection, manual close, profit-takes."""

import logging
from datetime import datetime, timezone

import pydantic
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tradeguard.config import settings
from tradeguard.database import engine
from tradeguard.engine.order_tracker import place_order, track_order
from tradeguard.engine.position_state import close_position, load_position
from tradeguard.errors import (
    BrokerError,
    ConcurrencyConflict,
    NotFoundError,
    PersistenceError,
    RiskLimitExceeded,
    ValidationError,
)
from tradeguard.models.idempotency import IdempotencyRecord
from tradeguard.models.opportunity import Opportunity
from tradeguard.models.position import Position
from tradeguard.models.profit_take import ProfitTakeRequest
from tradeguard.services import audit_ledger
from tradeguard.services.risk_sizer import as_utc, day_window, risk_budget_used, size_with_caps, week_window
from tradeguard.utils.constants import CloseReason, OpportunityStatus, ProfitTakeStatus

logger = logging.getLogger(__name__)


def _resolve_broker(broker):
    if broker is not None:
        return broker
    from tradeguard.services.broker import get_broker

    return get_broker()


def _replayed(idempotency_key: str | None) -> IdempotencyRecord | None:
    if not idempotency_key:
        return None
    with Session(engine) as session:
        return session.get(IdempotencyRecord, idempotency_key)


def _sizing_cap(equity: float, per_unit_risk: float, now: datetime) -> int:
    with Session(engine) as session:
        positions = session.exec(select(Position)).all()
    day_used = risk_budget_used(positions, *day_window(now))
    week_used = risk_budget_used(positions, *week_window(now))
    return size_with_caps(
        equity,
        per_unit_risk,
        day_used,
        week_used,
        per_trade_pct=settings.per_trade_risk_pct,
        day_pct=settings.day_risk_pct,
        week_pct=settings.week_risk_pct,
    )


async def approve_opportunity(
    opportunity_id: int,
    qty: int,
    idempotency_key: str | None = None,
    broker=None,
    actor: str = "operator",
) -> dict:
    """Approve an opportunity, open its position and place the entry order.

    A known idempotency key returns the original trade id with no side
    effects. Sizing is checked before anything is written.
    """
    record = _replayed(idempotency_key)
    if record:
        logger.info(f"[approve] Replay of key {idempotency_key} -> trade {record.entity_id}")
        return {"trade_id": record.entity_id, "replayed": True}

    if qty is None or qty <= 0:
        raise ValidationError("qty must be a positive integer")

    with Session(engine) as session:
        opp = session.get(Opportunity, opportunity_id)
    if opp is None:
        raise NotFoundError(f"Opportunity {opportunity_id} not found")
    if opp.status != OpportunityStatus.PENDING_APPROVAL.value:
        raise ValidationError(f"Opportunity {opportunity_id} is {opp.status}, not PENDING_APPROVAL")
    try:
        plan = opp.plan
    except pydantic.ValidationError as e:
        raise ValidationError(f"Opportunity {opportunity_id} has an invalid plan: {e}") from e

    broker = _resolve_broker(broker)
    now = datetime.now(timezone.utc)
    equity = await broker.get_equity()
    cap = _sizing_cap(equity, plan.per_unit_risk, now)
    if qty > cap:
        raise RiskLimitExceeded(qty, cap)

    with Session(engine) as session:
        marked = session.execute(
            update(Opportunity)
            .where(
                Opportunity.id == opportunity_id,
                Opportunity.status == OpportunityStatus.PENDING_APPROVAL.value,
            )
            .values(status=OpportunityStatus.APPROVED.value)
        )
        if marked.rowcount == 0:
            raise ConcurrencyConflict(f"Opportunity {opportunity_id} was decided concurrently")

        position = Position(
            opportunity_id=opp.id,
            symbol=opp.symbol,
            side=plan.side.value,
            requested_quantity=qty,
            correlation_group=opp.correlation_group or opp.symbol,
            entry_price=plan.entry,
            target_price=plan.target,
            current_stop=plan.stop,
            initial_stop=plan.stop,
            opened_at=now,
        )
        session.add(position)
        session.flush()
        if idempotency_key:
            session.add(IdempotencyRecord(key=idempotency_key, entity_type="position", entity_id=position.id))
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            record = _replayed(idempotency_key)
            if record:
                return {"trade_id": record.entity_id, "replayed": True}
            raise PersistenceError(f"Approval of opportunity {opportunity_id} failed: {e}") from e
        session.refresh(position)
        session.expunge(position)

    audit_ledger.append(
        actor, "OPPORTUNITY_APPROVED", "opportunity", opportunity_id,
        {
            "trade_id": position.id,
            "qty": qty,
            "cap": cap,
            "equity": equity,
            "entry": plan.entry,
            "stop": plan.stop,
            "target": plan.target,
            "idempotency_key": idempotency_key,
        },
    )
    logger.info(f"[approve] Opportunity {opportunity_id} approved: {qty} {opp.symbol} (cap {cap})")

    order = await place_order(position, qty, 1, broker)
    order = await track_order(order.id, broker)
    return {
        "trade_id": position.id,
        "order_id": order.id,
        "order_status": order.status,
        "filled_quantity": order.filled_quantity,
    }


def reject_opportunity(opportunity_id: int, reason: str | None = None, actor: str = "operator") -> Opportunity:
    return _decide_opportunity(opportunity_id, OpportunityStatus.REJECTED, reason, actor, "OPPORTUNITY_REJECTED")


def set_opportunity_status(
    opportunity_id: int,
    status: str,
    reason: str | None = None,
    actor: str = "operator",
) -> Opportunity:
    """Move a pending opportunity to REJECTED or EXPIRED.

    Approval has its own path because it sizes and places an order.
    """
    try:
        target = OpportunityStatus(status)
    except ValueError as e:
        raise ValidationError(f"Unknown opportunity status {status!r}") from e
    if target in (OpportunityStatus.APPROVED, OpportunityStatus.PENDING_APPROVAL):
        raise ValidationError(f"Status {target.value} cannot be set directly")
    return _decide_opportunity(opportunity_id, target, reason, actor, "OPPORTUNITY_STATUS_CHANGED")


def _decide_opportunity(
    opportunity_id: int,
    status: OpportunityStatus,
    reason: str | None,
    actor: str,
    action: str,
) -> Opportunity:
    with Session(engine) as session:
        opp = session.get(Opportunity, opportunity_id)
        if opp is None:
            raise NotFoundError(f"Opportunity {opportunity_id} not found")
        if opp.status != OpportunityStatus.PENDING_APPROVAL.value:
            raise ValidationError(f"Opportunity {opportunity_id} is already {opp.status}")
        opp.status = status.value
        opp.rejection_reason = reason
        session.add(opp)
        session.commit()
        session.refresh(opp)

    audit_ledger.append(actor, action, "opportunity", opportunity_id, {"status": status.value, "reason": reason})
    logger.info(f"[opportunity {opportunity_id}] {status.value}: {reason or '-'}")
    return opp


async def close_position_manually(position_id: int, broker=None, actor: str = "operator") -> Position:
    position = load_position(position_id)
    if position is None:
        raise NotFoundError(f"Position {position_id} not found")
    if not position.is_open:
        raise ValidationError(f"Position {position_id} is already {position.status}")

    broker = _resolve_broker(broker)
    price = await broker.get_latest_price(position.symbol)
    exit_price = price or position.last_price or position.entry_price
    return await close_position(position, CloseReason.MANUAL, exit_price, broker=broker, actor=actor)


# ---------------------------------------------------------------------------
# Profit-take requests
# ---------------------------------------------------------------------------

def list_pending_profit_takes() -> list[ProfitTakeRequest]:
    with Session(engine) as session:
        return list(
            session.exec(
                select(ProfitTakeRequest)
                .where(ProfitTakeRequest.status == ProfitTakeStatus.PENDING.value)
                .order_by(ProfitTakeRequest.created_at)
            ).all()
        )


def _check_pending(req: ProfitTakeRequest | None, request_id: int, now: datetime) -> ProfitTakeRequest:
    if req is None:
        raise NotFoundError(f"Profit-take request {request_id} not found")
    if req.status != ProfitTakeStatus.PENDING.value:
        raise ValidationError(f"Profit-take request {request_id} is already {req.status}")
    if as_utc(req.expires_at) <= now:
        raise ValidationError(f"Profit-take request {request_id} expired at {req.expires_at}")
    return req


def _decide_profit_take(request_id: int, status: ProfitTakeStatus, now: datetime) -> ProfitTakeRequest:
    with Session(engine) as session:
        req = _check_pending(session.get(ProfitTakeRequest, request_id), request_id, now)
        decided = session.execute(
            update(ProfitTakeRequest)
            .where(
                ProfitTakeRequest.id == request_id,
                ProfitTakeRequest.status == ProfitTakeStatus.PENDING.value,
            )
            .values(status=status.value, decided_at=now)
        )
        if decided.rowcount == 0:
            raise ConcurrencyConflict(f"Profit-take request {request_id} was decided concurrently")
        session.commit()
        session.refresh(req)
        return req


async def approve_profit_take(request_id: int, broker=None, actor: str = "operator") -> Position:
    """Approve a pending request and close its position with TARGET.

    Everything that can refuse the approval runs before the request is
    marked APPROVED, so a refused approval leaves it PENDING.
    """
    now = datetime.now(timezone.utc)
    with Session(engine) as session:
        req = _check_pending(session.get(ProfitTakeRequest, request_id), request_id, now)
        position_id, requested_price = req.position_id, req.price

    position = load_position(position_id)
    if position is None or not position.is_open:
        raise ValidationError(f"Position {position_id} is no longer open")

    broker = _resolve_broker(broker)
    try:
        price = await broker.get_latest_price(position.symbol)
    except BrokerError as e:
        logger.warning(f"[position {position_id}] Price fetch failed, using requested price: {e}")
        price = None

    _decide_profit_take(request_id, ProfitTakeStatus.APPROVED, now)
    audit_ledger.append(actor, "PROFIT_TAKE_APPROVED", "profit_take_request", request_id,
                        {"position_id": position_id, "price": requested_price})
    return await close_position(
        position, CloseReason.TARGET, price or requested_price, broker=broker, actor=actor, now=now,
        metrics={"profit_take_request_id": request_id, "requested_price": requested_price},
    )


def deny_profit_take(request_id: int, actor: str = "operator") -> ProfitTakeRequest:
    req = _decide_profit_take(request_id, ProfitTakeStatus.DENIED, datetime.now(timezone.utc))
    audit_ledger.append(actor, "PROFIT_TAKE_DENIED", "profit_take_request", request_id,
                        {"position_id": req.position_id})
    return req
