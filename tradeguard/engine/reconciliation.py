"""Periodic reconciliation of open positions.

This is the function APScheduler calls on each interval. One tick:
price fetch -> per-position rule evaluation -> placement recovery ->
portfolio breach check -> TickLog row.

Rules per position: an expired profit-take tightens one step and evaluation
continues. Then, first match wins: RISK -> STOP -> TARGET (request approval,
no close) -> MAX_LOSS -> TTL -> trailing-stop ratchet.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from tradeguard.config import settings
from tradeguard.database import engine
from tradeguard.engine.order_tracker import (
    TERMINAL_STATUSES,
    abandon_unplaced_order,
    place_order,
    sync_order,
    track_order,
)
from tradeguard.engine.position_state import EXIT_ATTEMPT, close_position, load_position, update_position
from tradeguard.errors import BrokerError, ConcurrencyConflict, NoMarketData
from tradeguard.models.order import Order
from tradeguard.models.position import Position
from tradeguard.models.profit_take import ProfitTakeRequest
from tradeguard.models.risk_limit import RiskLimit
from tradeguard.models.tick_log import TickLog
from tradeguard.schemas.plan import StopState
from tradeguard.services import audit_ledger
from tradeguard.services.kill_switch import trigger_kill_switch
from tradeguard.services.risk_sizer import as_utc, exposure_by_group, unrealized_pnl
from tradeguard.services.trailing_stop import (
    fallback_level,
    initial_risk,
    next_trail_level,
    r_multiple,
    ratchet,
    trail_stop,
)
from tradeguard.utils.constants import (
    CapType,
    CloseReason,
    LIVE_ORDER_STATUSES,
    LimitScope,
    PositionStatus,
    ProfitTakeStatus,
    Side,
)

logger = logging.getLogger(__name__)
_tick_lock = asyncio.Lock()


@dataclass
class TickResult:
    closed_count: int = 0
    kill_switch_triggered: bool = False
    evaluated: int = 0
    skipped: int = 0
    errors: int = 0
    status: str = "success"
    closed: dict[int, str] = field(default_factory=dict)
    breaches: list[str] = field(default_factory=list)


async def run_reconciliation_tick(broker=None, now: datetime | None = None) -> TickResult:
    """Run one tick, skipping if a prior tick is still in-flight."""
    if _tick_lock.locked():
        logger.warning("[reconcile] Skipping overlapping tick")
        result = TickResult(status="skipped")
        _log_tick(result, datetime.now(timezone.utc), message="Previous tick still in progress")
        return result

    async with _tick_lock:
        return await _run_tick_once(broker, now)


async def _run_tick_once(broker, now: datetime | None) -> TickResult:
    started = datetime.now(timezone.utc)
    now = now or started
    result = TickResult()

    if broker is None:
        from tradeguard.services.broker import get_broker

        try:
            broker = get_broker()
        except Exception as e:
            logger.error(f"[reconcile] No broker available: {e}")
            result.status = "error"
            _log_tick(result, started, message=f"No broker available: {e}")
            return result

    limits = _load_limits()
    with Session(engine) as session:
        positions = session.exec(
            select(Position)
            .where(Position.status == PositionStatus.OPEN.value, Position.quantity > 0)
            .order_by(Position.id)
        ).all()

    logger.info(f"[reconcile] Tick started with {len(positions)} filled open positions")

    for position in positions:
        result.evaluated += 1
        try:
            reason = await evaluate_position(position, broker, limits, now)
            if reason is not None:
                result.closed_count += 1
                result.closed[position.id] = reason.value
        except NoMarketData as e:
            result.skipped += 1
            logger.warning(f"[reconcile] Position {position.id} skipped: {e}")
        except ConcurrencyConflict as e:
            result.skipped += 1
            logger.info(f"[reconcile] Position {position.id} changed underneath, retrying next tick: {e}")
        except Exception as e:
            result.errors += 1
            logger.error(f"[reconcile] Position {position.id} failed: {e}", exc_info=True)

    try:
        await recover_placements(broker)
    except Exception as e:
        result.errors += 1
        logger.error(f"[reconcile] Placement recovery failed: {e}", exc_info=True)

    result.breaches = check_portfolio(limits)
    if result.breaches:
        await _handle_breach(result, broker)

    if result.errors:
        result.status = "error"
    _log_tick(result, started)
    logger.info(
        f"[reconcile] Tick done: evaluated={result.evaluated} closed={result.closed_count} "
        f"skipped={result.skipped} errors={result.errors}"
    )
    return result


# ---------------------------------------------------------------------------
# Per-position rules
# ---------------------------------------------------------------------------

async def evaluate_position(
    position: Position,
    broker,
    limits: list[RiskLimit],
    now: datetime,
) -> CloseReason | None:
    """Apply the rule chain to one position; returns the close reason if closed."""
    price = await broker.get_latest_price(position.symbol)
    if price is None or price <= 0:
        raise NoMarketData(position.symbol)

    position = update_position(position, last_price=price)
    side = position.side_enum
    entry, initial, qty = position.entry_price, position.initial_stop, position.quantity
    r = initial_risk(entry, initial)
    rm = r_multiple(entry, initial, price, side)
    metrics = {"price": price, "r": r, "r_multiple": rm}

    if _expire_lapsed_profit_takes(position.id, now) and r > 0:
        position = _tighten(position, fallback_level(position.trail_level), "profit_take_expired")

    breach = risk_limit_breach(position, limits)
    if breach:
        metrics["limit"] = breach
        return await _close(position, CloseReason.RISK, price, broker, now, metrics)

    if stop_crossed(side, price, position.current_stop):
        return await _close(position, CloseReason.STOP, price, broker, now, metrics)

    skip_trailing = False
    if position.target_price is not None and target_reached(side, price, position.target_price):
        request_profit_take(position, price, now)
        skip_trailing = True

    pnl = unrealized_pnl(side, entry, price, qty)
    if r > 0 and pnl <= -r * qty:
        metrics["unrealized_pnl"] = pnl
        return await _close(position, CloseReason.MAX_LOSS, price, broker, now, metrics)

    age = now - as_utc(position.opened_at)
    if age > timedelta(hours=settings.max_holding_hours):
        metrics["age_hours"] = age.total_seconds() / 3600
        return await _close(position, CloseReason.TTL, price, broker, now, metrics)

    if not skip_trailing:
        level = next_trail_level(rm, position.trail_level)
        if level is not None:
            _tighten(position, level, "r_multiple", rm)
    return None


def stop_crossed(side: Side, price: float, stop: float) -> bool:
    return price <= stop if side is Side.LONG else price >= stop


def target_reached(side: Side, price: float, target: float) -> bool:
    return price >= target if side is Side.LONG else price <= target


def risk_limit_breach(position: Position, limits: list[RiskLimit]) -> dict | None:
    """First active TRADE limit the position's stop distance violates."""
    distance = abs(position.entry_price - position.current_stop)
    for limit in limits:
        if limit.scope != LimitScope.TRADE.value:
            continue
        if limit.cap_type == CapType.PCT.value:
            risk_pct = distance / position.entry_price * 100 if position.entry_price else 0.0
            if risk_pct > limit.value:
                return {"id": limit.id, "cap_type": limit.cap_type, "value": limit.value, "observed": risk_pct}
        elif limit.cap_type == CapType.USD.value:
            risk_usd = distance * position.quantity
            if risk_usd > limit.value:
                return {"id": limit.id, "cap_type": limit.cap_type, "value": limit.value, "observed": risk_usd}
    return None


async def _close(position, reason, price, broker, now, metrics) -> CloseReason:
    await close_position(position, reason, price, broker=broker, now=now, metrics=metrics)
    return reason


def _tighten(position: Position, level: float, trigger: str, rm: float | None = None) -> Position:
    side = position.side_enum
    candidate = trail_stop(position.entry_price, position.initial_stop, level, side)
    new_stop = ratchet(position.current_stop, candidate, side)
    state = StopState(stop=new_stop, initial=position.initial_stop, trail_level=level)
    fresh = update_position(position, trail_level=state.trail_level, current_stop=state.stop)
    audit_ledger.append(
        "reconciler", "STOP_TRAILED", "position", position.id,
        {
            "trigger": trigger,
            "from_level": position.trail_level,
            "to_level": level,
            "from_stop": position.current_stop,
            "to_stop": new_stop,
            "r_multiple": rm,
        },
    )
    logger.info(
        f"[position {position.id}] Trail {position.trail_level} -> {level}, "
        f"stop {position.current_stop} -> {new_stop} ({trigger})"
    )
    return fresh


def _expire_lapsed_profit_takes(position_id: int, now: datetime) -> int:
    with Session(engine) as session:
        pending = session.exec(
            select(ProfitTakeRequest).where(
                ProfitTakeRequest.position_id == position_id,
                ProfitTakeRequest.status == ProfitTakeStatus.PENDING.value,
            )
        ).all()
        lapsed = [req for req in pending if as_utc(req.expires_at) <= now]
        for req in lapsed:
            req.status = ProfitTakeStatus.EXPIRED.value
            req.decided_at = now
            session.add(req)
        session.commit()
        lapsed_ids = [req.id for req in lapsed]

    for req_id in lapsed_ids:
        audit_ledger.append("reconciler", "PROFIT_TAKE_EXPIRED", "profit_take_request", req_id,
                            {"position_id": position_id})
    return len(lapsed_ids)


def request_profit_take(position: Position, price: float, now: datetime) -> ProfitTakeRequest | None:
    """Create a PENDING approval request unless one is already waiting."""
    with Session(engine) as session:
        existing = session.exec(
            select(ProfitTakeRequest).where(
                ProfitTakeRequest.position_id == position.id,
                ProfitTakeRequest.status == ProfitTakeStatus.PENDING.value,
            )
        ).first()
        if existing:
            return None

        req = ProfitTakeRequest(
            position_id=position.id,
            price=price,
            created_at=now,
            expires_at=now + timedelta(seconds=settings.profit_take_grace_seconds),
        )
        session.add(req)
        try:
            session.commit()
        except IntegrityError:
            # Partial unique index: another writer created the pending request
            session.rollback()
            return None
        session.refresh(req)

    audit_ledger.append(
        "reconciler", "PROFIT_TAKE_REQUESTED", "profit_take_request", req.id,
        {"position_id": position.id, "price": price, "expires_at": req.expires_at},
    )
    logger.info(f"[position {position.id}] Target reached at {price}, approval requested")
    return req


# ---------------------------------------------------------------------------
# Placement recovery
# ---------------------------------------------------------------------------

async def recover_placements(broker):
    """Re-place entry orders for open positions that never got a fill."""
    with Session(engine) as session:
        positions = session.exec(
            select(Position).where(
                Position.status == PositionStatus.OPEN.value,
                Position.quantity == 0,
                Position.needs_review == False,  # noqa: E712
            )
        ).all()

    for position in positions:
        with Session(engine) as session:
            orders = session.exec(
                select(Order).where(Order.position_id == position.id, Order.attempt != EXIT_ATTEMPT)
            ).all()

        live = [o for o in orders if o.status in [s.value for s in LIVE_ORDER_STATUSES]]
        if live:
            # Left behind by an interrupted approval; fold in whatever the broker reports
            if await _resolve_live_orders(live, broker):
                continue
            fresh = load_position(position.id)
            if fresh is None or not fresh.is_open or fresh.quantity > 0:
                continue

        last_attempt = max((o.attempt for o in orders), default=0)
        if last_attempt >= settings.max_order_attempts:
            _flag_for_review(position, last_attempt)
            continue

        attempt = last_attempt + 1
        logger.info(f"[position {position.id}] Re-placing entry order, attempt {attempt}")
        try:
            order = await place_order(position, position.requested_quantity, attempt, broker)
            await track_order(order.id, broker)
        except BrokerError as e:
            logger.error(f"[position {position.id}] Entry attempt {attempt} failed: {e}")


async def _resolve_live_orders(orders: list[Order], broker) -> bool:
    """Sync each live order; True while any of them is still working at the broker."""
    still_live = False
    for order in orders:
        try:
            synced = await sync_order(order.id, broker)
        except BrokerError as e:
            if e.status_code == 404 and not order.broker_order_id:
                # Row committed but the submit never reached the broker
                logger.warning(f"[order {order.client_order_id}] Unknown at broker, abandoning attempt")
                abandon_unplaced_order(order.id)
                continue
            logger.warning(f"[order {order.client_order_id}] Recovery poll failed: {e}")
            still_live = True
            continue
        if synced.status not in TERMINAL_STATUSES:
            still_live = True
    return still_live


def _flag_for_review(position: Position, attempts_made: int):
    try:
        update_position(position, needs_review=True)
    except ConcurrencyConflict:
        return
    audit_ledger.append(
        "reconciler", "POSITION_FLAGGED_FOR_REVIEW", "position", position.id,
        {"attempts": attempts_made, "requested_quantity": position.requested_quantity},
    )
    logger.error(
        f"[position {position.id}] No fill after {attempts_made} attempts, flagged for review"
    )


# ---------------------------------------------------------------------------
# Portfolio breach
# ---------------------------------------------------------------------------

def check_portfolio(limits: list[RiskLimit]) -> list[str]:
    """Describe every portfolio-level limit currently exceeded."""
    with Session(engine) as session:
        open_positions = session.exec(
            select(Position).where(Position.status == PositionStatus.OPEN.value)
        ).all()

    breaches = []
    if len(open_positions) > settings.max_open_positions:
        breaches.append(
            f"open positions {len(open_positions)} exceed maximum {settings.max_open_positions}"
        )

    group_limits = [
        lim for lim in limits
        if lim.scope == LimitScope.GROUP.value and lim.cap_type == CapType.USD.value
    ]
    if group_limits:
        for group, exposure in exposure_by_group(open_positions).items():
            caps = [lim.value for lim in group_limits if lim.group in (None, group)]
            if caps and abs(exposure) > min(caps):
                breaches.append(f"group {group} exposure {abs(exposure):.2f} exceeds cap {min(caps):.2f}")
    return breaches


async def _handle_breach(result: TickResult, broker):
    action = settings.breach_action
    audit_ledger.append(
        "reconciler", "PORTFOLIO_BREACH", "system", "portfolio",
        {"breaches": result.breaches, "action": action},
    )
    logger.error(f"[reconcile] Portfolio breach ({action}): {'; '.join(result.breaches)}")
    if action == "log_only":
        return
    await trigger_kill_switch(broker, actor="reconciler", reason="; ".join(result.breaches))
    result.kill_switch_triggered = True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_limits() -> list[RiskLimit]:
    with Session(engine) as session:
        return list(session.exec(select(RiskLimit).where(RiskLimit.active == True)).all())  # noqa: E712


def _log_tick(result: TickResult, started: datetime, message: str | None = None):
    """Write a TickLog entry."""
    details = asdict(result)
    details["closed"] = {str(k): v for k, v in result.closed.items()}
    with Session(engine) as session:
        session.add(
            TickLog(
                started_at=started,
                finished_at=datetime.now(timezone.utc),
                status=result.status,
                evaluated=result.evaluated,
                closed=result.closed_count,
                skipped=result.skipped,
                errors=result.errors,
                kill_switch_triggered=result.kill_switch_triggered,
                message=message or "; ".join(result.breaches) or None,
                details=details,
            )
        )
        session.commit()
