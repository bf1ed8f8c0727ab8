"""Risk-capped position sizing and portfolio exposure metrics.

Pure functions: nothing here touches the database or the broker. Inputs that
describe positions only need ``symbol``, ``side``, ``quantity`` and the price
fields the metric reads, so both ``Position`` rows and ``PositionView``
snapshots work.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable

from tradeguard.utils.constants import Side


@dataclass(frozen=True)
class PositionView:
    """Minimal position snapshot for exposure/risk math."""

    symbol: str
    quantity: float
    price: float
    side: Side = Side.LONG
    group: str | None = None
    entry: float | None = None
    stop: float | None = None

    @property
    def correlation_group(self) -> str:
        return self.group or self.symbol


def size_by_volatility(equity: float, per_unit_risk_usd: float, max_risk_pct: float) -> int:
    """Quantity whose full stop-out costs at most ``equity * max_risk_pct``."""
    if per_unit_risk_usd <= 0:
        return 0
    qty = math.floor(equity * max_risk_pct / per_unit_risk_usd)
    return max(qty, 0)


def size_with_caps(
    equity: float,
    per_unit_risk_usd: float,
    day_risk_used_usd: float,
    week_risk_used_usd: float,
    per_trade_pct: float = 0.01,
    day_pct: float = 0.02,
    week_pct: float = 0.05,
) -> int:
    """Largest quantity allowed by the per-trade, daily and weekly risk budgets."""
    if per_unit_risk_usd <= 0:
        return 0
    base = size_by_volatility(equity, per_unit_risk_usd, per_trade_pct)
    day_remaining = max(equity * day_pct - day_risk_used_usd, 0)
    week_remaining = max(equity * week_pct - week_risk_used_usd, 0)
    day_cap = math.floor(day_remaining / per_unit_risk_usd)
    week_cap = math.floor(week_remaining / per_unit_risk_usd)
    return max(min(base, day_cap, week_cap), 0)


def signed_quantity(position) -> float:
    """Quantity signed by side; SHORT positions count negative."""
    if Side(getattr(position, "side", Side.LONG)) is Side.SHORT:
        return -abs(position.quantity)
    return position.quantity


def exposure_by_group(positions: Iterable) -> dict[str, float]:
    """Net notional per correlation group; opposing sides offset each other."""
    exposure: dict[str, float] = {}
    for pos in positions:
        group = _group_of(pos)
        price = _price_of(pos)
        if price is None:
            continue
        exposure[group] = exposure.get(group, 0.0) + signed_quantity(pos) * price
    return exposure


def total_open_risk(positions: Iterable) -> float:
    """Capital lost if every open position stopped out at once."""
    total = 0.0
    for pos in positions:
        entry, stop = _entry_stop_of(pos)
        if entry is None or stop is None:
            continue
        qty = abs(pos.quantity)
        if Side(pos.side) is Side.LONG:
            total += max(0.0, entry - stop) * qty
        else:
            total += max(0.0, stop - entry) * qty
    return total


def unrealized_pnl(side: Side | str, entry: float, price: float, quantity: float) -> float:
    return Side(side).sign * (price - entry) * quantity


def realized_pnl(side: Side | str, entry: float, exit_price: float, quantity: float) -> float:
    return Side(side).sign * (exit_price - entry) * quantity


def risk_budget_used(positions: Iterable, start: datetime, end: datetime) -> float:
    """Initial stop-distance risk committed by positions opened in [start, end)."""
    used = 0.0
    for pos in positions:
        opened = as_utc(pos.opened_at)
        if not (start <= opened < end):
            continue
        qty = max(pos.quantity, pos.requested_quantity)
        used += abs(pos.entry_price - pos.initial_stop) * qty
    return used


# ---------------------------------------------------------------------------
# PnL windows (UTC)
# ---------------------------------------------------------------------------

def day_window(reference: datetime) -> tuple[datetime, datetime]:
    ref = as_utc(reference)
    start = ref.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def week_window(reference: datetime) -> tuple[datetime, datetime]:
    """Week starting Sunday 00:00 UTC."""
    day_start, _ = day_window(reference)
    # Monday=0 ... Sunday=6; days since the last Sunday
    days_since_sunday = (day_start.weekday() + 1) % 7
    start = day_start - timedelta(days=days_since_sunday)
    return start, start + timedelta(days=7)


def pnl_between(closed_positions: Iterable, start: datetime, end: datetime) -> float:
    total = 0.0
    for pos in closed_positions:
        if pos.closed_at is None or pos.realized_pnl is None:
            continue
        if start <= as_utc(pos.closed_at) < end:
            total += pos.realized_pnl
    return total


def daily_pnl(closed_positions: Iterable, reference: datetime) -> float:
    start, end = day_window(reference)
    return pnl_between(closed_positions, start, end)


def weekly_pnl(closed_positions: Iterable, reference: datetime) -> float:
    start, end = week_window(reference)
    return pnl_between(closed_positions, start, end)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _group_of(pos) -> str:
    group = getattr(pos, "correlation_group", None)
    return group or pos.symbol


def _price_of(pos) -> float | None:
    for attr in ("price", "last_price", "entry_price"):
        value = getattr(pos, attr, None)
        if value is not None:
            return value
    return None


def _entry_stop_of(pos) -> tuple[float | None, float | None]:
    entry = getattr(pos, "entry", None)
    if entry is None:
        entry = getattr(pos, "entry_price", None)
    stop = getattr(pos, "stop", None)
    if stop is None:
        stop = getattr(pos, "current_stop", None)
    return entry, stop
