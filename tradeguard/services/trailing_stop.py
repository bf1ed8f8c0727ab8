"""Trailing-stop ratchet in half-R steps."""

import math

from tradeguard.utils.constants import Side, TRAIL_STEP


def initial_risk(entry: float, initial_stop: float) -> float:
    """R: the initial stop distance."""
    return abs(entry - initial_stop)


def r_multiple(entry: float, initial_stop: float, price: float, side: Side | str) -> float:
    """Unrealized move expressed in R; 0 when R is undefined."""
    r = initial_risk(entry, initial_stop)
    if r == 0:
        return 0.0
    return Side(side).sign * (price - entry) / r


def next_trail_level(r_mult: float, last_level: float = 0.0) -> float | None:
    """Next 0.5R level reached, or None when no new threshold was crossed."""
    level = math.floor(r_mult / TRAIL_STEP) * TRAIL_STEP
    return level if level > last_level else None


def should_tighten(r_mult: float, last_level: float = 0.0) -> bool:
    return next_trail_level(r_mult, last_level) is not None


def trail_stop(entry: float, initial_stop: float, level: float, side: Side | str) -> float:
    """Stop price for a trail level; the first step (0.5R) moves to breakeven."""
    r = initial_risk(entry, initial_stop)
    move = max(0.0, level - TRAIL_STEP) * r
    return entry + move if Side(side) is Side.LONG else entry - move


def ratchet(current_stop: float, candidate: float, side: Side | str) -> float:
    """Keep whichever stop is more favourable to the position."""
    if Side(side) is Side.LONG:
        return max(current_stop, candidate)
    return min(current_stop, candidate)


def fallback_level(last_level: float) -> float:
    """One-step tightening applied when a profit-take approval lapses."""
    return last_level + TRAIL_STEP
