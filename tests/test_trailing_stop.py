"""Tests for the half-R trailing stop ratchet and the plan records."""

import random

import pytest
from pydantic import ValidationError

from tradeguard.schemas.plan import EntryPlan, StopState
from tradeguard.services.trailing_stop import (
    fallback_level,
    next_trail_level,
    r_multiple,
    ratchet,
    should_tighten,
    trail_stop,
)
from tradeguard.utils.constants import Side


class TestTrailLevels:
    def test_level_floors_to_half_r(self):
        assert next_trail_level(1.2, 0) == 1.0
        assert next_trail_level(0.5, 0) == 0.5

    def test_below_first_step_is_none(self):
        assert next_trail_level(0.3, 0) is None

    def test_level_must_strictly_increase(self):
        assert next_trail_level(1.4, 1.0) is None
        assert next_trail_level(1.5, 1.0) == 1.5

    def test_losing_trade_never_tightens(self):
        assert next_trail_level(-0.8, 0) is None
        assert should_tighten(-0.8, 0) is False

    def test_should_tighten_matches_next_level(self):
        assert should_tighten(0.6, 0) is True
        assert should_tighten(0.6, 0.5) is False


class TestTrailStop:
    def test_long_one_r(self):
        assert trail_stop(100, 90, 1.0, Side.LONG) == 105

    def test_short_one_r(self):
        assert trail_stop(100, 110, 1.0, Side.SHORT) == 95

    def test_first_step_is_breakeven(self):
        assert trail_stop(100, 90, 0.5, Side.LONG) == 100
        assert trail_stop(100, 110, 0.5, "SHORT") == 100

    def test_r_multiple_signed_by_side(self):
        assert r_multiple(100, 90, 112, Side.LONG) == pytest.approx(1.2)
        assert r_multiple(100, 110, 88, Side.SHORT) == pytest.approx(1.2)

    def test_r_multiple_zero_risk(self):
        assert r_multiple(100, 100, 150, Side.LONG) == 0.0

    def test_ratchet_never_loosens(self):
        assert ratchet(105, 100, Side.LONG) == 105
        assert ratchet(95, 100, Side.SHORT) == 95
        assert ratchet(100, 103, Side.LONG) == 103

    def test_fallback_is_one_step(self):
        assert fallback_level(0.0) == 0.5
        assert fallback_level(1.5) == 2.0

    def test_walk_is_monotonic(self):
        level, stop = 0.0, 90.0
        for price in (101, 106, 104, 111, 109, 116, 100):
            rm = r_multiple(100, 90, price, Side.LONG)
            nxt = next_trail_level(rm, level)
            if nxt is not None:
                new_stop = ratchet(stop, trail_stop(100, 90, nxt, Side.LONG), Side.LONG)
                assert nxt > level
                assert new_stop >= stop
                level, stop = nxt, new_stop
        assert level == 1.5
        assert stop == 110

    @pytest.mark.parametrize("side,initial", [(Side.LONG, 90.0), (Side.SHORT, 110.0)])
    def test_seeded_random_walks_never_regress(self, side, initial):
        rng = random.Random(17)
        for _ in range(20):
            price, level, stop = 100.0, 0.0, initial
            for _ in range(200):
                price = max(1.0, price + rng.uniform(-3.0, 3.0))
                nxt = next_trail_level(r_multiple(100, initial, price, side), level)
                if nxt is None:
                    continue
                new_stop = ratchet(stop, trail_stop(100, initial, nxt, side), side)
                assert nxt > level
                assert new_stop >= stop if side is Side.LONG else new_stop <= stop
                level, stop = nxt, new_stop


class TestPlanRecords:
    def test_stop_state_rejects_off_step_level(self):
        with pytest.raises(ValidationError):
            StopState(stop=95, initial=90, trail_level=0.3)

    def test_stop_state_rejects_non_positive_prices(self):
        with pytest.raises(ValidationError):
            StopState(stop=0, initial=90)

    def test_long_plan_requires_stop_below_entry(self):
        with pytest.raises(ValidationError):
            EntryPlan(side=Side.LONG, entry=100, stop=101, target=110)

    def test_short_plan_requires_target_below_entry(self):
        with pytest.raises(ValidationError):
            EntryPlan(side=Side.SHORT, entry=100, stop=105, target=111.5)

    def test_per_unit_risk(self):
        assert EntryPlan(side=Side.SHORT, entry=100, stop=104, target=90).per_unit_risk == 4
