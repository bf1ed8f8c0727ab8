"""Tests for risk-capped sizing, exposure and PnL windows."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from tradeguard.services.risk_sizer import (
    PositionView,
    daily_pnl,
    day_window,
    exposure_by_group,
    risk_budget_used,
    size_by_volatility,
    size_with_caps,
    total_open_risk,
    unrealized_pnl,
    week_window,
    weekly_pnl,
)
from tradeguard.utils.constants import Side


# ---------------------------------------------------------------------------
# 1. Sizing
# ---------------------------------------------------------------------------

class TestSizeByVolatility:
    def test_floor_of_budget_over_unit_risk(self):
        assert size_by_volatility(100_000, 2, 0.01) == 500
        assert size_by_volatility(100_000, 3, 0.01) == 333

    def test_zero_or_negative_unit_risk_sizes_zero(self):
        assert size_by_volatility(100_000, 0, 0.01) == 0
        assert size_by_volatility(100_000, -1, 0.01) == 0

    def test_negative_equity_clamped(self):
        assert size_by_volatility(-5_000, 2, 0.01) == 0


class TestSizeWithCaps:
    def test_per_trade_cap_binds_when_budgets_unused(self):
        assert size_with_caps(100_000, 2, 0, 0) == 500

    def test_day_budget_binds(self):
        # 2000 day budget, 1900 used -> 100 left -> 50 units
        assert size_with_caps(100_000, 2, 1900, 0) == 50

    def test_week_budget_binds(self):
        # 5000 week budget, 4990 used -> 10 left -> 5 units
        assert size_with_caps(100_000, 2, 0, 4990) == 5

    def test_exhausted_budget_is_zero_not_negative(self):
        assert size_with_caps(100_000, 2, 5000, 0) == 0
        assert size_with_caps(100_000, 2, 0, 9000) == 0

    def test_custom_percentages(self):
        assert size_with_caps(100_000, 2, 0, 0, per_trade_pct=0.005) == 250

    def test_zero_unit_risk(self):
        assert size_with_caps(100_000, 0, 0, 0) == 0


# ---------------------------------------------------------------------------
# 2. Exposure and open risk
# ---------------------------------------------------------------------------

class TestExposure:
    def test_opposing_quantities_net_within_group(self):
        positions = [
            PositionView(symbol="EURUSD", quantity=10, price=1.10, group="FX"),
            PositionView(symbol="GBPUSD", quantity=-5, price=1.10, group="FX"),
        ]
        assert exposure_by_group(positions) == {"FX": pytest.approx(5.5)}

    def test_short_side_counts_negative(self):
        positions = [
            PositionView(symbol="A", quantity=10, price=2.0, side=Side.LONG, group="G"),
            PositionView(symbol="B", quantity=4, price=2.0, side=Side.SHORT, group="G"),
        ]
        assert exposure_by_group(positions) == {"G": pytest.approx(12.0)}

    def test_group_defaults_to_symbol(self):
        positions = [PositionView(symbol="MSFT", quantity=3, price=10.0)]
        assert exposure_by_group(positions) == {"MSFT": 30.0}

    def test_position_rows_use_last_price_then_entry(self):
        rows = [
            SimpleNamespace(symbol="X", side="LONG", quantity=2, correlation_group="",
                            last_price=50.0, entry_price=40.0),
            SimpleNamespace(symbol="Y", side="LONG", quantity=1, correlation_group="",
                            last_price=None, entry_price=40.0),
        ]
        assert exposure_by_group(rows) == {"X": 100.0, "Y": 40.0}

    def test_total_open_risk_long_and_short(self):
        positions = [
            PositionView(symbol="A", quantity=10, price=100, side=Side.LONG, entry=100, stop=95),
            PositionView(symbol="B", quantity=5, price=50, side=Side.SHORT, entry=50, stop=52),
        ]
        assert total_open_risk(positions) == pytest.approx(60.0)

    def test_stop_beyond_entry_contributes_nothing(self):
        positions = [PositionView(symbol="A", quantity=10, price=100, side=Side.LONG, entry=100, stop=105)]
        assert total_open_risk(positions) == 0.0


# ---------------------------------------------------------------------------
# 3. PnL and windows
# ---------------------------------------------------------------------------

def _closed(pnl, closed_at):
    return SimpleNamespace(realized_pnl=pnl, closed_at=closed_at)


class TestPnlWindows:
    def test_day_window_is_utc_midnight_to_midnight(self):
        start, end = day_window(datetime(2024, 3, 6, 15, 30, tzinfo=timezone.utc))
        assert start == datetime(2024, 3, 6, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 7, tzinfo=timezone.utc)

    def test_week_starts_sunday(self):
        # 2024-03-06 is a Wednesday; the week began Sunday 2024-03-03
        start, end = week_window(datetime(2024, 3, 6, 12, tzinfo=timezone.utc))
        assert start == datetime(2024, 3, 3, tzinfo=timezone.utc)
        assert end == datetime(2024, 3, 10, tzinfo=timezone.utc)

    def test_sunday_is_its_own_week_start(self):
        start, _ = week_window(datetime(2024, 3, 10, 1, tzinfo=timezone.utc))
        assert start == datetime(2024, 3, 10, tzinfo=timezone.utc)

    def test_daily_pnl_end_exclusive(self):
        ref = datetime(2024, 3, 6, 12, tzinfo=timezone.utc)
        positions = [
            _closed(100.0, datetime(2024, 3, 6, 0, 0, tzinfo=timezone.utc)),
            _closed(-40.0, datetime(2024, 3, 6, 23, 59, tzinfo=timezone.utc)),
            _closed(500.0, datetime(2024, 3, 7, 0, 0, tzinfo=timezone.utc)),
            _closed(None, datetime(2024, 3, 6, 10, tzinfo=timezone.utc)),
        ]
        assert daily_pnl(positions, ref) == pytest.approx(60.0)

    def test_weekly_pnl_accepts_naive_timestamps(self):
        ref = datetime(2024, 3, 6, 12, tzinfo=timezone.utc)
        positions = [
            _closed(10.0, datetime(2024, 3, 3, 0, 0)),
            _closed(20.0, datetime(2024, 3, 9, 23, 0)),
            _closed(99.0, datetime(2024, 3, 2, 23, 59)),
        ]
        assert weekly_pnl(positions, ref) == pytest.approx(30.0)

    def test_unrealized_pnl_sign_by_side(self):
        assert unrealized_pnl(Side.LONG, 100, 105, 2) == 10
        assert unrealized_pnl("SHORT", 100, 105, 2) == -10

    def test_risk_budget_uses_requested_quantity_before_fill(self):
        start = datetime(2024, 3, 6, tzinfo=timezone.utc)
        end = datetime(2024, 3, 7, tzinfo=timezone.utc)
        rows = [
            SimpleNamespace(opened_at=datetime(2024, 3, 6, 9), quantity=0, requested_quantity=10,
                            entry_price=100.0, initial_stop=98.0),
            SimpleNamespace(opened_at=datetime(2024, 3, 5, 9), quantity=10, requested_quantity=10,
                            entry_price=100.0, initial_stop=98.0),
        ]
        assert risk_budget_used(rows, start, end) == pytest.approx(20.0)
