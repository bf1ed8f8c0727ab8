"""Tests for the kill switch."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, select

from tradeguard.database import engine
from tradeguard.errors import BrokerError
from tradeguard.models.order import Order
from tradeguard.models.position import Position
from tradeguard.models.profit_take import ProfitTakeRequest
from tradeguard.services import audit_ledger
from tradeguard.services import broker as broker_module
from tradeguard.services.kill_switch import trigger_kill_switch
from tradeguard.utils.constants import CloseReason, OrderStatus, PositionStatus, ProfitTakeStatus


def _state():
    with Session(engine) as session:
        positions = session.exec(select(Position).order_by(Position.id)).all()
        return [(p.id, p.status, p.close_reason, p.exit_price, p.realized_pnl) for p in positions]


@pytest.mark.asyncio
async def test_closes_everything_at_last_price(broker, make_position):
    long = make_position(last_price=105.0)
    short = make_position(symbol="MSFT", side="SHORT", current_stop=110.0, initial_stop=110.0,
                          target_price=80.0, last_price=97.0)
    untouched = make_position(symbol="TSLA", last_price=None)
    broker.open_broker_positions = 2

    result = await trigger_kill_switch(broker, reason="drill")

    assert result["positions_closed"] == 3
    assert result["broker_positions_liquidated"] == 2
    assert result["errors"] == []
    by_id = {row[0]: row for row in _state()}
    assert by_id[long.id][1:] == (PositionStatus.CLOSED.value, CloseReason.KILL_SWITCH.value, 105.0, pytest.approx(50.0))
    assert by_id[short.id][4] == pytest.approx(30.0)
    assert by_id[untouched.id][3] is None
    assert by_id[untouched.id][4] is None

    [entry] = audit_ledger.list_entries(action="KILL_SWITCH_TRIGGERED")
    assert entry.payload["reason"] == "drill"
    assert sorted(entry.payload["position_ids"]) == sorted([long.id, short.id, untouched.id])


@pytest.mark.asyncio
async def test_second_trigger_closes_nothing_new(broker, make_position):
    make_position(last_price=101.0)
    make_position(symbol="MSFT", last_price=99.0)

    first = await trigger_kill_switch(broker)
    after_first = _state()
    second = await trigger_kill_switch(broker)

    assert first["positions_closed"] == 2
    assert second["positions_closed"] == 0
    assert _state() == after_first
    assert audit_ledger.verify_chain().valid


@pytest.mark.asyncio
async def test_broker_failures_do_not_block_local_close(broker, make_position):
    position = make_position()
    broker.cancel_all_error = BrokerError("cancel down", status_code=503)
    broker.liquidate_error = RuntimeError("liquidate down")

    result = await trigger_kill_switch(broker)

    assert result["positions_closed"] == 1
    assert len(result["errors"]) == 2
    assert _state()[0][1] == PositionStatus.CLOSED.value
    assert position.id in audit_ledger.list_entries(action="KILL_SWITCH_TRIGGERED")[0].payload["position_ids"]


@pytest.mark.asyncio
async def test_unavailable_broker_is_reported(make_position, monkeypatch):
    make_position()

    def no_broker():
        raise BrokerError("Missing broker API credentials")

    monkeypatch.setattr(broker_module, "get_broker", no_broker)
    result = await trigger_kill_switch()

    assert result["positions_closed"] == 1
    assert result["errors"] == ["No broker available: Missing broker API credentials"]


@pytest.mark.asyncio
async def test_cancels_local_orders_and_expires_requests(broker, make_position):
    position = make_position(quantity=4)
    with Session(engine) as session:
        session.add(Order(position_id=position.id, client_order_id=f"{position.id}-1", side="buy",
                          quantity=10, filled_quantity=4, status=OrderStatus.PARTIALLY_FILLED.value))
        session.add(ProfitTakeRequest(position_id=position.id, price=120.0,
                                      expires_at=datetime.now(timezone.utc) + timedelta(minutes=1)))
        session.commit()

    result = await trigger_kill_switch(broker)

    assert result["local_orders_canceled"] == 1
    with Session(engine) as session:
        assert session.exec(select(Order)).one().status == OrderStatus.CANCELED.value
        assert session.exec(select(ProfitTakeRequest)).one().status == ProfitTakeStatus.EXPIRED.value
