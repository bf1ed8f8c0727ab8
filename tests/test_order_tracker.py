"""Tests for entry order placement and fill tracking."""

import asyncio

import pytest
from sqlmodel import Session, select

from tradeguard.database import engine
from tradeguard.engine.order_tracker import local_status, place_order, track_order
from tradeguard.engine.position_state import load_position
from tradeguard.errors import BrokerError, FillMismatch
from tradeguard.models.order import Fill, Order
from tradeguard.services import audit_ledger
from tradeguard.utils.constants import OrderStatus


def _fills(order_id):
    with Session(engine) as session:
        return session.exec(select(Fill).where(Fill.order_id == order_id)).all()


def _actions(client_order_id):
    return [e.action for e in reversed(audit_ledger.list_entries("order", client_order_id))]


# ---------------------------------------------------------------------------
# 1. Status mapping
# ---------------------------------------------------------------------------

class TestLocalStatus:
    def test_filled(self):
        assert local_status("filled", 5, 5) is OrderStatus.FILLED

    def test_broker_terminal_states_map_to_canceled(self):
        for status in ("canceled", "expired", "rejected", "done_for_day"):
            assert local_status(status, 0, 5) is OrderStatus.CANCELED

    def test_partial(self):
        assert local_status("partially_filled", 2, 5) is OrderStatus.PARTIALLY_FILLED
        assert local_status("new", 2, 5) is OrderStatus.PARTIALLY_FILLED

    def test_accepted_is_new(self):
        assert local_status("accepted", 0, 5) is OrderStatus.NEW


# ---------------------------------------------------------------------------
# 2. Placement
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_place_order_uses_deterministic_client_id(broker, make_position):
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)
    assert order.client_order_id == f"{position.id}-1"
    assert order.broker_order_id == "b-1"
    assert order.raw_request["quantity"] == 10
    assert broker.submitted[0]["side"] == "buy"
    assert _actions(order.client_order_id) == ["ORDER_SUBMIT_REQUESTED", "ORDER_SUBMITTED"]


@pytest.mark.asyncio
async def test_place_order_twice_hits_broker_once(broker, make_position):
    position = make_position(quantity=0)
    first = await place_order(position, 10, 1, broker)
    second = await place_order(position, 10, 1, broker)
    assert first.id == second.id
    assert len(broker.submitted) == 1


@pytest.mark.asyncio
async def test_short_entry_sells(broker, make_position):
    position = make_position(side="SHORT", quantity=0, current_stop=110.0, initial_stop=110.0, target_price=80.0)
    await place_order(position, 3, 1, broker)
    assert broker.submitted[0]["side"] == "sell"


@pytest.mark.asyncio
async def test_place_order_failure_is_audited_and_raised(broker, make_position):
    position = make_position(quantity=0)
    broker.submit_error = BrokerError("insufficient buying power", status_code=403)
    with pytest.raises(BrokerError):
        await place_order(position, 10, 1, broker)

    with Session(engine) as session:
        order = session.exec(select(Order)).one()
    assert order.status == OrderStatus.CANCELED.value
    assert _actions(f"{position.id}-1") == ["ORDER_SUBMIT_REQUESTED", "ORDER_SUBMIT_FAILED"]


# ---------------------------------------------------------------------------
# 3. Tracking
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_track_records_fill_and_updates_position(broker, make_position):
    broker.fill_price = 101.5
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)
    order = await track_order(order.id, broker, max_attempts=3, poll_interval=0)

    assert order.status == OrderStatus.FILLED.value
    assert order.filled_quantity == 10
    fills = _fills(order.id)
    assert [(f.quantity, f.price) for f in fills] == [(10, 101.5)]

    fresh = load_position(position.id)
    assert fresh.quantity == 10
    assert fresh.entry_price == pytest.approx(101.5)
    assert fresh.version == position.version + 1


@pytest.mark.asyncio
async def test_partial_fills_append_only_the_delta(broker, make_position):
    broker.fill_on_submit = False
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)

    observed = iter([
        ("partially_filled", 4, 100.0),
        ("partially_filled", 4, 100.0),
        ("filled", 10, 101.2),
    ])

    async def get_order(order_id):
        status, filled, avg = next(observed)
        broker.set_order_state(order_id, status, filled, avg)
        return broker.orders[order_id]

    broker.get_order = get_order
    order = await track_order(order.id, broker, max_attempts=5, poll_interval=0)

    assert order.status == OrderStatus.FILLED.value
    fills = _fills(order.id)
    assert [f.quantity for f in fills] == [4, 6]
    assert sum(f.quantity for f in fills) == order.filled_quantity == 10
    # 10 @ 101.2 overall with 4 @ 100 first -> 6 @ 102.0
    assert fills[1].price == pytest.approx(102.0)
    assert load_position(position.id).entry_price == pytest.approx(101.2)


@pytest.mark.asyncio
async def test_overfill_is_rejected_not_clamped(broker, make_position):
    broker.fill_on_submit = False
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)
    broker.set_order_state("b-1", "filled", 12, 100.0)

    with pytest.raises(FillMismatch):
        await track_order(order.id, broker, max_attempts=2, poll_interval=0)
    assert _fills(order.id) == []


@pytest.mark.asyncio
async def test_exhausted_polling_cancels_remainder(broker, make_position):
    broker.fill_on_submit = False
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)

    order = await track_order(order.id, broker, max_attempts=3, poll_interval=0)

    assert order.status == OrderStatus.CANCELED.value
    assert broker.canceled == ["b-1"]
    assert load_position(position.id).quantity == 0


@pytest.mark.asyncio
async def test_partial_then_timeout_keeps_filled_part(broker, make_position):
    broker.fill_on_submit = False
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)
    broker.set_order_state("b-1", "partially_filled", 3, 99.0)

    order = await track_order(order.id, broker, max_attempts=2, poll_interval=0)

    assert order.status == OrderStatus.CANCELED.value
    assert order.filled_quantity == 3
    assert load_position(position.id).quantity == 3


@pytest.mark.asyncio
async def test_deadline_cancels(broker, make_position):
    broker.fill_on_submit = False
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)

    order = await track_order(order.id, broker, max_attempts=1000, poll_interval=0.01, deadline=0.05)

    assert order.status == OrderStatus.CANCELED.value
    assert broker.canceled == ["b-1"]


@pytest.mark.asyncio
async def test_task_cancellation_marks_order_canceled(broker, make_position):
    broker.fill_on_submit = False
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)

    task = asyncio.create_task(track_order(order.id, broker, max_attempts=1000, poll_interval=0.05, deadline=None))
    await asyncio.sleep(0.02)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with Session(engine) as session:
        assert session.get(Order, order.id).status == OrderStatus.CANCELED.value


@pytest.mark.asyncio
async def test_transient_poll_errors_are_retried(broker, make_position):
    position = make_position(quantity=0)
    order = await place_order(position, 10, 1, broker)
    real_get = broker.get_order
    calls = {"n": 0}

    async def flaky(order_id):
        calls["n"] += 1
        if calls["n"] == 1:
            raise BrokerError("gateway", status_code=503)
        return await real_get(order_id)

    broker.get_order = flaky
    order = await track_order(order.id, broker, max_attempts=3, poll_interval=0)
    assert order.status == OrderStatus.FILLED.value
    assert calls["n"] == 2
