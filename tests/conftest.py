"""Shared fixtures: in-memory database, fake broker gateway, row factories."""

import os

# Must be set before tradeguard.config is imported anywhere
os.environ["TG_DATABASE_URL"] = "sqlite://"
os.environ["TG_ENCRYPTION_KEY"] = "YWFh" * 10 + "YWE="
os.environ["TG_NARRATIVE_URL"] = ""

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from tradeguard.database import create_db_and_tables, engine  # noqa: E402
from tradeguard.errors import BrokerError  # noqa: E402
from tradeguard.models.opportunity import Opportunity  # noqa: E402
from tradeguard.models.position import Position  # noqa: E402
from tradeguard.services import credentials  # noqa: E402
from tradeguard.services.broker import BrokerOrder  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    SQLModel.metadata.drop_all(engine)
    create_db_and_tables()
    credentials.reset_cache()
    yield


class FakeBroker:
    """In-memory stand-in for AlpacaBroker with the same async surface."""

    def __init__(self, equity: float = 100_000.0):
        self.equity = equity
        self.prices: dict[str, float | None] = {}
        self.fill_on_submit = True
        self.fill_price: float | None = None
        self.submit_error: BrokerError | None = None
        self.cancel_all_error: Exception | None = None
        self.liquidate_error: Exception | None = None
        self.orders: dict[str, BrokerOrder] = {}
        self.by_client: dict[str, BrokerOrder] = {}
        self.submitted: list[dict] = []
        self.canceled: list[str] = []
        self.open_broker_positions = 0

    async def submit_order(self, symbol, side, quantity, client_order_id, order_type="market", limit_price=None):
        if self.submit_error is not None:
            raise self.submit_error
        if client_order_id in self.by_client:
            return self.by_client[client_order_id]
        self.submitted.append(
            {"symbol": symbol, "side": side, "quantity": quantity, "client_order_id": client_order_id}
        )
        price = self.fill_price or self.prices.get(symbol) or 100.0
        filled = quantity if self.fill_on_submit else 0
        order = BrokerOrder(
            order_id=f"b-{len(self.orders) + 1}",
            client_order_id=client_order_id,
            status="filled" if filled else "new",
            quantity=quantity,
            filled_quantity=filled,
            filled_avg_price=price if filled else None,
            raw={"id": f"b-{len(self.orders) + 1}"},
        )
        self.orders[order.order_id] = order
        self.by_client[client_order_id] = order
        if filled:
            self.open_broker_positions += 1
        return order

    def set_order_state(self, order_id, status, filled_quantity, filled_avg_price=None):
        order = self.orders[order_id]
        order.status = status
        order.filled_quantity = filled_quantity
        order.filled_avg_price = filled_avg_price

    async def get_order(self, order_id):
        return self.orders[order_id]

    async def get_order_by_client_id(self, client_order_id):
        if client_order_id not in self.by_client:
            raise BrokerError(f"order {client_order_id} not found", status_code=404)
        return self.by_client[client_order_id]

    async def cancel_order(self, order_id):
        self.canceled.append(order_id)
        if order_id in self.orders:
            self.orders[order_id].status = "canceled"
        return True

    async def cancel_all_orders(self):
        if self.cancel_all_error is not None:
            raise self.cancel_all_error
        live = [o for o in self.orders.values() if o.status in ("new", "partially_filled")]
        for order in live:
            order.status = "canceled"
        return len(live)

    async def close_all_positions(self):
        if self.liquidate_error is not None:
            raise self.liquidate_error
        closed, self.open_broker_positions = self.open_broker_positions, 0
        return closed

    async def get_latest_price(self, symbol):
        return self.prices.get(symbol)

    async def get_equity(self):
        return self.equity

    async def close(self):
        pass


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def make_opportunity():
    def _make(**overrides) -> Opportunity:
        fields = dict(
            symbol="AAPL",
            side="LONG",
            entry_price=100.0,
            stop_price=98.0,
            target_price=110.0,
        )
        fields.update(overrides)
        with Session(engine) as session:
            opp = Opportunity(**fields)
            session.add(opp)
            session.commit()
            session.refresh(opp)
            return opp

    return _make


@pytest.fixture
def make_position():
    def _make(**overrides) -> Position:
        fields = dict(
            symbol="AAPL",
            side="LONG",
            requested_quantity=10,
            quantity=10,
            correlation_group="AAPL",
            entry_price=100.0,
            target_price=120.0,
            current_stop=90.0,
            initial_stop=90.0,
            opened_at=datetime.now(timezone.utc),
        )
        fields.update(overrides)
        with Session(engine) as session:
            position = Position(**fields)
            session.add(position)
            session.commit()
            session.refresh(position)
            return position

    return _make
