"""Alpaca broker gateway for order placement, status polling and liquidation.

Wraps the synchronous alpaca-py SDK. Every call runs in the default executor
under a timeout, and rate-limit / server errors are retried with exponential
backoff; everything else fails fast as ``BrokerError``.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any

from alpaca.common.exceptions import APIError
from alpaca.data.historical import StockHistoricalDataClient
from alpaca.data.requests import StockLatestTradeRequest
from alpaca.trading.client import TradingClient
from alpaca.trading.enums import OrderSide, TimeInForce
from alpaca.trading.requests import LimitOrderRequest, MarketOrderRequest

from tradeguard.config import settings
from tradeguard.errors import BrokerError
from tradeguard.utils.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


@dataclass
class BrokerOrder:
    """Broker-side view of one order."""

    order_id: str
    client_order_id: str
    status: str  # lowercase broker status, e.g. "new", "partially_filled", "filled"
    quantity: float
    filled_quantity: float = 0.0
    filled_avg_price: float | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def normalize_status(status: Any) -> str:
    """'OrderStatus.FILLED' / 'FILLED' / 'filled' -> 'filled'."""
    if status is None:
        return "unknown"
    text = str(getattr(status, "value", status)).lower()
    if "." in text:
        text = text.split(".")[-1]
    return text


def _to_float(value: Any, default: float | None = None) -> float | None:
    if value is None or value == "":
        return default
    return float(value)


def _snapshot(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if isinstance(obj, dict):
        return obj
    return {"repr": str(obj)}


def _order_from_sdk(order: Any) -> BrokerOrder:
    return BrokerOrder(
        order_id=str(order.id),
        client_order_id=str(order.client_order_id),
        status=normalize_status(order.status),
        quantity=_to_float(order.qty, 0.0),
        filled_quantity=_to_float(order.filled_qty, 0.0),
        filled_avg_price=_to_float(order.filled_avg_price),
        raw=_snapshot(order),
    )


class AlpacaBroker:
    """Async wrapper around the alpaca-py trading and market data clients."""

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        paper: bool = True,
        base_url: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        if not api_key or not secret_key:
            raise BrokerError("Missing broker API credentials")
        self._trading = TradingClient(
            api_key=api_key,
            secret_key=secret_key,
            paper=paper,
            url_override=base_url or None,
        )
        self._data = StockHistoricalDataClient(api_key=api_key, secret_key=secret_key)
        self.paper = paper
        self.timeout = timeout if timeout is not None else settings.broker_timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.broker_max_attempts,
            base_delay=settings.broker_backoff_seconds,
        )

    async def _call(self, name: str, fn, *args, **kwargs):
        """Run one SDK call in the executor with timeout and retry."""

        async def once():
            loop = asyncio.get_running_loop()
            try:
                return await asyncio.wait_for(
                    loop.run_in_executor(None, functools.partial(fn, *args, **kwargs)),
                    timeout=self.timeout,
                )
            except APIError as e:
                raise BrokerError(f"{name}: {e}", status_code=e.status_code) from e
            except asyncio.TimeoutError as e:
                # Treated like a gateway timeout so it is retried
                raise BrokerError(f"{name}: timed out after {self.timeout}s", status_code=504) from e

        return await retry_async(
            once,
            self.retry_policy,
            is_retryable=lambda e: isinstance(e, BrokerError) and e.retryable,
            name=f"broker.{name}",
        )

    async def submit_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        client_order_id: str,
        order_type: str = "market",
        limit_price: float | None = None,
    ) -> BrokerOrder:
        """Submit an order; a duplicate client order id resolves to the existing order."""
        order_side = OrderSide.BUY if side == "buy" else OrderSide.SELL
        if order_type == "limit":
            if limit_price is None:
                raise BrokerError("limit order requires a limit price")
            request = LimitOrderRequest(
                symbol=symbol,
                qty=quantity,
                side=order_side,
                time_in_force=TimeInForce.DAY,
                limit_price=round(limit_price, 2),
                client_order_id=client_order_id,
            )
        else:
            request = MarketOrderRequest(
                symbol=symbol,
                qty=quantity,
                side=order_side,
                time_in_force=TimeInForce.DAY,
                client_order_id=client_order_id,
            )

        logger.info(f"Submitting {order_type.upper()} {side} {symbol} x{quantity} ({client_order_id})")
        try:
            order = await self._call("submit_order", self._trading.submit_order, order_data=request)
        except BrokerError as e:
            if e.status_code == 422 and "client_order_id" in str(e):
                logger.warning(f"Order {client_order_id} already at broker, fetching it")
                return await self.get_order_by_client_id(client_order_id)
            raise
        return _order_from_sdk(order)

    async def get_order(self, order_id: str) -> BrokerOrder:
        order = await self._call("get_order", self._trading.get_order_by_id, order_id)
        return _order_from_sdk(order)

    async def get_order_by_client_id(self, client_order_id: str) -> BrokerOrder:
        order = await self._call(
            "get_order_by_client_id", self._trading.get_order_by_client_id, client_order_id
        )
        return _order_from_sdk(order)

    async def cancel_order(self, order_id: str) -> bool:
        try:
            await self._call("cancel_order", self._trading.cancel_order_by_id, order_id)
            return True
        except BrokerError as e:
            logger.error(f"Cancel of order {order_id} failed: {e}")
            return False

    async def cancel_all_orders(self) -> int:
        """Cancel every open order at the broker; returns how many were canceled."""
        responses = await self._call("cancel_all_orders", self._trading.cancel_orders)
        return len(responses or [])

    async def close_all_positions(self) -> int:
        """Liquidate every broker position; returns how many were closed."""
        responses = await self._call(
            "close_all_positions", self._trading.close_all_positions, cancel_orders=True
        )
        return len(responses or [])

    async def get_latest_price(self, symbol: str) -> float | None:
        """Latest trade price, or None when the feed has nothing for the symbol."""
        request = StockLatestTradeRequest(symbol_or_symbols=symbol)
        trades = await self._call("get_latest_price", self._data.get_stock_latest_trade, request)
        trade = (trades or {}).get(symbol)
        if trade is None:
            return None
        return _to_float(getattr(trade, "price", None))

    async def get_equity(self) -> float:
        account = await self._call("get_account", self._trading.get_account)
        return float(account.equity)

    async def close(self):
        """Nothing to release; the SDK manages its own HTTP session."""


def get_broker() -> AlpacaBroker:
    """Build a broker gateway from the active credential, falling back to settings."""
    from tradeguard.services.credentials import decrypt, get_active_credential

    cred = get_active_credential()
    if cred:
        return AlpacaBroker(
            api_key=cred.api_key_id,
            secret_key=decrypt(cred.secret_encrypted),
            paper=cred.paper,
            base_url=cred.base_url,
        )
    return AlpacaBroker(
        api_key=settings.broker_key_id,
        secret_key=settings.broker_secret,
        paper=settings.broker_paper,
        base_url=settings.broker_base_url or None,
    )
