"""Error taxonomy shared by the engine, services and API layer."""


class TradeGuardError(Exception):
    """Base class for every error the core raises on purpose."""


class ValidationError(TradeGuardError):
    """Malformed input, e.g. a non-positive quantity."""


class NotFoundError(TradeGuardError):
    """Missing opportunity, position, order or profit-take request."""


class RiskLimitExceeded(TradeGuardError):
    """Requested quantity is above the computed sizing cap."""

    def __init__(self, requested: int, cap: int):
        self.requested = requested
        self.cap = cap
        super().__init__(f"Requested quantity {requested} exceeds risk cap {cap}")


class ConcurrencyConflict(TradeGuardError):
    """A conditional write found the row changed since it was read."""


class BrokerError(TradeGuardError):
    """Non-success broker response, including rate limiting."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # Rate limits and server-side failures are worth another attempt
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class NoMarketData(TradeGuardError):
    """Price feed returned nothing for a symbol this tick."""

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"No market data for {symbol}")


class PersistenceError(TradeGuardError):
    """The relational store rejected a write."""


class FillMismatch(BrokerError):
    """Broker reported more filled quantity than the order asked for."""
