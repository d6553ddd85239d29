"""Error taxonomy for the paper trading ledger.

Every error carries a stable ``code`` so the session layer can hand a typed
failure back to the caller instead of raising across the UI boundary.
"""
from decimal import Decimal
from typing import Optional


class PaperTradeError(Exception):
    """Base class for all ledger errors."""

    code = "paper_trade_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(PaperTradeError):
    """Malformed order or wallet input (empty symbol, non-positive quantity)."""

    code = "validation_error"


class InsufficientFundsError(PaperTradeError):
    """A debit would drive cash below zero."""

    code = "insufficient_funds"

    def __init__(self, required: Decimal, available: Decimal, message: str = ""):
        self.required = required
        self.available = available
        self.shortfall = required - available
        super().__init__(
            message
            or f"Insufficient funds: required {required}, available {available} "
            f"(short {self.shortfall})"
        )


class InsufficientPositionError(PaperTradeError):
    """A sell exceeds the open long quantity while short selling is disabled."""

    code = "insufficient_position"

    def __init__(self, symbol: str, requested: Decimal, available: Decimal):
        self.symbol = symbol
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient position in {symbol}: requested {requested}, "
            f"available {available}"
        )


class PositionNotFoundError(PaperTradeError):
    """No open position exists for the symbol."""

    code = "position_not_found"

    def __init__(self, symbol: str):
        self.symbol = symbol
        super().__init__(f"No open position for {symbol}")


class LimitNotMarketableError(PaperTradeError):
    """A limit order cannot fill at the current price."""

    code = "limit_not_marketable"

    def __init__(self, symbol: str, limit_price: Decimal, market_price: Decimal):
        self.symbol = symbol
        self.limit_price = limit_price
        self.market_price = market_price
        super().__init__(
            f"Limit {limit_price} for {symbol} not marketable at {market_price}"
        )


class PricingUnavailable(PaperTradeError):
    """Upstream price source failed. Absorbed by the pricing adapter."""

    code = "pricing_unavailable"

    def __init__(self, symbol: str, reason: str = ""):
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"Price unavailable for {symbol}: {reason}" if reason
                         else f"Price unavailable for {symbol}")


class PersistenceError(PaperTradeError):
    """Storage backend failure."""

    code = "persistence_error"


class PersistenceWriteError(PersistenceError):
    """A storage write failed; the triggering operation is rolled back."""

    code = "persistence_write_error"

    def __init__(self, key: str, reason: Optional[str] = None):
        self.key = key
        self.reason = reason
        super().__init__(f"Failed to write {key}: {reason}" if reason
                         else f"Failed to write {key}")


class SessionClosedError(PaperTradeError):
    """Operation attempted on an account context that was torn down."""

    code = "session_closed"
