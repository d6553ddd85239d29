"""Paper trading ledger.

Simulated brokerage core: cash ledger, position book, order executor and
trade journal for one account, with best-effort pricing.
"""

from papertrade.core.context import AccountContext
from papertrade.core.engine import TradingSession, create_trading_session
from papertrade.core.errors import (
    InsufficientFundsError,
    InsufficientPositionError,
    LimitNotMarketableError,
    PaperTradeError,
    PersistenceError,
    PersistenceWriteError,
    PositionNotFoundError,
    PricingUnavailable,
    SessionClosedError,
    ValidationError,
)
from papertrade.core.models import (
    AccountBalance,
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
    Trade,
    TradeFilter,
)

__version__ = "0.1.0"

__all__ = [
    "AccountContext",
    "TradingSession",
    "create_trading_session",
    "AccountBalance",
    "OrderRequest",
    "OrderResult",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "Position",
    "Trade",
    "TradeFilter",
    "PaperTradeError",
    "ValidationError",
    "InsufficientFundsError",
    "InsufficientPositionError",
    "PositionNotFoundError",
    "LimitNotMarketableError",
    "PricingUnavailable",
    "PersistenceError",
    "PersistenceWriteError",
    "SessionClosedError",
]
