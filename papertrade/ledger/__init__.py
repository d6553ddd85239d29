"""Ledger module - cash, positions, trade journal and order settlement."""

from papertrade.ledger.executor import OrderExecutor, build_order_request
from papertrade.ledger.ledger_store import LedgerStore
from papertrade.ledger.position_book import PositionBook
from papertrade.ledger.reporting import PerformanceReport
from papertrade.ledger.trade_history import TradeHistory

__all__ = [
    "LedgerStore",
    "PositionBook",
    "TradeHistory",
    "OrderExecutor",
    "PerformanceReport",
    "build_order_request",
]
