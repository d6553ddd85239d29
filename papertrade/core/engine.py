"""Trading session - the library surface a UI talks to.

A session binds one ``AccountContext`` to its ledger, position book, trade
history and executor, and optionally runs a background price refresh loop.
"""
import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Union

from papertrade.core.config import PaperTradeConfig, paper_config
from papertrade.core.context import AccountContext
from papertrade.core.errors import PaperTradeError
from papertrade.core.models import (
    AccountBalance,
    OrderRequest,
    OrderResult,
    Position,
    Trade,
    TradeFilter,
    WalletTransaction,
)
from papertrade.ledger.executor import OrderExecutor
from papertrade.ledger.ledger_store import LedgerStore
from papertrade.ledger.position_book import PositionBook
from papertrade.ledger.reporting import PerformanceReport
from papertrade.ledger.trade_history import TradeHistory
from papertrade.pricing.adapter import PricingAdapter, create_pricing_adapter
from papertrade.storage.database import SqlPersistence
from papertrade.storage.persistence import InMemoryPersistence, PersistenceAdapter


class TradingSession:
    """
    Paper trading session for one account.

    Responsibilities:
    - Submits orders through the executor
    - Exposes balance, positions and history for display
    - Handles wallet deposits/withdrawals and fresh starts
    - Marks positions to market on a background interval
    """

    def __init__(
        self,
        ctx: AccountContext,
        persistence: PersistenceAdapter,
        pricing: PricingAdapter,
        config: Optional[PaperTradeConfig] = None,
    ):
        self.ctx = ctx
        self.persistence = persistence
        self.pricing = pricing
        self.config = config or paper_config

        self.ledger = LedgerStore(persistence, self.config.ledger)
        self.book = PositionBook(ctx, persistence, self.config.ledger)
        self.history = TradeHistory(ctx, persistence, self.config.ledger)
        self.executor = OrderExecutor(
            ctx, self.ledger, self.book, self.history, pricing, self.config.ledger
        )

        # Control
        self._running = False
        self._refresh_task: Optional[asyncio.Task] = None
        self.refresh_interval = self.config.pricing.refresh_interval_seconds
        self.last_refresh: Optional[datetime] = None

    @classmethod
    async def open(
        cls,
        ctx: AccountContext,
        persistence: PersistenceAdapter,
        pricing: PricingAdapter,
        config: Optional[PaperTradeConfig] = None,
    ) -> "TradingSession":
        """Create a session and load the account's persisted state."""
        session = cls(ctx, persistence, pricing, config)
        await session.load()
        return session

    async def load(self) -> None:
        await self.book.reload()
        await self.history.reload()
        balance = await self.ledger.get_balance(self.ctx)
        self.ctx.logger.info(
            "session.loaded",
            cash=str(balance.cash),
            positions=len(self.book.positions),
            trades=len(self.history),
        )

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(
        self, request: Union[OrderRequest, dict, None] = None, **kwargs
    ) -> OrderResult:
        """Submit a buy or sell order. Failures are returned, not raised.

        Example:
            await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        """
        return await self.executor.submit(request, **kwargs)

    async def close_position(self, symbol: str) -> OrderResult:
        return await self.executor.close_position(symbol)

    async def close_all_positions(self) -> List[OrderResult]:
        results = await self.executor.close_all_positions()
        self.ctx.logger.info(
            "session.positions_closed",
            closed=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_balance(self) -> AccountBalance:
        """Cash, buying power and equity marked to the latest prices."""
        self.ctx.ensure_active()
        async with self.ctx.lock:
            return await self.ledger.mark_to_market(self.ctx, self.book.market_value())

    def get_positions(self) -> List[Position]:
        self.ctx.ensure_active()
        return self.book.open_positions()

    def get_closed_positions(self) -> List[Position]:
        self.ctx.ensure_active()
        return list(reversed(self.book.closed_positions))

    def get_trade_history(self, trade_filter: Optional[TradeFilter] = None, **kwargs) -> List[Trade]:
        """Journal entries newest first.

        Accepts a ``TradeFilter`` or its fields as keywords
        (``symbol``, ``search``, ``side``, ``status``, ``time_range``, ...).
        """
        self.ctx.ensure_active()
        if trade_filter is None and kwargs:
            trade_filter = TradeFilter(**kwargs)
        return self.history.query(trade_filter)

    async def performance_report(self) -> PerformanceReport:
        balance = await self.get_balance()
        return PerformanceReport(self.history.trades, balance, self.book.open_positions())

    # ------------------------------------------------------------------
    # Wallet
    # ------------------------------------------------------------------

    async def deposit(self, amount) -> WalletTransaction:
        async with self.ctx.lock:
            transaction = await self.ledger.deposit(self.ctx, amount)
            await self.ledger.mark_to_market(self.ctx, self.book.market_value())
        return transaction

    async def withdraw(self, amount) -> WalletTransaction:
        async with self.ctx.lock:
            transaction = await self.ledger.withdraw(self.ctx, amount)
            await self.ledger.mark_to_market(self.ctx, self.book.market_value())
        return transaction

    async def get_transactions(self) -> List[WalletTransaction]:
        return await self.ledger.get_transactions(self.ctx)

    async def reset(self) -> AccountBalance:
        """Fresh start: drop positions and history, keep cash."""
        async with self.ctx.lock:
            balance = await self.ledger.reset_ledger(self.ctx)
            await self.book.clear()
            await self.history.clear()
        return balance

    # ------------------------------------------------------------------
    # Price refresh
    # ------------------------------------------------------------------

    async def refresh_prices(self) -> List[Position]:
        """Re-mark every open position and update equity.

        Prices are fetched outside the account lock; marking happens inside
        it so a refresh never interleaves with a settling order.
        """
        self.ctx.ensure_active()
        symbols = list(self.book.positions)
        if not symbols:
            return []
        prices = await self.pricing.get_prices(symbols)

        async with self.ctx.lock:
            updated = await self.book.refresh_prices(prices)
            await self.ledger.mark_to_market(self.ctx, self.book.market_value())

        self.last_refresh = datetime.utcnow()
        self.ctx.logger.debug("session.prices_refreshed", updated=len(updated))
        return updated

    async def start(self) -> None:
        """Start the background refresh loop."""
        if self._running:
            return
        self.ctx.ensure_active()
        self._running = True
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        self.ctx.logger.info("session.started", refresh_interval=self.refresh_interval)

    async def stop(self) -> None:
        """Stop the background refresh loop."""
        self._running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        self.ctx.logger.info("session.stopped")

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await self.refresh_prices()
            except asyncio.CancelledError:
                raise
            except PaperTradeError as e:
                self.ctx.logger.error("session.refresh_error", code=e.code, error=e.message)
            await asyncio.sleep(self.refresh_interval)

    async def close(self) -> None:
        """Logout: stop refreshing and tear the context down."""
        await self.stop()
        self.ctx.close()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict:
        """Get current session status."""
        return {
            'account_id': self.ctx.account_id,
            'session_id': self.ctx.session_id,
            'active': self.ctx.is_active,
            'running': self._running,
            'open_positions': len(self.book.positions),
            'closed_positions': len(self.book.closed_positions),
            'trades': len(self.history),
            'market_value': str(self.book.market_value()),
            'unrealized_pnl': str(self.book.unrealized_pnl()),
            'pricing_fallbacks': self.pricing.fallback_count,
            'last_refresh': self.last_refresh.isoformat() if self.last_refresh else None,
        }


def create_persistence(config: Optional[PaperTradeConfig] = None) -> PersistenceAdapter:
    """Persistence backend for the configured ``persistence_backend``."""
    config = config or paper_config
    if config.database.persistence_backend == "memory":
        return InMemoryPersistence()
    return SqlPersistence(config.database.database_url, echo=config.database.echo_sql)


async def create_trading_session(
    account_id: str,
    config: Optional[PaperTradeConfig] = None,
    persistence: Optional[PersistenceAdapter] = None,
    pricing: Optional[PricingAdapter] = None,
) -> TradingSession:
    """Factory wiring a session from configuration.

    Args:
        account_id: Login identity; emails are normalized to lower case
        config: Configuration container, defaults to ``paper_config``
        persistence: Override the configured persistence backend
        pricing: Override the configured pricing adapter
    """
    config = config or paper_config
    ctx = AccountContext.for_email(account_id) if "@" in account_id else AccountContext(account_id)

    if persistence is None:
        persistence = create_persistence(config)
        await persistence.initialize()
    if pricing is None:
        pricing = create_pricing_adapter(config.pricing)

    return await TradingSession.open(ctx, persistence, pricing, config)
