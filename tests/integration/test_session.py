"""Integration tests driving a full trading session."""
import asyncio
import random
import time
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from papertrade.core.config import DatabaseConfig, PaperTradeConfig
from papertrade.core.context import AccountContext
from papertrade.core.engine import TradingSession, create_trading_session
from papertrade.core.errors import InsufficientFundsError, PersistenceWriteError, SessionClosedError
from papertrade.core.models import OrderStatus, TimeRange, TradeFilter
from papertrade.pricing.adapter import PricingAdapter
from papertrade.pricing.sources import StaticPriceSource
from papertrade.storage.database import SqlPersistence

D = Decimal


# =============================================================================
# Ledger Properties
# =============================================================================

class TestLedgerProperties:
    """Properties every reachable account state must satisfy."""

    @pytest.mark.asyncio
    async def test_balance_conservation(self, session, static_source):
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        static_source.set_price("AAPL", "120")
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        await session.submit_order(symbol="MSFT", side="buy", quantity=3)
        static_source.set_price("AAPL", "130")
        await session.submit_order(symbol="AAPL", side="sell", quantity=10)

        balance = await session.get_balance()
        cost_of_open = sum(p.entry_price * p.quantity for p in session.get_positions())
        realized = sum(
            t.realized_pnl for t in session.get_trade_history() if t.realized_pnl is not None
        )

        assert balance.cash + cost_of_open == D("100000") + realized
        assert balance.equity == balance.cash + sum(p.market_value for p in session.get_positions())

    @pytest.mark.asyncio
    async def test_cash_never_negative(self, session, static_source):
        rng = random.Random(11)
        for _ in range(60):
            symbol = rng.choice(["AAPL", "MSFT"])
            static_source.set_price(symbol, str(rng.randint(50, 400)))
            await session.submit_order(
                symbol=symbol,
                side=rng.choice(["buy", "sell"]),
                quantity=rng.randint(1, 200),
            )
            balance = await session.get_balance()
            assert balance.cash >= 0
            assert balance.buying_power == balance.cash
            assert all(p.quantity > 0 for p in session.get_positions())

    @pytest.mark.asyncio
    async def test_re_averaging(self, session, static_source):
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        static_source.set_price("AAPL", "120")
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)

        [position] = session.get_positions()
        assert position.quantity == D("20")
        assert position.entry_price == D("110")

    @pytest.mark.asyncio
    async def test_partial_close_credits_cash(self, session, static_source):
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        static_source.set_price("AAPL", "120")
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        cash_before = (await session.get_balance()).cash

        static_source.set_price("AAPL", "130")
        result = await session.submit_order(symbol="AAPL", side="sell", quantity=10)

        assert result.trade.realized_pnl == D("200")
        [position] = session.get_positions()
        assert position.quantity == D("10")
        assert position.entry_price == D("110")
        assert (await session.get_balance()).cash == cash_before + D("1300")

    @pytest.mark.asyncio
    async def test_full_close_removes_position(self, session, static_source):
        static_source.set_price("AAPL", "110")
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        static_source.set_price("AAPL", "105")

        result = await session.submit_order(symbol="AAPL", side="sell", quantity=10)

        assert session.get_positions() == []
        latest = session.get_trade_history()[0]
        assert latest.id == result.order_id
        assert latest.status == OrderStatus.FILLED
        assert latest.realized_pnl == D("-50")
        assert session.get_closed_positions()[0].realized_pnl == D("-50")

    @pytest.mark.asyncio
    async def test_rejected_order_is_noop(self, session_factory, static_source):
        poor = await session_factory("100", account_id="poor@example.com")
        static_source.set_price("AAPL", "50")

        result = await poor.submit_order(symbol="AAPL", side="buy", quantity=10)

        assert not result.success
        assert result.error_code == InsufficientFundsError.code
        assert (await poor.get_balance()).cash == D("100")
        assert poor.get_positions() == []
        assert poor.get_trade_history() == []
        assert len(poor.get_trade_history(status=OrderStatus.REJECTED)) == 1

    @pytest.mark.asyncio
    async def test_pricing_fallback_never_blocks(self, session, pricing):
        async def hang(symbol):
            await asyncio.sleep(30)

        pricing.source.fetch_price = hang
        started = time.monotonic()
        result = await session.submit_order(symbol="ZZZ", side="buy", quantity=1)

        assert time.monotonic() - started < 2
        assert result.success
        assert pricing.fallback_count == 1

    @pytest.mark.asyncio
    async def test_pricing_error_absorbed(self, session, pricing):
        pricing.source.fetch_price = AsyncMock(side_effect=RuntimeError("boom"))
        price = await pricing.get_price("AAPL")
        assert price > 0

    @pytest.mark.asyncio
    async def test_idempotent_seed(self, session_factory):
        fresh = await session_factory(account_id="new@example.com")
        first = await fresh.get_balance()
        second = await fresh.get_balance()

        assert first.cash == second.cash == D("100000")


# =============================================================================
# Session Features
# =============================================================================

class TestSessionFeatures:
    """Wallet, reset, history and refresh through the session surface."""

    @pytest.mark.asyncio
    async def test_wallet(self, session):
        await session.deposit("1000")
        await session.withdraw("250")

        assert (await session.get_balance()).cash == D("100750")
        assert [t.amount for t in await session.get_transactions()] == [D("250"), D("1000")]

    @pytest.mark.asyncio
    async def test_reset_keeps_cash(self, session, persistence, pricing, paper_config, ctx):
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        await session.submit_order(symbol="AAPL", side="sell", quantity=11)

        balance = await session.reset()

        assert balance.cash == D("99000")
        assert balance.equity == D("99000")
        assert session.get_positions() == []
        assert session.get_trade_history(status=OrderStatus.REJECTED) == []

        reopened = await TradingSession.open(AccountContext(ctx.account_id), persistence, pricing, paper_config)
        assert reopened.get_positions() == []
        assert reopened.get_trade_history() == []

    @pytest.mark.asyncio
    async def test_reset_failure_keeps_state(self, session, persistence, pricing, paper_config, ctx):
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        persistence.fail_prefixes.add("account:")

        with pytest.raises(PersistenceWriteError):
            await session.reset()

        assert [(p.symbol, p.quantity) for p in session.get_positions()] == [("AAPL", D("10"))]
        assert len(session.get_trade_history()) == 1

        persistence.fail_prefixes.clear()
        reopened = await TradingSession.open(AccountContext(ctx.account_id), persistence, pricing, paper_config)
        assert [(p.symbol, p.quantity) for p in reopened.get_positions()] == [("AAPL", D("10"))]
        assert len(reopened.get_trade_history()) == 1

    @pytest.mark.asyncio
    async def test_balance_read_serialized_with_orders(self, session, persistence):
        await session.get_balance()
        persistence.slow_reads["account:"] = 0.05

        read = asyncio.create_task(session.get_balance())
        await asyncio.sleep(0)
        result = await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        returned = await read

        assert result.success
        assert returned.equity == D("100000")
        balance = await session.get_balance()
        assert balance.cash == D("99000")
        assert balance.equity == D("100000")

    @pytest.mark.asyncio
    async def test_close_all_positions(self, session):
        await session.submit_order(symbol="AAPL", side="buy", quantity=2)
        await session.submit_order(symbol="MSFT", side="buy", quantity=2)

        results = await session.close_all_positions()

        assert all(r.success for r in results)
        assert session.get_positions() == []
        assert (await session.get_balance()).cash == D("100000")

    @pytest.mark.asyncio
    async def test_history_filters(self, session):
        await session.submit_order(symbol="AAPL", side="buy", quantity=2)
        await session.submit_order(symbol="MSFT", side="buy", quantity=1)
        await session.submit_order(symbol="AAPL", side="sell", quantity=1)

        assert len(session.get_trade_history(symbol="AAPL")) == 2
        assert len(session.get_trade_history(side="sell")) == 1
        assert len(session.get_trade_history(TradeFilter(time_range=TimeRange.TODAY, limit=2))) == 2
        assert session.get_trade_history()[0].symbol == "AAPL"

    @pytest.mark.asyncio
    async def test_refresh_prices_marks_equity(self, session, static_source):
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        static_source.set_price("AAPL", "110")

        updated = await session.refresh_prices()

        assert [p.symbol for p in updated] == ["AAPL"]
        balance = await session.get_balance()
        assert balance.equity == D("100100")
        assert session.get_positions()[0].unrealized_pnl == D("100")

    @pytest.mark.asyncio
    async def test_background_refresh_loop(self, session, static_source):
        await session.submit_order(symbol="AAPL", side="buy", quantity=1)
        static_source.set_price("AAPL", "150")

        await session.start()
        await asyncio.sleep(0.2)
        await session.stop()

        assert session.get_status()["running"] is False
        assert session.last_refresh is not None
        assert session.get_positions()[0].current_price == D("150")

    @pytest.mark.asyncio
    async def test_refresh_serialized_with_orders(self, session, static_source):
        await session.submit_order(symbol="AAPL", side="buy", quantity=5)
        static_source.set_price("AAPL", "101")

        results = await asyncio.gather(
            session.refresh_prices(),
            session.submit_order(symbol="AAPL", side="buy", quantity=5),
            session.refresh_prices(),
        )

        assert results[1].success
        [position] = session.get_positions()
        assert position.quantity == D("10")
        balance = await session.get_balance()
        assert balance.equity == balance.cash + position.market_value

    @pytest.mark.asyncio
    async def test_performance_report(self, session, static_source):
        await session.submit_order(symbol="AAPL", side="buy", quantity=10)
        static_source.set_price("AAPL", "110")
        await session.submit_order(symbol="AAPL", side="sell", quantity=5)

        report = await session.performance_report()

        assert report.total_realized_pnl == D("50")
        assert report.win_rate == 100.0

    @pytest.mark.asyncio
    async def test_logout_closes_session(self, session):
        await session.close()

        assert session.get_status()["active"] is False
        result = await session.submit_order(symbol="AAPL", side="buy", quantity=1)
        assert result.error_code == SessionClosedError.code
        with pytest.raises(SessionClosedError):
            await session.get_balance()


# =============================================================================
# SQL-backed Sessions
# =============================================================================

class TestSqlBackedSession:
    """State survives a page reload through the SQLite backend."""

    @pytest.mark.asyncio
    async def test_state_survives_reopen(self, tmp_path, paper_config):
        config = PaperTradeConfig(
            ledger=paper_config.ledger,
            pricing=paper_config.pricing,
            database=DatabaseConfig(
                persistence_backend="sqlite", database_url=f"sqlite:///{tmp_path}/ledger.db"
            ),
            logging=paper_config.logging,
        )
        pricing = PricingAdapter(StaticPriceSource({"AAPL": "100"}), config=config.pricing)

        first = await create_trading_session("Trader@Example.com", config, pricing=pricing)
        await first.submit_order(symbol="AAPL", side="buy", quantity=3)
        await first.close()
        await first.persistence.close()

        second = await create_trading_session("trader@example.com", config, pricing=pricing)
        try:
            assert isinstance(second.persistence, SqlPersistence)
            assert (await second.get_balance()).cash == D("99700")
            assert second.get_positions()[0].quantity == D("3")
            assert len(second.get_trade_history()) == 1
        finally:
            await second.close()
            await second.persistence.close()
