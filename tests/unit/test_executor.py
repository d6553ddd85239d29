"""Unit tests for order settlement."""
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from papertrade.core.errors import PersistenceWriteError, ValidationError
from papertrade.core.models import OrderRequest, OrderSide, OrderStatus, TradeFilter
from papertrade.ledger.executor import OrderExecutor, build_order_request
from papertrade.ledger.position_book import PositionBook

D = Decimal


class TestBuildOrderRequest:
    """Test boundary validation."""

    def test_keywords(self):
        order = build_order_request(symbol="aapl", side="buy", quantity="2")
        assert order.symbol == "AAPL"

    def test_dict_payload(self):
        order = build_order_request({"symbol": "MSFT", "side": "sell", "quantity": 1})
        assert order.side == OrderSide.SELL

    def test_request_passthrough(self):
        order = OrderRequest(symbol="AAPL", side="buy", quantity=1)
        assert build_order_request(order) is order

    def test_invalid_payload_raises_domain_error(self):
        with pytest.raises(ValidationError) as exc_info:
            build_order_request(symbol="AAPL", side="buy", quantity=0)
        assert "quantity" in exc_info.value.message


class TestSubmit:
    """Test the settlement flow."""

    @pytest.mark.asyncio
    async def test_market_buy_settles(self, executor, ledger, ctx, book, history):
        result = await executor.submit(symbol="AAPL", side="buy", quantity=10)

        assert result.success
        assert result.status == OrderStatus.FILLED
        assert result.trade.price == D("100.00")
        assert (await ledger.get_balance(ctx)).cash == D("99000")
        assert book.get("AAPL").quantity == D("10")
        assert history.query()[0].id == result.order_id

    @pytest.mark.asyncio
    async def test_validation_failure_not_journaled(self, executor, history, ledger, ctx):
        result = await executor.submit(symbol="", side="buy", quantity=1)

        assert not result.success
        assert result.error_code == "validation_error"
        assert history.query(TradeFilter(status=OrderStatus.REJECTED)) == []
        assert (await ledger.get_balance(ctx)).cash == D("100000")

    @pytest.mark.asyncio
    async def test_insufficient_funds_journaled_as_rejection(self, executor, history, ledger, ctx):
        result = await executor.submit(symbol="AAPL", side="buy", quantity=1001)

        assert not result.success
        assert result.error_code == "insufficient_funds"
        assert "short" in result.error
        assert history.query() == []
        rejections = history.query(TradeFilter(status=OrderStatus.REJECTED))
        assert rejections[0].id == result.order_id
        assert rejections[0].error_code == "insufficient_funds"
        assert (await ledger.get_balance(ctx)).cash == D("100000")

    @pytest.mark.asyncio
    async def test_oversized_sell_rejected(self, executor, book):
        await executor.submit(symbol="AAPL", side="buy", quantity=5)
        result = await executor.submit(symbol="AAPL", side="sell", quantity=6)

        assert result.error_code == "insufficient_position"
        assert book.get("AAPL").quantity == D("5")

    @pytest.mark.asyncio
    async def test_sell_without_position_rejected(self, executor):
        result = await executor.submit(symbol="AAPL", side="sell", quantity=1)
        assert result.error_code == "insufficient_position"

    @pytest.mark.asyncio
    async def test_marketable_limit_fills_at_market(self, executor):
        result = await executor.submit(symbol="AAPL", side="buy", quantity=1,
                                       order_type="limit", limit_price="105")
        assert result.success
        assert result.trade.price == D("100.00")
        assert result.trade.limit_price == D("105")

    @pytest.mark.asyncio
    async def test_non_marketable_limit_rejected(self, executor, book):
        result = await executor.submit(symbol="AAPL", side="buy", quantity=1,
                                       order_type="limit", limit_price="95")
        assert result.error_code == "limit_not_marketable"
        assert book.get("AAPL") is None

    @pytest.mark.asyncio
    async def test_closed_session_rejected(self, executor, ctx):
        ctx.close()
        result = await executor.submit(symbol="AAPL", side="buy", quantity=1)
        assert result.error_code == "session_closed"

    @pytest.mark.asyncio
    async def test_upstream_failure_still_settles(self, executor, pricing):
        pricing.source.fetch_price = AsyncMock(side_effect=ConnectionError("offline"))
        result = await executor.submit(symbol="NEWCO", side="buy", quantity=1)

        assert result.success
        assert result.trade.price > 0


class TestShortSelling:
    """Test short sales when allowed."""

    @pytest.mark.asyncio
    async def test_short_sale_credits_cash_and_cover_debits(
        self, ctx, persistence, ledger, history, pricing, short_ledger_config, static_source
    ):
        book = PositionBook(ctx, persistence, short_ledger_config)
        executor = OrderExecutor(ctx, ledger, book, history, pricing, short_ledger_config)

        sold = await executor.submit(symbol="AAPL", side="sell", quantity=10)
        assert sold.success
        assert (await ledger.get_balance(ctx)).cash == D("101000")
        assert book.get("AAPL").quantity == D("-10")

        static_source.set_price("AAPL", "90")
        covered = await executor.submit(symbol="AAPL", side="buy", quantity=10)

        assert covered.trade.realized_pnl == D("100")
        assert (await ledger.get_balance(ctx)).cash == D("100100")
        assert book.get("AAPL") is None


class TestRollback:
    """Test compensation when a later settlement step fails."""

    @pytest.mark.asyncio
    async def test_position_write_failure_rolls_back_cash(self, executor, persistence, ledger, ctx, book):
        persistence.fail_prefixes.add("positions:")

        result = await executor.submit(symbol="AAPL", side="buy", quantity=10)

        assert not result.success
        assert result.error_code == "persistence_write_error"
        assert (await ledger.get_balance(ctx)).cash == D("100000")
        assert book.get("AAPL") is None

    @pytest.mark.asyncio
    async def test_journal_write_failure_rolls_back_cash_and_position(
        self, executor, persistence, ledger, ctx, book, history
    ):
        await executor.submit(symbol="AAPL", side="buy", quantity=10)
        persistence.fail_prefixes.add("trades:")

        result = await executor.submit(symbol="AAPL", side="buy", quantity=10)

        assert result.error_code == "persistence_write_error"
        assert (await ledger.get_balance(ctx)).cash == D("99000")
        assert book.get("AAPL").quantity == D("10")
        assert len(history) == 1

        persistence.fail_prefixes.clear()
        reloaded = await PositionBook.load(ctx, persistence, book.config)
        assert reloaded.get("AAPL").quantity == D("10")

    @pytest.mark.asyncio
    async def test_backend_crash_returned_as_failure(self, executor, persistence, ledger, ctx, book):
        persistence.crash_prefixes.add("positions:")

        result = await executor.submit(symbol="AAPL", side="buy", quantity=10)

        assert not result.success
        assert result.error_code == "persistence_error"
        assert "disk I/O error" in result.error
        assert (await ledger.get_balance(ctx)).cash == D("100000")
        assert book.get("AAPL") is None

    @pytest.mark.asyncio
    async def test_ledger_write_failure_changes_nothing(self, executor, persistence, ledger, ctx, book):
        await ledger.get_balance(ctx)
        persistence.fail_prefixes.add("account:")

        result = await executor.submit(symbol="AAPL", side="buy", quantity=1)

        assert result.error_code == "persistence_write_error"
        assert book.get("AAPL") is None
        persistence.fail_prefixes.clear()
        assert (await ledger.get_balance(ctx)).cash == D("100000")


class TestClosePosition:
    """Test manual closes."""

    @pytest.mark.asyncio
    async def test_close_position(self, executor, book, static_source, ledger, ctx):
        await executor.submit(symbol="AAPL", side="buy", quantity=10)
        static_source.set_price("AAPL", "105")

        result = await executor.close_position("aapl")

        assert result.success
        assert result.trade.side == OrderSide.SELL
        assert result.trade.realized_pnl == D("50")
        assert book.get("AAPL") is None
        assert (await ledger.get_balance(ctx)).cash == D("100050")

    @pytest.mark.asyncio
    async def test_close_missing_position(self, executor):
        result = await executor.close_position("AAPL")
        assert result.error_code == "position_not_found"

    @pytest.mark.asyncio
    async def test_close_all(self, executor, book):
        await executor.submit(symbol="AAPL", side="buy", quantity=1)
        await executor.submit(symbol="MSFT", side="buy", quantity=1)

        results = await executor.close_all_positions()

        assert [r.success for r in results] == [True, True]
        assert book.open_positions() == []
