"""Order executor - turns an order intent into ledger and position changes.

Per order: validate, price, then settle under the account lock. Settlement
applies its side effects in a fixed order (cash, position, journal) and
unwinds the earlier steps when a later one fails, so a failed order never
leaves cash and positions out of step.
"""
from decimal import Decimal
from typing import List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from papertrade.core.config import LedgerConfig, ledger_config
from papertrade.core.context import AccountContext
from papertrade.core.errors import (
    InsufficientFundsError,
    InsufficientPositionError,
    LimitNotMarketableError,
    PaperTradeError,
    PersistenceError,
    PositionNotFoundError,
    ValidationError,
)
from papertrade.core.models import (
    OrderRequest,
    OrderResult,
    OrderSide,
    OrderStatus,
    OrderType,
    Trade,
)
from papertrade.ledger.ledger_store import LedgerStore
from papertrade.ledger.position_book import PositionBook
from papertrade.ledger.trade_history import TradeHistory
from papertrade.pricing.adapter import PricingAdapter

# Settlement failures that are journaled as rejected orders
JOURNALED_REJECTIONS = (InsufficientFundsError, InsufficientPositionError, LimitNotMarketableError)


def build_order_request(request: Union[OrderRequest, dict, None] = None, **kwargs) -> OrderRequest:
    """Validate raw order input into an ``OrderRequest``.

    Raises:
        ValidationError: With a readable message for the first invalid field
    """
    if isinstance(request, OrderRequest):
        return request
    data = dict(request or {})
    data.update(kwargs)
    try:
        return OrderRequest.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "order"
        message = first.get("msg", "invalid value")
        raise ValidationError(f"Invalid {field}: {message}") from e


class OrderExecutor:
    """Single entry point for order settlement on one account."""

    def __init__(
        self,
        ctx: AccountContext,
        ledger: LedgerStore,
        book: PositionBook,
        history: TradeHistory,
        pricing: PricingAdapter,
        config: Optional[LedgerConfig] = None,
    ):
        self.ctx = ctx
        self.ledger = ledger
        self.book = book
        self.history = history
        self.pricing = pricing
        self.config = config or ledger_config

    async def submit(self, request: Union[OrderRequest, dict, None] = None, **kwargs) -> OrderResult:
        """Submit an order and report the outcome.

        Accepts an ``OrderRequest``, a dict, or keyword fields
        (``symbol``, ``side``, ``quantity``, ``order_type``, ``limit_price``).

        Returns:
            OrderResult; failures are returned, never raised
        """
        try:
            self.ctx.ensure_active()
            order = build_order_request(request, **kwargs)
        except PaperTradeError as e:
            self.ctx.logger.warning("executor.order_invalid", code=e.code, error=e.message)
            return OrderResult.rejected(e.code, e.message)

        # Pricing never raises for upstream failures and is bounded by its timeout
        quote = await self.pricing.get_quote(order.symbol)
        price = quote.price

        async with self.ctx.lock:
            try:
                trade = await self._settle(order, price)
            except JOURNALED_REJECTIONS as e:
                rejection = await self._journal_rejection(order, price, e)
                self.ctx.logger.info(
                    "executor.order_rejected",
                    symbol=order.symbol,
                    side=order.side.value,
                    quantity=str(order.quantity),
                    price=str(price),
                    code=e.code,
                    error=e.message,
                )
                return OrderResult.rejected(e.code, e.message, rejection)
            except PaperTradeError as e:
                self.ctx.logger.error(
                    "executor.order_failed",
                    symbol=order.symbol,
                    code=e.code,
                    error=e.message,
                )
                return OrderResult.rejected(e.code, e.message)
            except Exception as e:
                # Backend failures outside the error taxonomy still come back as results
                error = PersistenceError(f"Order settlement failed: {e}")
                self.ctx.logger.error(
                    "executor.order_failed",
                    symbol=order.symbol,
                    code=error.code,
                    error=str(e),
                )
                return OrderResult.rejected(error.code, error.message)

        self.ctx.logger.info(
            "executor.order_filled",
            order_id=trade.id,
            symbol=trade.symbol,
            side=trade.side.value,
            quantity=str(trade.quantity),
            price=str(trade.price),
            fallback_price=quote.is_fallback,
            realized_pnl=str(trade.realized_pnl) if trade.realized_pnl is not None else None,
        )
        return OrderResult.filled(trade)

    async def _settle(self, order: OrderRequest, price: Decimal) -> Trade:
        """Check and apply one order. Caller holds the account lock."""
        self._check_limit(order, price)

        notional = order.quantity * price
        if order.side == OrderSide.BUY:
            balance = await self.ledger.get_balance(self.ctx)
            if balance.cash < notional:
                raise InsufficientFundsError(required=notional, available=balance.cash)
        elif not self.config.allow_short_selling:
            held = max(self.book.quantity_of(order.symbol), Decimal("0"))
            if order.quantity > held:
                raise InsufficientPositionError(order.symbol, order.quantity, held)

        cash_delta = -notional if order.side == OrderSide.BUY else notional

        # 1. Cash
        await self.ledger.adjust_balance(self.ctx, cash_delta)

        # 2. Position
        book_snapshot = self.book.snapshot()
        try:
            delta = await self.book.apply_fill(order.symbol, order.side, order.quantity, price)
        except Exception:
            await self._undo_cash(cash_delta)
            raise

        # 3. Journal
        trade = Trade(
            account_id=self.ctx.account_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            price=price,
            order_type=order.order_type,
            limit_price=order.limit_price,
            status=OrderStatus.FILLED,
            realized_pnl=delta.realized_pnl,
        )
        try:
            await self.history.append(trade)
        except Exception:
            await self._undo_fill(book_snapshot)
            await self._undo_cash(cash_delta)
            raise

        # Equity is recomputed on every balance read, so a failed mark is not fatal
        try:
            await self.ledger.mark_to_market(self.ctx, self.book.market_value())
        except PaperTradeError as e:
            self.ctx.logger.warning("executor.mark_to_market_failed", error=e.message)
        return trade

    @staticmethod
    def _check_limit(order: OrderRequest, price: Decimal) -> None:
        if order.order_type != OrderType.LIMIT:
            return
        if order.side == OrderSide.BUY:
            marketable = price <= order.limit_price
        else:
            marketable = price >= order.limit_price
        if not marketable:
            raise LimitNotMarketableError(order.symbol, order.limit_price, price)

    async def _undo_cash(self, cash_delta: Decimal) -> None:
        try:
            await self.ledger.adjust_balance(self.ctx, -cash_delta)
            self.ctx.logger.warning("executor.cash_rolled_back", delta=str(cash_delta))
        except PaperTradeError as e:
            self.ctx.logger.error("executor.cash_rollback_failed", delta=str(cash_delta), error=e.message)

    async def _undo_fill(self, snapshot) -> None:
        self.book.restore(snapshot)
        try:
            await self.book.persist()
            self.ctx.logger.warning("executor.position_rolled_back")
        except PaperTradeError as e:
            self.ctx.logger.error("executor.position_rollback_failed", error=e.message)

    async def _journal_rejection(self, order: OrderRequest, price: Decimal, error: PaperTradeError) -> Optional[Trade]:
        rejection = Trade(
            account_id=self.ctx.account_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            price=price,
            order_type=order.order_type,
            limit_price=order.limit_price,
            status=OrderStatus.REJECTED,
            reason=error.message,
            error_code=error.code,
        )
        try:
            return await self.history.record_rejection(rejection)
        except PaperTradeError as e:
            self.ctx.logger.error("executor.rejection_journal_failed", error=e.message)
            return rejection

    async def close_position(self, symbol: str) -> OrderResult:
        """Fully close the open position in ``symbol`` at the current price."""
        position = self.book.get(symbol)
        if position is None:
            error = PositionNotFoundError((symbol or "").strip().upper())
            return OrderResult.rejected(error.code, error.message)

        return await self.submit(
            symbol=position.symbol,
            side=position.opening_side.opposite,
            quantity=abs(position.quantity),
        )

    async def close_all_positions(self) -> List[OrderResult]:
        """Close every open position. Returns one result per position."""
        results = []
        for symbol in list(self.book.positions):
            results.append(await self.close_position(symbol))
        return results
