"""Append-only trade journal for one account.

Filled trades and rejected orders are kept in separate logs. Queries return
filled trades unless the filter asks for rejections explicitly.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from papertrade.core.config import LedgerConfig, ledger_config
from papertrade.core.context import AccountContext
from papertrade.core.models import OrderStatus, Trade, TradeFilter
from papertrade.storage.persistence import PersistenceAdapter

TRADES_NAMESPACE = "trades"
REJECTIONS_NAMESPACE = "rejections"


class TradeHistory:
    """Chronological journal of settled and rejected orders."""

    def __init__(
        self,
        ctx: AccountContext,
        persistence: PersistenceAdapter,
        config: Optional[LedgerConfig] = None,
    ):
        self.ctx = ctx
        self.persistence = persistence
        self.config = config or ledger_config
        self.trades: List[Trade] = []
        self.rejections: List[Trade] = []

    @classmethod
    async def load(
        cls,
        ctx: AccountContext,
        persistence: PersistenceAdapter,
        config: Optional[LedgerConfig] = None,
    ) -> "TradeHistory":
        history = cls(ctx, persistence, config)
        await history.reload()
        return history

    async def reload(self) -> None:
        self.trades = await self._read(TRADES_NAMESPACE)
        self.rejections = await self._read(REJECTIONS_NAMESPACE)

    async def _read(self, namespace: str) -> List[Trade]:
        data = await self.persistence.get_json(self.ctx.key(namespace)) or []
        records = []
        for item in data if isinstance(data, list) else []:
            try:
                records.append(Trade.model_validate(item))
            except PydanticValidationError as e:
                self.ctx.logger.warning("history.malformed_record", namespace=namespace, error=str(e))
        return records

    def __len__(self) -> int:
        return len(self.trades)

    async def append(self, trade: Trade) -> Trade:
        """Journal a filled trade.

        Raises:
            PersistenceWriteError: If the write fails (journal unchanged)
        """
        self.trades = await self._append(TRADES_NAMESPACE, self.trades, trade)
        self.ctx.logger.debug("history.trade_appended", order_id=trade.id, symbol=trade.symbol)
        return trade

    async def record_rejection(self, trade: Trade) -> Trade:
        """Journal a rejected order. Cash and positions are never touched."""
        self.rejections = await self._append(REJECTIONS_NAMESPACE, self.rejections, trade)
        self.ctx.logger.debug("history.rejection_recorded", order_id=trade.id, code=trade.error_code)
        return trade

    async def _append(self, namespace: str, records: List[Trade], trade: Trade) -> List[Trade]:
        updated = records + [trade]
        cap = self.config.max_trade_history
        if cap and len(updated) > cap:
            updated = updated[-cap:]
        await self._write(namespace, updated)
        return updated

    async def _write(self, namespace: str, records: List[Trade]) -> None:
        await self.persistence.set_json(
            self.ctx.key(namespace), [t.model_dump(mode="json") for t in records]
        )

    def query(self, trade_filter: Optional[TradeFilter] = None, now: Optional[datetime] = None) -> List[Trade]:
        """Trades matching the filter, newest first.

        Args:
            trade_filter: Optional filter; None returns every filled trade
            now: Reference time for relative ranges (defaults to utcnow)
        """
        trade_filter = trade_filter or TradeFilter()
        source = self.rejections if trade_filter.status == OrderStatus.REJECTED else self.trades
        now = now or datetime.utcnow()

        matched = [t for t in reversed(source) if trade_filter.matches(t, now)]
        matched.sort(key=lambda t: t.timestamp, reverse=True)
        if trade_filter.limit:
            matched = matched[:trade_filter.limit]
        return matched

    async def clear(self) -> None:
        """Drop in-memory records. Persisted logs are deleted by the ledger reset."""
        self.trades = []
        self.rejections = []
