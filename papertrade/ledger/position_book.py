"""Position book - open positions and their derived P/L for one account.

Fills re-average the entry price when adding to a position, book realized
P/L when reducing it, and archive the position once it is flat. Callers
serialize ``apply_fill`` and ``refresh_prices`` through the account lock.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from papertrade.core.config import LedgerConfig, ledger_config
from papertrade.core.context import AccountContext
from papertrade.core.errors import InsufficientPositionError, ValidationError
from papertrade.core.models import (
    OrderSide,
    Position,
    PositionDelta,
    PositionStatus,
    total_market_value,
)
from papertrade.storage.persistence import PersistenceAdapter

POSITIONS_NAMESPACE = "positions"
CLOSED_POSITIONS_NAMESPACE = "closed_positions"

BookSnapshot = Tuple[Dict[str, Position], List[Position]]


class PositionBook:
    """Open and closed positions of one account."""

    def __init__(
        self,
        ctx: AccountContext,
        persistence: PersistenceAdapter,
        config: Optional[LedgerConfig] = None,
    ):
        self.ctx = ctx
        self.persistence = persistence
        self.config = config or ledger_config
        self.positions: Dict[str, Position] = {}
        self.closed_positions: List[Position] = []

    @classmethod
    async def load(
        cls,
        ctx: AccountContext,
        persistence: PersistenceAdapter,
        config: Optional[LedgerConfig] = None,
    ) -> "PositionBook":
        """Create a book from persisted state. Malformed records are skipped."""
        book = cls(ctx, persistence, config)
        await book.reload()
        return book

    async def reload(self) -> None:
        open_data = await self.persistence.get_json(self.ctx.key(POSITIONS_NAMESPACE)) or []
        closed_data = await self.persistence.get_json(self.ctx.key(CLOSED_POSITIONS_NAMESPACE)) or []
        self.positions = {}
        for position in self._parse(open_data):
            if position.is_open:
                self.positions[position.symbol] = position
        self.closed_positions = self._parse(closed_data)
        self.ctx.logger.debug(
            "positions.loaded",
            open=len(self.positions),
            closed=len(self.closed_positions),
        )

    def _parse(self, records) -> List[Position]:
        positions = []
        for item in records if isinstance(records, list) else []:
            try:
                positions.append(Position.model_validate(item))
            except PydanticValidationError as e:
                self.ctx.logger.warning("positions.malformed_record", error=str(e))
        return positions

    @property
    def allow_short(self) -> bool:
        return self.config.allow_short_selling

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, symbol: str) -> Optional[Position]:
        return self.positions.get(symbol.strip().upper())

    def open_positions(self) -> List[Position]:
        return list(self.positions.values())

    def quantity_of(self, symbol: str) -> Decimal:
        """Signed open quantity, zero when flat."""
        position = self.get(symbol)
        return position.quantity if position else Decimal("0")

    def market_value(self) -> Decimal:
        return total_market_value(self.open_positions())

    def unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self.positions.values()), Decimal("0"))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def apply_fill(
        self,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        price: Decimal,
    ) -> PositionDelta:
        """Apply one fill and persist the result.

        Args:
            symbol: Instrument symbol
            side: Buy or sell
            quantity: Filled quantity, positive
            price: Fill price, positive

        Returns:
            PositionDelta describing the resulting state and realized P/L

        Raises:
            InsufficientPositionError: If the fill would open or extend a
                short while short selling is disabled
            PersistenceWriteError: If the write fails (book is restored)
        """
        if quantity <= 0 or price <= 0:
            raise ValidationError("Fill quantity and price must be positive")

        snapshot = self.snapshot()
        delta = self._apply(symbol.strip().upper(), side, quantity, price)
        await self._persist_or_restore(snapshot)

        self.ctx.logger.info(
            "positions.fill_applied",
            symbol=delta.symbol,
            side=side.value,
            quantity=str(quantity),
            price=str(price),
            position_quantity=str(delta.position.quantity) if delta.position else "0",
            realized_pnl=str(delta.realized_pnl) if delta.realized_pnl is not None else None,
        )
        return delta

    def _apply(self, symbol: str, side: OrderSide, quantity: Decimal, price: Decimal) -> PositionDelta:
        signed = quantity if side == OrderSide.BUY else -quantity
        position = self.positions.get(symbol)

        if position is None:
            if signed < 0 and not self.allow_short:
                raise InsufficientPositionError(symbol, quantity, Decimal("0"))
            position = Position(symbol=symbol, quantity=signed, entry_price=price, current_price=price)
            self.positions[symbol] = position
            return PositionDelta(symbol, side, quantity, price, position=position, opened=True)

        if (position.quantity > 0) == (signed > 0):
            # Adding to the position - re-average the entry
            held = abs(position.quantity)
            new_quantity = position.quantity + signed
            position.entry_price = (position.entry_price * held + price * quantity) / abs(new_quantity)
            position.quantity = new_quantity
            position.current_price = price
            return PositionDelta(symbol, side, quantity, price, position=position)

        held = abs(position.quantity)
        direction = Decimal("1") if position.quantity > 0 else Decimal("-1")

        if quantity < held:
            # Partial close - entry price unchanged
            realized = (price - position.entry_price) * quantity * direction
            position.quantity = position.quantity + signed
            position.realized_pnl = position.realized_pnl + realized
            position.current_price = price
            return PositionDelta(symbol, side, quantity, price, position=position, realized_pnl=realized)

        if quantity > held and not self.allow_short:
            raise InsufficientPositionError(symbol, quantity, held)

        realized = (price - position.entry_price) * held * direction
        closed = self._archive(position, price, realized)

        remainder = quantity - held
        if remainder == 0:
            return PositionDelta(
                symbol, side, quantity, price,
                closed_position=closed, realized_pnl=realized,
            )

        # Flip - the remainder opens a fresh position at the fill price
        flipped = Position(
            symbol=symbol,
            quantity=remainder if side == OrderSide.BUY else -remainder,
            entry_price=price,
            current_price=price,
        )
        self.positions[symbol] = flipped
        return PositionDelta(
            symbol, side, quantity, price,
            position=flipped, closed_position=closed, realized_pnl=realized,
            opened=True, flipped=True,
        )

    def _archive(self, position: Position, price: Decimal, realized: Decimal) -> Position:
        closed = position.model_copy(update={
            "status": PositionStatus.CLOSED,
            "closed_quantity": position.quantity,
            "quantity": Decimal("0"),
            "current_price": price,
            "exit_price": price,
            "realized_pnl": position.realized_pnl + realized,
            "closed_at": datetime.utcnow(),
        })
        del self.positions[position.symbol]
        self.closed_positions.append(closed)
        return closed

    async def refresh_prices(self, price_map: Dict[str, Decimal]) -> List[Position]:
        """Mark open positions to the given prices and persist.

        Symbols without a price keep their previous mark.

        Returns:
            Positions that were re-marked
        """
        snapshot = self.snapshot()
        updated = []
        for symbol, position in self.positions.items():
            price = price_map.get(symbol)
            if price is None or price <= 0 or price == position.current_price:
                continue
            position.mark(price)
            updated.append(position)

        if updated:
            await self._persist_or_restore(snapshot)
        return updated

    async def clear(self) -> None:
        """Drop all in-memory state. Persisted records are left to the caller."""
        self.positions = {}
        self.closed_positions = []

    # ------------------------------------------------------------------
    # Snapshot / persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> BookSnapshot:
        return (
            {s: p.model_copy(deep=True) for s, p in self.positions.items()},
            [p.model_copy(deep=True) for p in self.closed_positions],
        )

    def restore(self, snapshot: BookSnapshot) -> None:
        positions, closed = snapshot
        self.positions = {s: p.model_copy(deep=True) for s, p in positions.items()}
        self.closed_positions = [p.model_copy(deep=True) for p in closed]

    async def persist(self) -> None:
        await self.persistence.set_json(
            self.ctx.key(POSITIONS_NAMESPACE),
            [p.model_dump(mode="json") for p in self.positions.values()],
        )
        await self.persistence.set_json(
            self.ctx.key(CLOSED_POSITIONS_NAMESPACE),
            [p.model_dump(mode="json") for p in self.closed_positions],
        )

    async def _persist_or_restore(self, snapshot: BookSnapshot) -> None:
        try:
            await self.persist()
        except Exception:
            self.restore(snapshot)
            self.ctx.logger.error("positions.persist_failed_restored")
            # Bring storage back in line with the restored book
            try:
                await self.persist()
            except Exception as e:
                self.ctx.logger.error("positions.restore_write_failed", error=str(e))
            raise
