"""Data models for the paper trading ledger.

This module defines the records that flow between the ledger components:
- Account balances (cash, buying power, equity)
- Positions with derived unrealized P/L
- Order requests, immutable trade records and order results
- Wallet transactions and price quotes

All monetary values use Decimal for precision.
All timestamps are naive UTC datetime objects.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

CENT = Decimal("0.01")


# =============================================================================
# Enums
# =============================================================================

class OrderSide(str, Enum):
    """Order side - buy or sell."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self == OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order type enumeration."""
    MARKET = "market"
    LIMIT = "limit"


class OrderStatus(str, Enum):
    """Order lifecycle status."""
    ACCEPTED = "accepted"         # Passed validation, not yet settled
    FILLED = "filled"
    REJECTED = "rejected"


class PositionSide(str, Enum):
    """Position side - long, short, or flat."""
    LONG = "long"
    SHORT = "short"
    NONE = "none"


class PositionStatus(str, Enum):
    """Position lifecycle status."""
    OPEN = "open"
    CLOSED = "closed"


class WalletTransactionType(str, Enum):
    """Cash movements outside of trading."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TimeRange(str, Enum):
    """Time range presets offered by the history view."""
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"
    ALL = "all"


# =============================================================================
# Account Models
# =============================================================================

class AccountBalance(BaseModel):
    """Persisted cash state of one account.

    Buying power always equals cash since there is no margin model.
    Equity is cash plus the market value of open positions, refreshed
    whenever positions are marked.
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    account_id: str = Field(..., description="Account identity (email or generated id)")
    cash: Decimal = Field(..., ge=0, description="Uninvested funds")
    buying_power: Decimal = Field(..., ge=0, description="Funds available for trading")
    equity: Decimal = Field(..., description="Cash plus market value of positions")
    starting_balance: Decimal = Field(..., ge=0, description="Seed balance")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="Seed time")
    updated_at: datetime = Field(default_factory=datetime.utcnow, description="Last write")

    @property
    def market_value(self) -> Decimal:
        """Market value of open positions implied by equity."""
        return self.equity - self.cash

    @property
    def total_return_pct(self) -> Decimal:
        """Equity change versus the seed balance, in percent."""
        if self.starting_balance == 0:
            return Decimal("0")
        return (self.equity - self.starting_balance) / self.starting_balance * 100


class WalletTransaction(BaseModel):
    """Deposit or withdrawal record."""
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: WalletTransactionType
    amount: Decimal = Field(..., gt=0)
    balance_after: Decimal = Field(..., ge=0)
    description: str = ""
    status: str = "completed"
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# Position Models
# =============================================================================

class Position(BaseModel):
    """Net holding in one symbol.

    Quantity is signed: positive is long, negative is short. The P/L fields
    are always derived from quantity, entry price and current price so they
    can never drift from their sources.

    Attributes:
        symbol: Instrument symbol
        quantity: Signed position size
        entry_price: Volume-weighted average cost basis
        current_price: Last observed mark price
        status: Open or closed
        realized_pnl: P/L booked by partial or full closes
        opened_at: Time the position was opened
        closed_at: Time the position was closed
    """
    model_config = ConfigDict(json_encoders={Decimal: str}, validate_assignment=True)

    symbol: str = Field(..., min_length=1, description="Instrument symbol")
    quantity: Decimal = Field(..., description="Signed position size")
    entry_price: Decimal = Field(..., gt=0, description="Average entry price")
    current_price: Decimal = Field(..., gt=0, description="Last mark price")

    id: str = Field(default_factory=lambda: str(uuid4()), description="Position ID")
    status: PositionStatus = Field(default=PositionStatus.OPEN, description="Status")
    realized_pnl: Decimal = Field(default=Decimal("0"), description="Realized P/L")
    opened_at: datetime = Field(default_factory=datetime.utcnow, description="Open time")
    closed_at: Optional[datetime] = Field(default=None, description="Close time")
    exit_price: Optional[Decimal] = Field(default=None, description="Price at full close")
    closed_quantity: Optional[Decimal] = Field(default=None, description="Signed size at full close")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional data")

    @computed_field
    @property
    def side(self) -> PositionSide:
        if self.quantity > 0:
            return PositionSide.LONG
        if self.quantity < 0:
            return PositionSide.SHORT
        return PositionSide.NONE

    @computed_field
    @property
    def unrealized_pnl(self) -> Decimal:
        return self.calculate_unrealized_pnl(self.current_price)

    @computed_field
    @property
    def unrealized_pnl_percent(self) -> Decimal:
        cost = self.cost_basis
        if cost == 0:
            return Decimal("0")
        return self.unrealized_pnl / cost * 100

    @computed_field
    @property
    def market_value(self) -> Decimal:
        """Signed value at the mark price (negative for shorts)."""
        return self.current_price * self.quantity

    @property
    def cost_basis(self) -> Decimal:
        """Unsigned value at the entry price."""
        return self.entry_price * abs(self.quantity)

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN and self.quantity != 0

    @property
    def opening_side(self) -> OrderSide:
        """Order side that increases this position."""
        return OrderSide.BUY if self.quantity > 0 else OrderSide.SELL

    def calculate_unrealized_pnl(self, price: Decimal) -> Decimal:
        """P/L of the whole position if marked at ``price``."""
        return (price - self.entry_price) * self.quantity

    def mark(self, price: Decimal) -> None:
        """Update the mark price."""
        self.current_price = price


@dataclass
class PositionDelta:
    """Outcome of applying one fill to the position book.

    Attributes:
        symbol: Instrument symbol
        side: Side of the fill
        quantity: Filled quantity (unsigned)
        price: Fill price
        position: Resulting open position, None when flat
        closed_position: Position closed by this fill, if any
        realized_pnl: P/L booked by this fill, None when nothing was reduced
        opened: True if a new position was opened
        flipped: True if the fill closed one direction and opened the other
    """
    symbol: str
    side: OrderSide
    quantity: Decimal
    price: Decimal
    position: Optional[Position] = None
    closed_position: Optional[Position] = None
    realized_pnl: Optional[Decimal] = None
    opened: bool = False
    flipped: bool = False

    @property
    def is_close(self) -> bool:
        return self.closed_position is not None


# =============================================================================
# Order Models
# =============================================================================

class OrderRequest(BaseModel):
    """Order intent validated at the boundary."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str = Field(..., description="Instrument symbol")
    side: OrderSide = Field(..., description="Order side")
    quantity: Decimal = Field(..., gt=0, description="Order quantity")
    order_type: OrderType = Field(default=OrderType.MARKET, description="Order type")
    limit_price: Optional[Decimal] = Field(default=None, description="Limit price")

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        """Symbols are upper-cased and must not be blank."""
        v = v.strip().upper()
        if not v:
            raise ValueError("Symbol is required")
        return v

    @model_validator(mode="after")
    def limit_price_required(self) -> "OrderRequest":
        """Limit orders need a positive limit price."""
        if self.order_type == OrderType.LIMIT:
            if self.limit_price is None or self.limit_price <= 0:
                raise ValueError("Limit price required and must be positive for limit orders")
        elif self.limit_price is not None:
            raise ValueError("Limit price is only valid for limit orders")
        return self

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity if self.side == OrderSide.BUY else -self.quantity


class Trade(BaseModel):
    """Immutable record of one settled or rejected order.

    Attributes:
        account_id: Owning account
        symbol: Instrument symbol
        side: Buy or sell
        quantity: Order quantity
        price: Execution price (the priced market value for rejections)
        order_type: Market or limit
        limit_price: Limit price for limit orders
        status: Filled or rejected
        realized_pnl: P/L booked when the order reduced or closed a position
        reason: Rejection reason
        error_code: Rejection error code
        timestamp: Settlement time
    """
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    account_id: str = Field(..., description="Owning account")
    symbol: str = Field(..., description="Instrument symbol")
    side: OrderSide = Field(..., description="Order side")
    quantity: Decimal = Field(..., gt=0, description="Order quantity")
    price: Decimal = Field(..., gt=0, description="Execution price")

    id: str = Field(default_factory=lambda: str(uuid4()), description="Order ID")
    order_type: OrderType = Field(default=OrderType.MARKET, description="Order type")
    limit_price: Optional[Decimal] = Field(default=None, description="Limit price")
    status: OrderStatus = Field(default=OrderStatus.FILLED, description="Order status")
    realized_pnl: Optional[Decimal] = Field(default=None, description="Realized P/L")
    reason: Optional[str] = Field(default=None, description="Rejection reason")
    error_code: Optional[str] = Field(default=None, description="Rejection code")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Settlement time")

    @property
    def notional(self) -> Decimal:
        """Gross trade value."""
        return self.quantity * self.price

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED


class OrderResult(BaseModel):
    """Typed outcome handed back to the caller of ``submit_order``."""

    success: bool
    order_id: Optional[str] = None
    status: OrderStatus = OrderStatus.REJECTED
    error_code: Optional[str] = None
    error: Optional[str] = None
    trade: Optional[Trade] = None

    @classmethod
    def filled(cls, trade: Trade) -> "OrderResult":
        return cls(success=True, order_id=trade.id, status=OrderStatus.FILLED, trade=trade)

    @classmethod
    def rejected(cls, error_code: str, error: str,
                 trade: Optional[Trade] = None) -> "OrderResult":
        return cls(
            success=False,
            order_id=trade.id if trade else None,
            status=OrderStatus.REJECTED,
            error_code=error_code,
            error=error,
            trade=trade,
        )


class TradeFilter(BaseModel):
    """Trade history query parameters. Every field is optional."""

    symbol: Optional[str] = Field(default=None, description="Exact symbol")
    search: Optional[str] = Field(default=None, description="Symbol substring")
    side: Optional[OrderSide] = None
    status: Optional[OrderStatus] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    time_range: TimeRange = TimeRange.ALL
    limit: Optional[int] = Field(default=None, gt=0)

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else None

    def range_start(self, now: datetime) -> Optional[datetime]:
        """Lower time bound implied by the preset and the explicit start."""
        bounds = []
        if self.start is not None:
            bounds.append(self.start)
        if self.time_range == TimeRange.TODAY:
            bounds.append(now.replace(hour=0, minute=0, second=0, microsecond=0))
        elif self.time_range == TimeRange.WEEK:
            bounds.append(now - timedelta(days=7))
        elif self.time_range == TimeRange.MONTH:
            bounds.append(now - timedelta(days=30))
        return max(bounds) if bounds else None

    def matches(self, trade: Trade, now: Optional[datetime] = None) -> bool:
        if self.symbol and trade.symbol != self.symbol:
            return False
        if self.search and self.search.lower() not in trade.symbol.lower():
            return False
        if self.side and trade.side != self.side:
            return False
        if self.status and trade.status != self.status:
            return False
        lower = self.range_start(now or datetime.utcnow())
        if lower is not None and trade.timestamp < lower:
            return False
        if self.end is not None and trade.timestamp > self.end:
            return False
        return True


# =============================================================================
# Market Data Models
# =============================================================================

class Quote(BaseModel):
    """Best-effort price for one symbol."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    symbol: str
    price: Decimal = Field(..., gt=0)
    bid: Decimal = Field(..., gt=0)
    ask: Decimal = Field(..., gt=0)
    source: str = Field(default="simulated", description="Price source name")
    is_fallback: bool = Field(default=False, description="True if upstream failed")
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @property
    def spread(self) -> Decimal:
        return self.ask - self.bid


# =============================================================================
# Utility Functions
# =============================================================================

def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """Convert user input to Decimal without float artifacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def quantize_price(value: Decimal) -> Decimal:
    """Round a price to cents."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def total_market_value(positions: List[Position]) -> Decimal:
    """Sum of signed market values of open positions."""
    return sum((p.market_value for p in positions if p.is_open), Decimal("0"))
