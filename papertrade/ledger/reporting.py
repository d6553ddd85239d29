"""Performance report over an account's trade journal.

Produces trading statistics:
- Realized P/L totals
- Win/loss counts over closing trades
- Traded notional per side
- Daily realized P/L
"""

from decimal import Decimal
from typing import Dict, List, Optional

import pandas as pd

from papertrade.core.models import AccountBalance, Position, Trade

TRADE_COLUMNS = [
    "id", "timestamp", "symbol", "side", "quantity", "price", "notional", "realized_pnl",
]


class PerformanceReport:
    """Summary statistics for one account."""

    def __init__(
        self,
        trades: List[Trade],
        balance: Optional[AccountBalance] = None,
        positions: Optional[List[Position]] = None,
    ):
        self.trades = [t for t in trades if t.is_filled]
        self.balance = balance
        self.positions = positions or []
        self.frame = self._build_frame()

    def _build_frame(self) -> pd.DataFrame:
        rows = [
            {
                "id": t.id,
                "timestamp": t.timestamp,
                "symbol": t.symbol,
                "side": t.side.value,
                "quantity": float(t.quantity),
                "price": float(t.price),
                "notional": float(t.notional),
                "realized_pnl": float(t.realized_pnl) if t.realized_pnl is not None else None,
            }
            for t in self.trades
        ]
        frame = pd.DataFrame(rows, columns=TRADE_COLUMNS)
        if not frame.empty:
            frame["timestamp"] = pd.to_datetime(frame["timestamp"])
            frame = frame.sort_values("timestamp").reset_index(drop=True)
        return frame

    @property
    def closing_trades(self) -> pd.DataFrame:
        """Trades that reduced or closed a position."""
        return self.frame[self.frame["realized_pnl"].notna()]

    @property
    def total_realized_pnl(self) -> Decimal:
        return sum(
            (t.realized_pnl for t in self.trades if t.realized_pnl is not None),
            Decimal("0"),
        )

    @property
    def total_unrealized_pnl(self) -> Decimal:
        return sum((p.unrealized_pnl for p in self.positions), Decimal("0"))

    @property
    def win_count(self) -> int:
        return int((self.closing_trades["realized_pnl"] > 0).sum())

    @property
    def loss_count(self) -> int:
        return int((self.closing_trades["realized_pnl"] < 0).sum())

    @property
    def win_rate(self) -> float:
        """Percentage of closing trades with positive P/L."""
        closed = len(self.closing_trades)
        if closed == 0:
            return 0.0
        return self.win_count / closed * 100

    def notional_by_side(self) -> Dict[str, float]:
        if self.frame.empty:
            return {"buy": 0.0, "sell": 0.0}
        totals = self.frame.groupby("side")["notional"].sum()
        return {side: float(totals.get(side, 0.0)) for side in ("buy", "sell")}

    def trades_by_symbol(self) -> Dict[str, int]:
        if self.frame.empty:
            return {}
        return {str(k): int(v) for k, v in self.frame["symbol"].value_counts().items()}

    def daily_realized_pnl(self) -> pd.Series:
        """Realized P/L summed per calendar day."""
        closing = self.closing_trades
        if closing.empty:
            return pd.Series(dtype=float, name="realized_pnl")
        return closing.groupby(closing["timestamp"].dt.date)["realized_pnl"].sum()

    def summary(self) -> Dict:
        """Flat dict for display."""
        summary = {
            "trade_count": len(self.trades),
            "closing_trade_count": len(self.closing_trades),
            "win_count": self.win_count,
            "loss_count": self.loss_count,
            "win_rate": round(self.win_rate, 2),
            "realized_pnl": str(self.total_realized_pnl),
            "unrealized_pnl": str(self.total_unrealized_pnl),
            "notional": self.notional_by_side(),
            "trades_by_symbol": self.trades_by_symbol(),
        }
        if self.balance is not None:
            summary["cash"] = str(self.balance.cash)
            summary["equity"] = str(self.balance.equity)
            summary["market_value"] = str(self.balance.market_value)
            summary["total_return_pct"] = str(self.balance.total_return_pct)
        return summary

    def generate_markdown_report(self) -> str:
        """Markdown formatted report."""
        lines = ["# Paper Trading Performance Report", ""]

        if self.balance is not None:
            lines.append(f"**Starting Balance:** ${self.balance.starting_balance:,.2f}")
            lines.append(f"**Cash:** ${self.balance.cash:,.2f}")
            lines.append(f"**Equity:** ${self.balance.equity:,.2f}")
            lines.append("")

        lines.append("## Trade Statistics")
        lines.append("")
        lines.append("| Metric | Value |")
        lines.append("|--------|-------|")
        lines.append(f"| Trades | {len(self.trades)} |")
        lines.append(f"| Closing Trades | {len(self.closing_trades)} |")
        lines.append(f"| Win Rate | {self.win_rate:.1f}% |")
        lines.append(f"| Realized P/L | ${self.total_realized_pnl:,.2f} |")
        lines.append(f"| Unrealized P/L | ${self.total_unrealized_pnl:,.2f} |")
        lines.append("")

        daily = self.daily_realized_pnl()
        if not daily.empty:
            lines.append("## Daily Realized P/L")
            lines.append("")
            lines.append("| Date | P/L |")
            lines.append("|------|-----|")
            for day, pnl in daily.items():
                lines.append(f"| {day} | {pnl:+,.2f} |")
            lines.append("")

        return "\n".join(lines)
