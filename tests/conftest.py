"""Pytest fixtures and utilities for the paper trading ledger test suite."""
import asyncio
from decimal import Decimal
from typing import Dict, Optional, Set

import pytest
import pytest_asyncio

from papertrade.core.config import (
    DatabaseConfig,
    LedgerConfig,
    LoggingConfig,
    PaperTradeConfig,
    PricingConfig,
)
from papertrade.core.context import AccountContext
from papertrade.core.engine import TradingSession
from papertrade.core.errors import PersistenceWriteError
from papertrade.ledger.executor import OrderExecutor
from papertrade.ledger.ledger_store import LedgerStore
from papertrade.ledger.position_book import PositionBook
from papertrade.ledger.trade_history import TradeHistory
from papertrade.pricing.adapter import PricingAdapter
from papertrade.pricing.sources import SimulatedPriceSource, StaticPriceSource
from papertrade.storage.persistence import InMemoryPersistence


class FlakyPersistence(InMemoryPersistence):
    """In-memory store with injectable write failures and read latency.

    - ``fail_prefixes``: writes raise ``PersistenceWriteError``
    - ``crash_prefixes``: writes raise a backend error outside the ledger taxonomy
    - ``slow_reads``: the next read of a prefix sleeps first (one shot)
    """

    def __init__(self):
        super().__init__()
        self.fail_prefixes: Set[str] = set()
        self.crash_prefixes: Set[str] = set()
        self.slow_reads: Dict[str, float] = {}

    async def get(self, key: str) -> Optional[str]:
        for prefix in list(self.slow_reads):
            if key.startswith(prefix):
                await asyncio.sleep(self.slow_reads.pop(prefix))
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        if any(key.startswith(prefix) for prefix in self.fail_prefixes):
            raise PersistenceWriteError(key, "quota exceeded")
        if any(key.startswith(prefix) for prefix in self.crash_prefixes):
            raise RuntimeError("disk I/O error")
        await super().set(key, value)


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def ledger_config():
    """Long-only ledger seeded with 100,000."""
    return LedgerConfig(starting_balance=Decimal("100000"), allow_short_selling=False)


@pytest.fixture
def short_ledger_config():
    """Ledger that allows short selling."""
    return LedgerConfig(starting_balance=Decimal("100000"), allow_short_selling=True)


@pytest.fixture
def pricing_config():
    """Static pricing with a short upstream timeout."""
    return PricingConfig(
        pricing_mode="static",
        upstream_timeout_seconds=0.2,
        retry_attempts=0,
        random_seed=42,
        refresh_interval_seconds=0.05,
    )


@pytest.fixture
def paper_config(ledger_config, pricing_config):
    """Full configuration container for sessions."""
    return PaperTradeConfig(
        ledger=ledger_config,
        pricing=pricing_config,
        database=DatabaseConfig(persistence_backend="memory"),
        logging=LoggingConfig(log_file=""),
    )


# =============================================================================
# Storage / Pricing Fixtures
# =============================================================================

@pytest.fixture
def persistence():
    return FlakyPersistence()


@pytest.fixture
def static_source():
    """Mock quotes the tests move by hand."""
    return StaticPriceSource({"AAPL": Decimal("100"), "MSFT": Decimal("300")})


@pytest.fixture
def pricing(static_source, pricing_config):
    return PricingAdapter(
        static_source,
        fallback=SimulatedPriceSource(pricing_config, seed=7),
        config=pricing_config,
    )


# =============================================================================
# Ledger Fixtures
# =============================================================================

@pytest.fixture
def ctx():
    return AccountContext("trader@example.com")


@pytest.fixture
def ledger(persistence, ledger_config):
    return LedgerStore(persistence, ledger_config)


@pytest.fixture
def book(ctx, persistence, ledger_config):
    return PositionBook(ctx, persistence, ledger_config)


@pytest.fixture
def history(ctx, persistence, ledger_config):
    return TradeHistory(ctx, persistence, ledger_config)


@pytest.fixture
def executor(ctx, ledger, book, history, pricing, ledger_config):
    return OrderExecutor(ctx, ledger, book, history, pricing, ledger_config)


@pytest_asyncio.fixture
async def session(ctx, persistence, pricing, paper_config):
    """Trading session over in-memory storage and static prices."""
    trading_session = await TradingSession.open(ctx, persistence, pricing, paper_config)
    yield trading_session
    await trading_session.stop()


def make_session_config(starting_balance: str, allow_short: bool = False,
                        pricing: Optional[PricingConfig] = None) -> PaperTradeConfig:
    """Configuration container with a custom seed balance."""
    return PaperTradeConfig(
        ledger=LedgerConfig(
            starting_balance=Decimal(starting_balance), allow_short_selling=allow_short
        ),
        pricing=pricing or PricingConfig(pricing_mode="static", upstream_timeout_seconds=0.2),
        database=DatabaseConfig(persistence_backend="memory"),
        logging=LoggingConfig(log_file=""),
    )


@pytest.fixture
def session_factory(persistence, pricing):
    """Open sessions with custom seed balances against the shared stores."""
    async def _open(starting_balance: str = "100000", allow_short: bool = False,
                    account_id: str = "factory@example.com") -> TradingSession:
        config = make_session_config(starting_balance, allow_short, pricing.config)
        return await TradingSession.open(AccountContext(account_id), persistence, pricing, config)
    return _open
