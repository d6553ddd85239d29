"""Price sources for the pricing adapter.

Three interchangeable strategies:
- CcxtPriceSource: live ticker from a ccxt exchange
- SimulatedPriceSource: seedable random walk inside a plausible band
- StaticPriceSource: fixed mock quotes

Every source raises ``PricingUnavailable`` when it cannot produce a price.
The adapter, not the source, decides what to do about that.
"""
import asyncio
import random
from abc import ABC, abstractmethod
from decimal import Decimal
from functools import wraps
from typing import Dict, Optional

import ccxt.async_support as ccxt
import structlog

from papertrade.core.config import PricingConfig, pricing_config
from papertrade.core.errors import PricingUnavailable
from papertrade.core.models import quantize_price, to_decimal

logger = structlog.get_logger(__name__)


# Mock quotes served when no upstream is configured
DEFAULT_STATIC_PRICES: Dict[str, Decimal] = {
    "AAPL": Decimal("155.75"),
    "MSFT": Decimal("305.25"),
    "GOOGL": Decimal("215.30"),
    "AMZN": Decimal("178.40"),
    "TSLA": Decimal("242.10"),
    "NVDA": Decimal("875.20"),
    "BTC": Decimal("64250.00"),
    "ETH": Decimal("3120.50"),
}


class RetryConfig:
    """Retry configuration for upstream calls."""
    DEFAULT_MAX_RETRIES = 2
    DEFAULT_BASE_DELAY = 0.25
    DEFAULT_MAX_DELAY = 2.0
    DEFAULT_EXPONENTIAL_BASE = 2.0


def with_retry(
    max_retries: Optional[int] = None,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (ccxt.NetworkError,)
):
    """Decorator for adding retry logic with exponential backoff.

    ``max_retries`` defaults to the ``retry_attempts`` attribute of the
    decorated object's config. The outer timeout in the pricing adapter
    bounds the total time spent here.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            retries = max_retries
            if retries is None:
                retries = getattr(getattr(self, "config", None), "retry_attempts",
                                  RetryConfig.DEFAULT_MAX_RETRIES)
            last_exception = None

            for attempt in range(retries + 1):
                try:
                    return await func(self, *args, **kwargs)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt < retries:
                        delay = min(
                            base_delay * (exponential_base ** attempt),
                            max_delay
                        )
                        logger.warning(
                            f"{func.__name__}.retry_attempt",
                            attempt=attempt + 1,
                            max_retries=retries,
                            delay=delay,
                            error=str(e)
                        )
                        await asyncio.sleep(delay)

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=retries,
                last_error=str(last_exception)
            )
            raise last_exception

        return wrapper
    return decorator


class PriceSource(ABC):
    """Abstract upstream price provider."""

    name = "source"

    @abstractmethod
    async def fetch_price(self, symbol: str) -> Decimal:
        """
        Fetch the latest price for ``symbol``.

        Raises:
            PricingUnavailable: If no price can be produced
        """
        pass

    async def close(self) -> None:
        """Release network resources. No-op by default."""


class StaticPriceSource(PriceSource):
    """Fixed mock quotes. Unknown symbols are unavailable."""

    name = "static"

    def __init__(self, prices: Optional[Dict[str, Decimal]] = None):
        table = DEFAULT_STATIC_PRICES if prices is None else prices
        self.prices = {s.upper(): to_decimal(p) for s, p in table.items()}

    async def fetch_price(self, symbol: str) -> Decimal:
        price = self.prices.get(symbol.upper())
        if price is None:
            raise PricingUnavailable(symbol, "no static quote")
        return price

    def set_price(self, symbol: str, price) -> None:
        self.prices[symbol.upper()] = to_decimal(price)


class SimulatedPriceSource(PriceSource):
    """Random walk per symbol.

    The first price for a symbol is drawn uniformly from the configured band;
    each later call moves it by at most ``volatility_pct`` in either direction.
    Prices never drop below one cent.
    """

    name = "simulated"

    def __init__(self, config: Optional[PricingConfig] = None, seed: Optional[int] = None):
        self.config = config or pricing_config
        self._rng = random.Random(self.config.random_seed if seed is None else seed)
        self._last: Dict[str, Decimal] = {}

    def seed_price(self, symbol: str, price) -> None:
        """Start the walk for ``symbol`` from a known price."""
        self._last[symbol.upper()] = quantize_price(to_decimal(price))

    def _draw(self) -> Decimal:
        low = float(self.config.fallback_min_price)
        high = float(self.config.fallback_max_price)
        return quantize_price(Decimal(str(self._rng.uniform(low, high))))

    async def fetch_price(self, symbol: str) -> Decimal:
        key = symbol.upper()
        last = self._last.get(key)
        if last is None:
            price = self._draw()
        else:
            step = self._rng.uniform(-self.config.volatility_pct, self.config.volatility_pct)
            price = quantize_price(last * (Decimal("1") + Decimal(str(step))))
        price = max(price, Decimal("0.01"))
        self._last[key] = price
        return price


class CcxtPriceSource(PriceSource):
    """Live last-trade price from a ccxt exchange."""

    name = "live"

    def __init__(self, config: Optional[PricingConfig] = None, exchange=None):
        self.config = config or pricing_config
        self._exchange = exchange

    def _get_exchange(self):
        if self._exchange is None:
            exchange_class = getattr(ccxt, self.config.exchange_id, None)
            if exchange_class is None:
                raise PricingUnavailable("*", f"unknown exchange {self.config.exchange_id}")
            params = {
                'enableRateLimit': True,
                'timeout': int(self.config.upstream_timeout_seconds * 1000),
            }
            if self.config.has_credentials:
                params['apiKey'] = self.config.api_key
                params['secret'] = self.config.api_secret
            self._exchange = exchange_class(params)
        return self._exchange

    def market_symbol(self, symbol: str) -> str:
        """Map a ledger symbol such as BTC or BTCUSDT to BTC/USDT."""
        symbol = symbol.upper()
        if "/" in symbol:
            return symbol
        quote = self.config.quote_currency.upper()
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return f"{symbol[:-len(quote)]}/{quote}"
        return f"{symbol}/{quote}"

    @with_retry()
    async def _fetch_ticker(self, market: str) -> Dict:
        return await self._get_exchange().fetch_ticker(market)

    async def fetch_price(self, symbol: str) -> Decimal:
        market = self.market_symbol(symbol)
        try:
            ticker = await self._fetch_ticker(market)
        except ccxt.BaseError as e:
            logger.error("ccxt_source.ticker_error", symbol=symbol, market=market, error=str(e))
            raise PricingUnavailable(symbol, str(e)) from e

        last = ticker.get('last') or ticker.get('close')
        if last is None or Decimal(str(last)) <= 0:
            raise PricingUnavailable(symbol, "ticker has no last price")
        return quantize_price(Decimal(str(last)))

    async def close(self) -> None:
        if self._exchange is not None:
            await self._exchange.close()
            self._exchange = None
