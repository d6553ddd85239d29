"""Best-effort pricing for order execution and position marking.

The adapter isolates the ledger from upstream failures: every call returns a
usable price within the configured timeout. On upstream failure it serves the
last known price for the symbol, or a synthetic price from the fallback
source when the symbol has never been priced.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Optional

import structlog

from papertrade.core.config import PricingConfig, pricing_config
from papertrade.core.errors import PricingUnavailable
from papertrade.core.models import Quote, quantize_price
from papertrade.pricing.sources import (
    CcxtPriceSource,
    PriceSource,
    SimulatedPriceSource,
    StaticPriceSource,
)

logger = structlog.get_logger(__name__)


class PricingAdapter:
    """Resolves current prices with timeout and fallback.

    Attributes:
        source: Primary (upstream) price source
        fallback: Source used when the primary fails and no cached price exists
        config: Pricing configuration
    """

    def __init__(
        self,
        source: PriceSource,
        fallback: Optional[PriceSource] = None,
        config: Optional[PricingConfig] = None,
    ):
        self.config = config or pricing_config
        self.source = source
        self.fallback = fallback or SimulatedPriceSource(self.config)
        self._last_known: Dict[str, Quote] = {}
        self.fallback_count = 0

    async def get_price(self, symbol: str) -> Decimal:
        """Current price for ``symbol``. Never raises for upstream failures."""
        quote = await self.get_quote(symbol)
        return quote.price

    async def get_quote(self, symbol: str) -> Quote:
        """Current quote for ``symbol`` with bid/ask around the price."""
        symbol = symbol.strip().upper()
        try:
            price = await asyncio.wait_for(
                self.source.fetch_price(symbol),
                timeout=self.config.upstream_timeout_seconds,
            )
            if price is None or price <= 0:
                raise PricingUnavailable(symbol, f"invalid price {price}")
        except asyncio.TimeoutError:
            return await self._fallback_quote(symbol, "timeout")
        except PricingUnavailable as e:
            return await self._fallback_quote(symbol, e.reason or str(e))
        except Exception as e:
            # Any upstream failure is absorbed; callers always get a price
            return await self._fallback_quote(symbol, f"{type(e).__name__}: {e}")

        quote = self._make_quote(symbol, quantize_price(price), self.source.name, False)
        self._last_known[symbol] = quote
        return quote

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        """Resolve several symbols concurrently."""
        unique = list(dict.fromkeys(s.strip().upper() for s in symbols))
        quotes = await asyncio.gather(*(self.get_quote(s) for s in unique))
        return {q.symbol: q.price for q in quotes}

    def last_known(self, symbol: str) -> Optional[Quote]:
        return self._last_known.get(symbol.strip().upper())

    async def _fallback_quote(self, symbol: str, reason: str) -> Quote:
        self.fallback_count += 1
        cached = self._last_known.get(symbol)
        if cached is not None:
            logger.warning(
                "pricing.fallback",
                symbol=symbol,
                reason=reason,
                strategy="last_known",
                price=str(cached.price),
            )
            return cached.model_copy(update={"is_fallback": True, "timestamp": datetime.utcnow()})

        try:
            price = quantize_price(await self.fallback.fetch_price(symbol))
        except PricingUnavailable as e:
            # Midpoint of the plausible band keeps the contract when the
            # fallback source is itself unavailable
            price = quantize_price(
                (self.config.fallback_min_price + self.config.fallback_max_price) / 2
            )
            logger.error("pricing.fallback_failed", symbol=symbol, error=str(e))

        logger.warning(
            "pricing.fallback",
            symbol=symbol,
            reason=reason,
            strategy=self.fallback.name,
            price=str(price),
        )
        quote = self._make_quote(symbol, price, self.fallback.name, True)
        self._last_known[symbol] = quote
        return quote

    def _make_quote(self, symbol: str, price: Decimal, source: str, is_fallback: bool) -> Quote:
        spread = self.config.spread_pct
        bid = max(quantize_price(price * (1 - spread)), Decimal("0.01"))
        ask = quantize_price(price * (1 + spread))
        return Quote(
            symbol=symbol,
            price=price,
            bid=bid,
            ask=ask,
            source=source,
            is_fallback=is_fallback,
        )

    async def close(self) -> None:
        await self.source.close()
        if self.fallback is not self.source:
            await self.fallback.close()


def create_pricing_adapter(config: Optional[PricingConfig] = None) -> PricingAdapter:
    """Factory building the adapter for the configured pricing mode."""
    config = config or pricing_config
    if config.pricing_mode == "live":
        source: PriceSource = CcxtPriceSource(config)
    elif config.pricing_mode == "static":
        source = StaticPriceSource()
    else:
        source = SimulatedPriceSource(config)
    return PricingAdapter(source, fallback=SimulatedPriceSource(config), config=config)
