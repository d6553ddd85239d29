"""Pricing module - price sources and the fallback adapter."""

from papertrade.pricing.adapter import PricingAdapter, create_pricing_adapter
from papertrade.pricing.sources import (
    CcxtPriceSource,
    PriceSource,
    RetryConfig,
    SimulatedPriceSource,
    StaticPriceSource,
    with_retry,
)

__all__ = [
    "PricingAdapter",
    "create_pricing_adapter",
    "PriceSource",
    "CcxtPriceSource",
    "SimulatedPriceSource",
    "StaticPriceSource",
    "RetryConfig",
    "with_retry",
]
