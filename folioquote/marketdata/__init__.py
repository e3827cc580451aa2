"""Market price acquisition for folioquote."""

from .breaker import BreakerState, CircuitBreaker
from .chain import FallbackChain, build_chains
from .quote import AssetKind, MarketReason, MarketStatus, PriceQuote, PriceType

__all__ = [
    "AssetKind",
    "BreakerState",
    "CircuitBreaker",
    "FallbackChain",
    "MarketReason",
    "MarketStatus",
    "PriceQuote",
    "PriceType",
    "build_chains",
]
