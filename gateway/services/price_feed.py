# gateway/services/price_feed.py
"""
SOL/USD reference price for swaps and tool quotes.

This is a best-effort price, not an oracle: the public feed is fetched with
a short timeout, cached for PRICE_CACHE_TTL_SECONDS, and replaced by the
fixed PRICE_FALLBACK_USD whenever it cannot be read. Callers must tolerate
stale or default pricing.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

SOURCE_FEED = "feed"
SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class PriceQuote:
    price_usd: Decimal
    source: str
    fetched_at: float

    @property
    def is_fallback(self) -> bool:
        return self.source == SOURCE_FALLBACK


def _get_sol_price_from_feed(url: str) -> Decimal:
    """
    Fetch the SOL price from a CoinGecko-style simple price endpoint.

    Raises:
        Exception: If the request fails or the payload has no usable price
    """
    response = requests.get(url, timeout=10)
    response.raise_for_status()

    data = response.json()
    price = (data.get("solana") or {}).get("usd")
    if price is None:
        raise ValueError("Price feed response missing solana.usd")

    try:
        value = Decimal(str(price))
    except InvalidOperation:
        raise ValueError(f"Price feed returned a non-numeric price: {price!r}")
    if value <= 0:
        raise ValueError(f"Price feed returned a non-positive price: {price!r}")
    return value


class PriceFeed:
    """Cached price lookup with a fixed fallback."""

    def __init__(self, url: str, fallback_usd: float, cache_ttl_seconds: int = 60):
        self.url = url
        self.fallback_usd = Decimal(str(fallback_usd))
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cache: Dict[str, Any] = {"quote": None, "timestamp": 0.0}

    def _get_cached(self) -> Optional[PriceQuote]:
        quote = self._cache["quote"]
        if quote is None:
            return None
        if time.time() - self._cache["timestamp"] > self.cache_ttl_seconds:
            return None
        return quote

    def clear_cache(self) -> None:
        """Clear the price cache (useful for testing)."""
        self._cache["quote"] = None
        self._cache["timestamp"] = 0.0

    def get_sol_price(self) -> PriceQuote:
        """Return the current SOL/USD price. Never raises."""
        cached = self._get_cached()
        if cached is not None:
            return cached

        now = time.time()
        try:
            price = _get_sol_price_from_feed(self.url)
        except Exception as e:
            logger.warning(f"Price feed unavailable, using fallback ${self.fallback_usd}: {e}")
            # Fallbacks are not cached so the feed is retried on the next call.
            return PriceQuote(price_usd=self.fallback_usd, source=SOURCE_FALLBACK, fetched_at=now)

        quote = PriceQuote(price_usd=price, source=SOURCE_FEED, fetched_at=now)
        self._cache["quote"] = quote
        self._cache["timestamp"] = now
        logger.debug(f"Fetched SOL price: ${price}")
        return quote
