"""Spot price lookup (CryptoCompare) with a TTL cache and stale fallback."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

PRICE_URL = "https://min-api.cryptocompare.com/data/price"
CACHE_TTL = 30 * 60


@dataclass
class PriceEntry:
    price: float
    fetched_at: float

    def is_fresh(self, ttl: float) -> bool:
        return time.time() - self.fetched_at < ttl


class PriceOracle:
    """Converts token amounts to USD.

    A failed lookup falls back to the last cached price, then to 0. Pricing is
    an enrichment, so it never fails the calling collector.
    """

    def __init__(self, api_key: str = "", *, url: str = PRICE_URL, ttl: float = CACHE_TTL,
                 timeout: float = 10.0):
        self.api_key = api_key
        self.url = url
        self.ttl = ttl
        self.timeout = timeout
        self._cache: dict[str, PriceEntry] = {}

    async def price(self, symbol: str, currency: str = "USD") -> float:
        key = f"{symbol}-{currency}"
        cached = self._cache.get(key)
        if cached and cached.is_fresh(self.ttl):
            return cached.price

        params = {"fsym": symbol, "tsyms": currency}
        if self.api_key:
            params["api_key"] = self.api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.url, params=params)
            resp.raise_for_status()
            price = float(resp.json()[currency])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            if cached:
                logger.warning("Price lookup %s failed (%s), using stale %.2f", key, e, cached.price)
                return cached.price
            logger.warning("Price lookup %s failed (%s), no cached value", key, e)
            return 0.0

        self._cache[key] = PriceEntry(price, time.time())
        return price

    async def to_usd(self, amount: float, symbol: str = "ETH") -> float:
        if amount <= 0:
            return 0.0
        return amount * await self.price(symbol)
