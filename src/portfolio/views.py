from __future__ import annotations

from typing import Any

from common.cache import QueryCache
from common.cointrack import CoinTrackClient


PORTFOLIO_PREFIX = ("portfolio",)
SUMMARY_KEY = ("portfolio", "summary")
NET_POSITIONS_KEY = ("portfolio", "net-positions")

SUMMARY_PATH = "/api/portfolio/summary"
NET_POSITIONS_PATH = "/api/portfolio/net-positions"

# Summary is fairly static during the day unless a sync happens
SUMMARY_STALE_SECONDS = 5 * 60.0


class PortfolioViews:
    """Read-only portfolio endpoints served through the shared QueryCache."""

    def __init__(self, client: CoinTrackClient, cache: QueryCache) -> None:
        self._client = client
        self._cache = cache

    async def summary(self) -> Any:
        return await self._cache.fetch(
            SUMMARY_KEY,
            lambda: self._client.get(SUMMARY_PATH),
            stale_time=SUMMARY_STALE_SECONDS,
        )

    async def net_positions(self) -> Any:
        return await self._cache.fetch(NET_POSITIONS_KEY, lambda: self._client.get(NET_POSITIONS_PATH))


__all__ = [
    "PortfolioViews",
    "PORTFOLIO_PREFIX",
    "SUMMARY_KEY",
    "NET_POSITIONS_KEY",
]
