from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Sequence

from common.cache import QueryCache, QueryKey
from common.cointrack import ApiError, CoinTrackClient
from common.log import get_logger
from state.models import SyncCycle, utcnow

from .views import PORTFOLIO_PREFIX


REFRESH_PATH = "/api/portfolio/refresh"
SETTLE_DELAY_SECONDS = 2.0

logger = get_logger(__name__)


class SyncFailed(RuntimeError):
    """The backend refused or never acknowledged a portfolio refresh."""

    def __init__(self, message: str, cycle: SyncCycle) -> None:
        super().__init__(message)
        self.cycle = cycle


class PortfolioSyncOrchestrator:
    """
    Trigger a backend-side portfolio refresh and invalidate dependent views.

    Notes
    - The backend acknowledges before reconciliation finishes and offers no
      completion signal, so the cycle waits a fixed settling delay before
      invalidating. This is an approximation, not a completion protocol.
    - Overlapping calls are no-ops while a cycle is in flight.
    - On failure the in-flight guard is released but nothing is invalidated.
    """

    def __init__(
        self,
        client: CoinTrackClient,
        cache: QueryCache,
        *,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        invalidate: Sequence[QueryKey] = (PORTFOLIO_PREFIX,),
        on_state_change: Optional[Callable[[bool], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._cache = cache
        self._settle_delay = settle_delay
        self._prefixes = tuple(invalidate)
        self._on_state_change = on_state_change
        self._sleep = sleep
        self._refreshing = False
        self.last_cycle: Optional[SyncCycle] = None

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    def _set_refreshing(self, value: bool) -> None:
        self._refreshing = value
        if self._on_state_change is not None:
            self._on_state_change(value)

    async def trigger_refresh(self) -> Optional[SyncCycle]:
        """
        Run one refresh cycle.

        Returns the completed SyncCycle, or None when a cycle was already in
        flight. Raises SyncFailed if the backend rejects the refresh.
        """
        if self._refreshing:
            logger.debug("portfolio_sync_skipped_in_flight")
            return None

        cycle = SyncCycle()
        self.last_cycle = cycle
        self._set_refreshing(True)
        logger.info("portfolio_sync_started")
        try:
            await self._client.post(REFRESH_PATH)
            cycle.backend_ack_received = True
            await self._sleep(self._settle_delay)
            for prefix in self._prefixes:
                self._cache.invalidate(prefix)
            cycle.invalidated = True
        except ApiError as exc:
            cycle.error = exc.message
            logger.warning("portfolio_sync_failed", error=exc.message, status=exc.status_code)
            raise SyncFailed(exc.message, cycle) from exc
        finally:
            cycle.finished_at = utcnow()
            self._set_refreshing(False)

        logger.info("portfolio_sync_completed")
        return cycle


__all__ = ["PortfolioSyncOrchestrator", "SyncFailed", "SETTLE_DELAY_SECONDS"]
