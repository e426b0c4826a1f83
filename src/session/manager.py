from __future__ import annotations

from typing import Optional

import httpx

from common.cache import QueryCache
from common.cointrack import CoinTrackClient
from common.config import Settings
from common.log import get_logger
from portfolio.brokers import BrokerStatusAggregator, BrokerStatusPoller
from portfolio.sync import PortfolioSyncOrchestrator
from portfolio.views import PortfolioViews
from state.token_store import FileSessionStorage, MemorySessionStorage, SessionStorage, TokenStore

from .auth import AuthSession, AuthState
from .step_up import StepUpController


logger = get_logger(__name__)


def build_storage(settings: Settings) -> SessionStorage:
    if settings.session_file is not None and settings.session_key:
        return FileSessionStorage(settings.session_file, settings.session_key)
    return MemorySessionStorage()


class SessionManager:
    """
    Wires one user session: token store, HTTP client, cache, auth, step-up,
    broker status and portfolio sync. Owned by whatever composes the UI.

    Usage
    - `async with SessionManager(settings) as mgr:` runs `init()` on entry and
      `teardown()` on exit.
    - `mgr.poller` is created stopped; the consuming view starts/stops it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        storage: Optional[SessionStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.tokens = TokenStore(storage if storage is not None else build_storage(self.settings))
        self.client = CoinTrackClient(
            self.tokens,
            base_url=self.settings.api_base,
            timeout=self.settings.timeout,
            client=http_client,
        )
        self.cache = QueryCache()
        self.step_up = StepUpController(self.client, self.tokens)
        self.auth = AuthSession(self.client, self.tokens, self.step_up, cache=self.cache)
        self.brokers = BrokerStatusAggregator(self.client, self.settings.brokers, cache=self.cache)
        self.poller = BrokerStatusPoller(self.brokers)
        self.portfolio = PortfolioViews(self.client, self.cache)
        self.sync = PortfolioSyncOrchestrator(self.client, self.cache)

    @classmethod
    def from_env(cls) -> "SessionManager":
        return cls(Settings.from_env())

    async def init(self) -> AuthState:
        logger.info("session_manager_init", api_base=self.settings.api_base)
        return await self.auth.init()

    async def teardown(self) -> None:
        await self.poller.stop()
        self.auth.teardown()
        await self.client.aclose()
        logger.info("session_manager_teardown")

    async def __aenter__(self) -> "SessionManager":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.teardown()


__all__ = ["SessionManager", "build_storage"]
