from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Union

from common.cache import QueryCache
from common.cointrack import ApiError, CoinTrackClient
from common.config import DEFAULT_BROKERS
from common.log import bind_broker_context, get_logger
from state.models import BrokerConnectionStatus, BrokerStatusRecord


STATUS_PATH = "/api/brokers/{broker}/status"
STATUS_KEY = ("brokers", "status")
POLL_INTERVAL_SECONDS = 60.0

logger = get_logger(__name__)


class BrokerUnavailable(RuntimeError):
    """Status for one broker could not be fetched; never escapes the aggregator."""

    def __init__(self, broker: str, reason: str) -> None:
        super().__init__(f"{broker}: {reason}")
        self.broker = broker
        self.reason = reason


BrokerOutcome = Union[BrokerStatusRecord, BrokerUnavailable]


def parse_status_payload(broker: str, payload: Any) -> BrokerStatusRecord:
    """
    Map a backend status payload onto a BrokerStatusRecord.

    Accepts `{status, connected}` and the richer `{connectionStatus, ...}`
    form. Statuses outside CONNECTED/DISCONNECTED/ERROR (e.g. EXPIRED) are
    reported as DISCONNECTED with the raw value kept in `detail`.
    """
    if not isinstance(payload, dict):
        raise ValueError("status payload is not an object")
    raw = payload.get("status") or payload.get("connectionStatus")
    raw_status = str(raw).strip().upper() if raw is not None else ""
    detail: Optional[str] = None
    try:
        status = BrokerConnectionStatus(raw_status)
    except ValueError:
        status = BrokerConnectionStatus.DISCONNECTED
        detail = raw_status or None

    connected = payload.get("connected")
    if not isinstance(connected, bool):
        connected = status is BrokerConnectionStatus.CONNECTED
    if status is not BrokerConnectionStatus.CONNECTED:
        connected = False
    return BrokerStatusRecord(broker=broker, connected=connected, status=status, detail=detail)


class BrokerStatusAggregator:
    """
    Fetch the connection status of every configured broker in parallel.

    Each broker is an independent outcome: a failure for one broker becomes
    that broker's ERROR record and never affects the others or the caller.
    `get_all_statuses()` always returns exactly one record per broker, in the
    configured order.
    """

    def __init__(
        self,
        client: CoinTrackClient,
        brokers: Iterable[str] = DEFAULT_BROKERS,
        *,
        cache: Optional[QueryCache] = None,
    ) -> None:
        self._client = client
        self._brokers: List[str] = [b.upper() for b in brokers]
        self._cache = cache

    @property
    def brokers(self) -> List[str]:
        return list(self._brokers)

    async def get_all_statuses(self) -> List[BrokerStatusRecord]:
        outcomes = await asyncio.gather(
            *(self._fetch_outcome(b) for b in self._brokers),
        )
        records = [self._settle(b, o) for b, o in zip(self._brokers, outcomes)]
        if self._cache is not None:
            self._cache.set(STATUS_KEY, records)
        return records

    async def _fetch_outcome(self, broker: str) -> BrokerOutcome:
        try:
            payload = await self._client.get(STATUS_PATH.format(broker=broker))
            return parse_status_payload(broker, payload)
        except ApiError as exc:
            return BrokerUnavailable(broker, exc.message)
        except Exception as exc:
            # Any failure is confined to this broker's record
            return BrokerUnavailable(broker, f"{type(exc).__name__}: {exc}")

    @staticmethod
    def _settle(broker: str, outcome: BrokerOutcome) -> BrokerStatusRecord:
        if isinstance(outcome, BrokerStatusRecord):
            return outcome
        bind_broker_context(logger, broker).warning("broker_status_unavailable", reason=outcome.reason)
        return BrokerStatusRecord.failed(broker, outcome.reason)


class BrokerStatusPoller:
    """
    Re-poll broker statuses on a fixed interval while its consumer is active.

    Use `start()`/`stop()` or `async with poller:`. Stopping cancels the
    background task, so no timer outlives the view that started it.
    """

    def __init__(
        self,
        aggregator: BrokerStatusAggregator,
        *,
        interval: float = POLL_INTERVAL_SECONDS,
        on_update: Optional[Callable[[Sequence[BrokerStatusRecord]], None]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._aggregator = aggregator
        self._interval = interval
        self._on_update = on_update
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self._latest: Optional[List[BrokerStatusRecord]] = None
        self.poll_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def latest(self) -> Optional[List[BrokerStatusRecord]]:
        return self._latest

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("broker_poller_started", interval=self._interval, brokers=self._aggregator.brokers)

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("broker_poller_stopped", polls=self.poll_count)

    async def poll_once(self) -> List[BrokerStatusRecord]:
        records = await self._aggregator.get_all_statuses()
        self.poll_count += 1
        self._latest = records
        if self._on_update is not None:
            self._on_update(records)
        return records

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await self._sleep(self._interval)

    async def __aenter__(self) -> "BrokerStatusPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


__all__ = [
    "BrokerStatusAggregator",
    "BrokerStatusPoller",
    "BrokerUnavailable",
    "parse_status_payload",
    "POLL_INTERVAL_SECONDS",
    "STATUS_KEY",
]
