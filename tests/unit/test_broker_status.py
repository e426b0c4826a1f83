from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from common.cache import QueryCache
from common.cointrack import CoinTrackClient
from portfolio.brokers import (
    STATUS_KEY,
    BrokerStatusAggregator,
    BrokerStatusPoller,
    parse_status_payload,
)
from state.models import BrokerConnectionStatus, BrokerStatusRecord, SessionToken
from state.token_store import TokenStore


def _client(backend) -> CoinTrackClient:
    tokens = TokenStore()
    tokens.set(SessionToken(value="t1"))
    return CoinTrackClient(tokens, client=backend.http_client())


def test_one_broker_failing_does_not_affect_the_other(backend):
    backend.on("GET", "/api/brokers/ZERODHA/status", 200, {"broker": "ZERODHA", "connected": True, "status": "CONNECTED"})

    def upstox(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("network down", request=request)

    backend.route("GET", "/api/brokers/UPSTOX/status", upstox)
    cache = QueryCache()

    async def scenario():
        agg = BrokerStatusAggregator(_client(backend), ["zerodha", "upstox"], cache=cache)
        return await agg.get_all_statuses()

    records = asyncio.run(scenario())
    assert [r.broker for r in records] == ["ZERODHA", "UPSTOX"]
    zerodha, upstox = records
    assert zerodha.connected is True
    assert zerodha.status is BrokerConnectionStatus.CONNECTED
    assert upstox.connected is False
    assert upstox.status is BrokerConnectionStatus.ERROR
    assert upstox.detail
    assert cache.get(STATUS_KEY) == records


def test_http_error_and_garbage_payload_become_error_records(backend):
    backend.on("GET", "/api/brokers/ZERODHA/status", 502, {"message": "Broker API unreachable"})
    backend.on("GET", "/api/brokers/UPSTOX/status", 200, ["not", "an", "object"])

    async def scenario():
        agg = BrokerStatusAggregator(_client(backend))
        return await agg.get_all_statuses()

    zerodha, upstox = asyncio.run(scenario())
    assert zerodha.status is BrokerConnectionStatus.ERROR
    assert zerodha.detail == "Broker API unreachable"
    assert upstox.status is BrokerConnectionStatus.ERROR
    assert "ValueError" in upstox.detail


def test_broker_fetches_run_in_parallel(backend):
    active = {"now": 0, "peak": 0}

    async def slow(request: httpx.Request) -> httpx.Response:
        active["now"] += 1
        active["peak"] = max(active["peak"], active["now"])
        await asyncio.sleep(0.01)
        active["now"] -= 1
        return httpx.Response(200, json={"status": "DISCONNECTED", "connected": False})

    async def scenario():
        transport = httpx.MockTransport(slow)
        http = httpx.AsyncClient(transport=transport, base_url="https://api.cointrack.test")
        agg = BrokerStatusAggregator(CoinTrackClient(TokenStore(), client=http), ["A", "B", "C"])
        return await agg.get_all_statuses()

    records = asyncio.run(scenario())
    assert len(records) == 3
    assert active["peak"] == 3


@pytest.mark.parametrize(
    "payload, status, connected, detail",
    [
        ({"status": "CONNECTED", "connected": True}, BrokerConnectionStatus.CONNECTED, True, None),
        ({"status": "connected"}, BrokerConnectionStatus.CONNECTED, True, None),
        ({"connectionStatus": "EXPIRED", "connected": True}, BrokerConnectionStatus.DISCONNECTED, False, "EXPIRED"),
        ({"status": "ERROR", "connected": True}, BrokerConnectionStatus.ERROR, False, None),
        ({}, BrokerConnectionStatus.DISCONNECTED, False, None),
    ],
)
def test_parse_status_payload(payload, status, connected, detail):
    record = parse_status_payload("ZERODHA", payload)
    assert record.status is status
    assert record.connected is connected
    assert record.detail == detail


class _FakeAggregator:
    def __init__(self) -> None:
        self.calls = 0
        self.brokers = ["ZERODHA"]

    async def get_all_statuses(self) -> List[BrokerStatusRecord]:
        self.calls += 1
        return [BrokerStatusRecord(broker="ZERODHA", connected=True, status=BrokerConnectionStatus.CONNECTED)]


def test_poller_polls_on_interval_until_stopped():
    agg = _FakeAggregator()
    updates: List[int] = []
    sleeps: List[float] = []

    async def scenario():
        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            # Yield so the test can observe each cycle
            await asyncio.sleep(0)

        poller = BrokerStatusPoller(agg, on_update=lambda r: updates.append(len(r)), sleep=fake_sleep)
        poller.start()
        poller.start()  # idempotent
        for _ in range(10):
            await asyncio.sleep(0)
        assert poller.running
        await poller.stop()
        return poller

    poller = asyncio.run(scenario())
    assert not poller.running
    assert agg.calls >= 2
    assert poller.poll_count == agg.calls
    assert set(sleeps) == {60.0}
    assert updates and all(n == 1 for n in updates)
    assert poller.latest[0].broker == "ZERODHA"


def test_poller_context_manager_cancels_timer():
    agg = _FakeAggregator()

    async def scenario():
        async with BrokerStatusPoller(agg, interval=0.01) as poller:
            await asyncio.sleep(0.035)
            assert poller.running
        calls_at_exit = agg.calls
        await asyncio.sleep(0.03)
        return poller, calls_at_exit

    poller, calls_at_exit = asyncio.run(scenario())
    assert not poller.running
    assert calls_at_exit >= 2
    assert agg.calls == calls_at_exit


def test_poller_rejects_non_positive_interval():
    with pytest.raises(ValueError):
        BrokerStatusPoller(_FakeAggregator(), interval=0)
