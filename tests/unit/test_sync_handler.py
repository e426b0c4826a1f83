from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from common.config import Settings
from portfolio.sync import PortfolioSyncOrchestrator
from session.manager import SessionManager
from state.token_store import MemorySessionStorage
from sync import handler as sync_handler


LOGIN = "/api/auth/login"
LOGOUT = "/api/auth/logout"
ME = "/api/users/me"


def _manager(backend) -> SessionManager:
    settings = Settings(brokers=["ZERODHA", "UPSTOX"])
    mgr = SessionManager(settings, storage=MemorySessionStorage(), http_client=backend.http_client())
    # No settling delay in tests
    mgr.sync = PortfolioSyncOrchestrator(mgr.client, mgr.cache, settle_delay=0)
    return mgr


def test_run_once_reports_brokers_and_sync(backend):
    backend.on("POST", "/api/auth/refresh", 401)
    backend.on("POST", LOGIN, 200, {"token": "t1"})
    backend.on("GET", "/api/brokers/ZERODHA/status", 200, {"status": "CONNECTED", "connected": True})
    backend.on("GET", "/api/brokers/UPSTOX/status", 503)
    backend.on("POST", "/api/portfolio/refresh", 200, {"success": True})
    backend.on("POST", LOGOUT, 200)

    def me_after_login(request: httpx.Request) -> httpx.Response:
        if request.headers.get("Authorization") == "Bearer t1":
            return httpx.Response(200, json={"id": "u1"})
        return httpx.Response(401)

    backend.route("GET", ME, me_after_login)

    result = asyncio.run(sync_handler.run_once(manager=_manager(backend), username="alice", password="pw"))

    assert result["ok"] is True
    statuses = {b["broker"]: b["status"] for b in result["brokers"]}
    assert statuses == {"ZERODHA": "CONNECTED", "UPSTOX": "ERROR"}
    assert result["sync"]["invalidated"] is True
    assert backend.count("POST", LOGOUT) == 1
    # Result must be JSON-serializable for the CLI
    json.dumps(result)


def test_run_once_stops_when_step_up_required(backend):
    backend.on("GET", ME, 404)
    backend.on("POST", LOGIN, 200, {"token": "tmp", "purpose": "totp-login-required"})

    async def scenario():
        mgr = _manager(backend)
        result = await sync_handler.run_once(manager=mgr, username="alice", password="pw")
        return mgr, result

    mgr, result = asyncio.run(scenario())
    assert result == {"ok": False, "step_up": "TOTP_LOGIN"}
    assert mgr.tokens.get() is None
    assert backend.count("POST", "/api/portfolio/refresh") == 0


def test_run_once_login_rejected(backend):
    backend.on("GET", ME, 404)
    backend.on("POST", LOGIN, 401, {"message": "Invalid username or password"})

    result = asyncio.run(sync_handler.run_once(manager=_manager(backend), username="alice", password="bad"))
    assert result == {"ok": False, "error": "Invalid username or password"}


def test_run_once_sync_failure_is_reported(backend):
    backend.on("GET", ME, 404)
    backend.on("POST", LOGIN, 200, {"token": "t1", "userId": "u1"})
    backend.on("GET", "/api/brokers/ZERODHA/status", 200, {"status": "DISCONNECTED"})
    backend.on("GET", "/api/brokers/UPSTOX/status", 200, {"connectionStatus": "EXPIRED"})
    backend.on("POST", "/api/portfolio/refresh", 500)
    backend.on("POST", LOGOUT, 200)

    result = asyncio.run(sync_handler.run_once(manager=_manager(backend), username="alice", password="pw"))
    assert result["ok"] is False
    assert result["sync"]["invalidated"] is False
    assert result["sync"]["error"] == "Server error. Please try again later."
    assert [b["status"] for b in result["brokers"]] == ["DISCONNECTED", "DISCONNECTED"]


def test_run_once_reads_credentials_from_env(backend, monkeypatch):
    monkeypatch.delenv("COINTRACK_USERNAME", raising=False)
    monkeypatch.delenv("COINTRACK_PASSWORD", raising=False)

    with pytest.raises(RuntimeError, match="COINTRACK_USERNAME"):
        asyncio.run(sync_handler.run_once(manager=_manager(backend)))
    assert backend.calls == []


def test_main_prints_result_and_exit_code(monkeypatch, capsys):
    async def fake_run_once(*, settings=None, **_kwargs):
        assert settings is not None
        return {"ok": False, "error": "boom"}

    levels = []
    monkeypatch.delenv("COINTRACK_SESSION_FILE", raising=False)
    monkeypatch.setenv("COINTRACK_LOG_LEVEL", "WARNING")
    monkeypatch.setattr(sync_handler, "run_once", fake_run_once)
    monkeypatch.setattr(sync_handler, "configure_logging", levels.append)

    code = sync_handler.main()
    out = capsys.readouterr().out
    assert code == 1
    assert levels == ["WARNING"]
    assert json.loads(out) == {"ok": False, "error": "boom"}
