from __future__ import annotations

from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from common.config import DEFAULT_API_BASE, Settings, load_credentials
from session.manager import SessionManager, build_storage
from state.token_store import FileSessionStorage, MemorySessionStorage


_ENV = (
    "COINTRACK_API_BASE",
    "COINTRACK_TIMEOUT",
    "COINTRACK_SESSION_FILE",
    "COINTRACK_SESSION_KEY",
    "COINTRACK_BROKERS",
    "COINTRACK_LOG_LEVEL",
    "COINTRACK_USERNAME",
    "COINTRACK_PASSWORD",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    s = Settings.from_env()
    assert s.api_base == DEFAULT_API_BASE
    assert s.timeout == 30.0
    assert s.session_file is None
    assert s.brokers == ["ZERODHA", "UPSTOX"]
    assert s.log_level == "INFO"
    assert isinstance(build_storage(s), MemorySessionStorage)


def test_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setenv("COINTRACK_API_BASE", "https://api.example.com/")
    monkeypatch.setenv("COINTRACK_TIMEOUT", "5")
    monkeypatch.setenv("COINTRACK_SESSION_FILE", str(tmp_path / "session.bin"))
    monkeypatch.setenv("COINTRACK_SESSION_KEY", key)
    monkeypatch.setenv("COINTRACK_BROKERS", " upstox, zerodha ,UPSTOX,,angelone")
    monkeypatch.setenv("COINTRACK_LOG_LEVEL", "debug")

    s = Settings.from_env()
    assert s.api_base == "https://api.example.com"
    assert s.timeout == 5.0
    assert s.session_file == tmp_path / "session.bin"
    assert s.brokers == ["UPSTOX", "ZERODHA", "ANGELONE"]
    assert s.log_level == "debug"
    assert isinstance(build_storage(s), FileSessionStorage)


def test_session_file_requires_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("COINTRACK_SESSION_FILE", str(tmp_path / "session.bin"))
    with pytest.raises(RuntimeError, match="COINTRACK_SESSION_KEY"):
        Settings.from_env()


def test_load_credentials(monkeypatch: pytest.MonkeyPatch):
    with pytest.raises(RuntimeError, match="COINTRACK_USERNAME"):
        load_credentials()
    monkeypatch.setenv("COINTRACK_USERNAME", "alice")
    with pytest.raises(RuntimeError, match="COINTRACK_PASSWORD"):
        load_credentials()
    monkeypatch.setenv("COINTRACK_PASSWORD", "pw")
    assert load_credentials() == ("alice", "pw")


def test_manager_from_env_wires_configured_brokers(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("COINTRACK_BROKERS", "zerodha")
    mgr = SessionManager.from_env()
    assert mgr.brokers.brokers == ["ZERODHA"]
    assert not mgr.poller.running
