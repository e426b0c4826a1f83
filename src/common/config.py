from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator


# Environment variable names
ENV_API_BASE = "COINTRACK_API_BASE"
ENV_TIMEOUT = "COINTRACK_TIMEOUT"
ENV_SESSION_FILE = "COINTRACK_SESSION_FILE"
ENV_SESSION_KEY = "COINTRACK_SESSION_KEY"
ENV_BROKERS = "COINTRACK_BROKERS"
ENV_LOG_LEVEL = "COINTRACK_LOG_LEVEL"
ENV_USERNAME = "COINTRACK_USERNAME"
ENV_PASSWORD = "COINTRACK_PASSWORD"

DEFAULT_API_BASE = "http://localhost:8080"
DEFAULT_BROKERS: Tuple[str, ...] = ("ZERODHA", "UPSTOX")


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(name)
    return v if v not in (None, "") else default


def _require(v: Optional[str], what: str) -> str:
    if not v:
        raise RuntimeError(f"Missing required configuration: {what}")
    return v


def _parse_brokers(raw: Optional[str]) -> List[str]:
    """Parse a CSV broker list ("zerodha, upstox") into upper-case ids, order kept."""
    if not raw:
        return list(DEFAULT_BROKERS)
    out: List[str] = []
    for tok in raw.replace("\n", ",").split(","):
        tok = tok.strip().upper()
        if tok and tok not in out:
            out.append(tok)
    return out or list(DEFAULT_BROKERS)


class Settings(BaseModel):
    """
    Client configuration.

    The backend base URL is the only setting the core needs; the rest tune
    the transport, session-scoped storage and logging.
    """

    api_base: str = DEFAULT_API_BASE
    timeout: float = Field(default=30.0, gt=0)
    session_file: Optional[Path] = None
    session_key: Optional[str] = None
    brokers: List[str] = Field(default_factory=lambda: list(DEFAULT_BROKERS))
    log_level: str = "INFO"

    @field_validator("api_base")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @classmethod
    def from_env(cls) -> "Settings":
        session_file = _getenv(ENV_SESSION_FILE)
        session_key = _getenv(ENV_SESSION_KEY)
        if session_file:
            # An encrypted session file is useless without its key
            session_key = _require(session_key, ENV_SESSION_KEY)
        return cls(
            api_base=_getenv(ENV_API_BASE, DEFAULT_API_BASE),
            timeout=float(_getenv(ENV_TIMEOUT, "30")),
            session_file=Path(session_file) if session_file else None,
            session_key=session_key,
            brokers=_parse_brokers(_getenv(ENV_BROKERS)),
            log_level=_getenv(ENV_LOG_LEVEL, "INFO"),
        )


def load_credentials() -> Tuple[str, str]:
    """Read the headless login credentials from the environment."""
    username = _require(_getenv(ENV_USERNAME), ENV_USERNAME)
    password = _require(_getenv(ENV_PASSWORD), ENV_PASSWORD)
    return username, password


__all__ = ["Settings", "load_credentials", "DEFAULT_API_BASE", "DEFAULT_BROKERS"]
