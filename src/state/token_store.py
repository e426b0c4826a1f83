from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken
from pydantic import ValidationError

from common.log import get_logger
from .models import SessionToken


STEP_UP_KEY = "tempToken"

logger = get_logger(__name__)


class TokenConflictError(RuntimeError):
    """A restricted step-up token and a full session token would share the slot."""


class SessionStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemorySessionStorage:
    """Session-scoped storage that lives as long as the process."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


class FileSessionStorage:
    """
    Session-scoped storage backed by one file, encrypted at rest using Fernet.

    - The whole key/value map is serialized as deterministic JSON and encrypted.
    - A missing, unreadable or tampered file reads as an empty map: a lost
      step-up token only means the user has to log in again.
    - `close()` deletes the file, ending the "browsing session".
    """

    def __init__(self, path: os.PathLike[str] | str, fernet_key: str | bytes) -> None:
        self._path = Path(path)
        self._fernet = _to_fernet(fernet_key)

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self._path.read_bytes())
        except InvalidToken:
            logger.warning("session_storage_unreadable", path=str(self._path))
            return {}
        try:
            raw = json.loads(decrypted.decode("utf-8"))
        except ValueError:
            logger.warning("session_storage_corrupt", path=str(self._path))
            return {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _save(self, data: Dict[str, str]) -> None:
        if not data:
            self._path.unlink(missing_ok=True)
            return
        plaintext = json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_bytes(self._fernet.encrypt(plaintext))

    def get_item(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)

    def close(self) -> None:
        self._path.unlink(missing_ok=True)


class TokenStore:
    """
    Holder of the current bearer token.

    - `get()` is synchronous and never touches the network.
    - Restricted (step-up) tokens are mirrored to session-scoped storage so a
      reload can resume the step-up; full session tokens stay in memory only,
      the backend refresh cookie provides their durability.
    - A restricted token never replaces a full one or vice versa: `set()`
      raises TokenConflictError, the caller has to `clear()` first.
    """

    def __init__(self, storage: Optional[SessionStorage] = None) -> None:
        self._storage: SessionStorage = storage if storage is not None else MemorySessionStorage()
        self._token: Optional[SessionToken] = None
        self._version = 0

    @property
    def version(self) -> int:
        """Bumped on every set/clear; lets callers detect a token swap."""
        return self._version

    def get(self) -> Optional[SessionToken]:
        return self._token

    def bearer(self) -> Optional[str]:
        return self._token.value if self._token is not None else None

    def set(self, token: SessionToken) -> None:
        current = self._token
        if current is not None and current.restricted != token.restricted:
            raise TokenConflictError(
                f"refusing to replace {current.purpose.value} token with {token.purpose.value} token"
            )
        self._token = token
        self._version += 1
        if token.restricted:
            self._storage.set_item(STEP_UP_KEY, token.model_dump_json())

    def clear(self) -> None:
        self._token = None
        self._version += 1
        self._storage.remove_item(STEP_UP_KEY)

    def load_persisted(self) -> Optional[SessionToken]:
        """Return the step-up token left in session storage, if any (does not install it)."""
        raw = self._storage.get_item(STEP_UP_KEY)
        if not raw:
            return None
        try:
            token = SessionToken.model_validate_json(raw)
        except ValidationError:
            logger.warning("discarding_invalid_step_up_token")
            self._storage.remove_item(STEP_UP_KEY)
            return None
        if not token.restricted:
            # Full session tokens are never persisted; treat as foreign data
            self._storage.remove_item(STEP_UP_KEY)
            return None
        return token


__all__ = [
    "STEP_UP_KEY",
    "SessionStorage",
    "MemorySessionStorage",
    "FileSessionStorage",
    "TokenStore",
    "TokenConflictError",
]
