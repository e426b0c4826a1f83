from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

import httpx

from state.models import SessionToken, TokenPurpose
from state.token_store import TokenConflictError, TokenStore

from .config import DEFAULT_API_BASE
from .log import get_logger


LOGIN_PATH = "/api/auth/login"
LOGOUT_PATH = "/api/auth/logout"
REFRESH_PATH = "/api/auth/refresh"
CURRENT_USER_PATH = "/api/users/me"

NETWORK_ERROR_MESSAGE = "Network error. Please check your internet connection."
SERVER_ERROR_MESSAGE = "Server error. Please try again later."
CLIENT_ERROR_MESSAGE = "Invalid request. Please check your input."
SESSION_CHANGED_MESSAGE = "Session changed. Please try again."

logger = get_logger(__name__)


class ApiError(RuntimeError):
    """Base error for CoinTrack backend calls; `message` is safe to show to a user."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload


class NetworkFailure(ApiError):
    """Transport-level failure: no HTTP response was received."""


class AuthExpired(ApiError):
    """401 that the refresh-and-retry cycle could not recover."""


class AuthInvalid(ApiError):
    """Credentials or a verification code were rejected."""


@dataclass(frozen=True)
class PendingRequest:
    """One originating request as it moves through the refresh interceptor."""

    method: str
    path: str
    json: Any = None
    params: Optional[Dict[str, Any]] = None
    retried: bool = False
    # Auth endpoints (login, refresh) must never trigger a refresh themselves
    skip_refresh: bool = False

    def mark_retried(self) -> "PendingRequest":
        return replace(self, retried=True)


def user_message(resp: httpx.Response) -> str:
    """Pick the most useful human-readable message out of an error response."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for field in ("message", "error"):
            val = body.get(field)
            if isinstance(val, str) and val:
                return val
    if resp.status_code >= 500:
        return SERVER_ERROR_MESSAGE
    if isinstance(body, str) and body:
        return body
    if body is None and resp.text.strip():
        return resp.text.strip()[:200]
    return CLIENT_ERROR_MESSAGE


def unwrap(payload: Any) -> Any:
    """Strip the backend's `{success, data, message}` envelope when present."""
    if isinstance(payload, dict) and payload.get("success") is True and "data" in payload:
        data = payload["data"]
        return data if data is not None else {}
    return payload


def extract_token(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    token = payload.get("token") or payload.get("accessToken")
    return token if isinstance(token, str) and token else None


class CoinTrackClient:
    """
    Async CoinTrack backend client with a one-shot refresh interceptor.

    Notes
    - Every request carries the Token Store's bearer token, read at dispatch
      time so a replay picks up a freshly refreshed token.
    - A 401 on a request not yet retried triggers exactly one refresh followed
      by one replay. The replay's own 401 is final (AuthExpired).
    - Refreshes are single-flight: concurrent 401s await the same refresh call.
    - Restricted step-up tokens are never refreshed; the refresh cookie would
      otherwise swap a full session into the step-up slot.
    - The refresh credential is an HttpOnly cookie kept by httpx's cookie jar;
      this class never reads or sends it explicitly.
    """

    def __init__(
        self,
        tokens: TokenStore,
        *,
        base_url: str = DEFAULT_API_BASE,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._tokens = tokens
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"Content-Type": "application/json"},
        )
        self._refresh_inflight: Optional[asyncio.Future[None]] = None
        self.refresh_count = 0
        # Set by the auth session to learn about unrecoverable expiry
        self.on_auth_expired: Optional[Callable[[AuthExpired], None]] = None

    @property
    def tokens(self) -> TokenStore:
        return self._tokens

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "CoinTrackClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # --------------- Public API ---------------
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        skip_refresh: bool = False,
    ) -> httpx.Response:
        """
        Send a request through the interceptor and return the successful response.

        Raises AuthExpired, NetworkFailure or ApiError (message normalized).
        """
        pending = PendingRequest(
            method=method.upper(),
            path=path,
            json=json,
            params=params,
            skip_refresh=skip_refresh,
        )
        resp = await self._dispatch(pending)

        if resp.status_code == 401 and self._should_refresh(pending):
            pending = pending.mark_retried()
            # Refresh failure propagates unchanged to the caller
            await self.refresh_session()
            resp = await self._dispatch(pending)

        if resp.is_error:
            raise self._error_for(resp)
        return resp

    async def call(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        skip_refresh: bool = False,
    ) -> Any:
        """Like `request()` but returns the decoded, unwrapped JSON body (None if empty)."""
        resp = await self.request(method, path, json=json, params=params, skip_refresh=skip_refresh)
        if not resp.content:
            return None
        try:
            return unwrap(resp.json())
        except ValueError as exc:
            raise ApiError(
                f"Failed to parse JSON from {path}", status_code=resp.status_code
            ) from exc

    async def get(self, path: str, **kwargs: Any) -> Any:
        return await self.call("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Any:
        return await self.call("POST", path, **kwargs)

    async def refresh_session(self) -> None:
        """
        Exchange the refresh cookie for a new session, collapsing concurrent callers.

        Raises AuthExpired when the backend rejects the refresh.
        """
        task = self._refresh_inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._perform_refresh())
            self._refresh_inflight = task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._refresh_inflight is task:
                self._refresh_inflight = None

    # --------------- Internal ---------------
    def _should_refresh(self, pending: PendingRequest) -> bool:
        if pending.retried or pending.skip_refresh:
            return False
        current = self._tokens.get()
        return current is None or not current.restricted

    async def _perform_refresh(self) -> None:
        self.refresh_count += 1
        started_version = self._tokens.version
        logger.info("session_refresh_started")
        try:
            payload = await self.call("POST", REFRESH_PATH, skip_refresh=True)
        except AuthExpired as exc:
            logger.warning("session_refresh_rejected", status=exc.status_code)
            if self.on_auth_expired is not None:
                self.on_auth_expired(exc)
            raise
        except ApiError as exc:
            logger.warning("session_refresh_failed", error=exc.message)
            raise

        if self._tokens.version != started_version:
            # A login or logout replaced the session while the refresh was in flight
            logger.info("session_refresh_discarded")
            raise AuthExpired(SESSION_CHANGED_MESSAGE, status_code=401)

        token = extract_token(payload)
        if token is not None:
            try:
                self._tokens.set(SessionToken(value=token, purpose=TokenPurpose.LOGIN_COMPLETE))
            except TokenConflictError as exc:
                logger.warning("session_refresh_conflict")
                raise AuthExpired(SESSION_CHANGED_MESSAGE, status_code=401) from exc
        logger.info("session_refresh_succeeded", rotated=token is not None)

    async def _dispatch(self, pending: PendingRequest) -> httpx.Response:
        headers: Dict[str, str] = {}
        bearer = self._tokens.bearer()
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        started = time.monotonic()
        try:
            resp = await self._client.request(
                pending.method,
                pending.path,
                json=pending.json,
                params=pending.params,
                headers=headers,
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning(
                "api_call_network_error",
                method=pending.method,
                path=pending.path,
                error=str(exc),
            )
            raise NetworkFailure(NETWORK_ERROR_MESSAGE) from exc

        logger.debug(
            "api_call",
            method=pending.method,
            path=pending.path,
            status=resp.status_code,
            retried=pending.retried,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return resp

    @staticmethod
    def _error_for(resp: httpx.Response) -> ApiError:
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        message = user_message(resp)
        if resp.status_code == 401:
            return AuthExpired(message, status_code=401, payload=payload)
        return ApiError(message, status_code=resp.status_code, payload=payload)


__all__ = [
    "CoinTrackClient",
    "PendingRequest",
    "ApiError",
    "NetworkFailure",
    "AuthExpired",
    "AuthInvalid",
    "user_message",
    "unwrap",
    "extract_token",
    "LOGIN_PATH",
    "LOGOUT_PATH",
    "REFRESH_PATH",
    "CURRENT_USER_PATH",
]
