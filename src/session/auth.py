from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from common.cache import QueryCache
from common.cointrack import (
    CURRENT_USER_PATH,
    LOGIN_PATH,
    LOGOUT_PATH,
    ApiError,
    AuthExpired,
    AuthInvalid,
    CoinTrackClient,
    NetworkFailure,
    extract_token,
)
from common.log import get_logger
from state.models import SessionToken, StepUpPhase, TokenPurpose, User
from state.token_store import TokenStore

from .step_up import LOGIN_PAGE, StepUpController


DASHBOARD_PAGE = "/dashboard"
PUBLIC_ROUTES = ("/", "/login", "/register", "/forgot-password", "/calculator")
AUTH_PAGES = ("/login", "/register", "/forgot-password")

# Login `purpose` spellings accepted from the backend
_PURPOSE_ALIASES: Dict[str, TokenPurpose] = {
    "normal-session": TokenPurpose.LOGIN_COMPLETE,
    "login_complete": TokenPurpose.LOGIN_COMPLETE,
    "totp-setup-required": TokenPurpose.TOTP_SETUP,
    "totp_setup": TokenPurpose.TOTP_SETUP,
    "totp-login-required": TokenPurpose.TOTP_LOGIN,
    "totp_login": TokenPurpose.TOTP_LOGIN,
}

logger = get_logger(__name__)


class AuthState(BaseModel):
    user: Optional[User] = None
    loading: bool = True
    error: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.user is not None


class LoginOutcome(BaseModel):
    purpose: TokenPurpose
    user: Optional[User] = None
    # Page the UI should show next
    redirect_to: str
    message: Optional[str] = None

    @property
    def requires_step_up(self) -> bool:
        return self.purpose is not TokenPurpose.LOGIN_COMPLETE


class RouteDecision(str, Enum):
    WAIT = "WAIT"
    RENDER = "RENDER"
    REDIRECT = "REDIRECT"


@dataclass(frozen=True)
class RouteResolution:
    decision: RouteDecision
    location: Optional[str] = None


def parse_login_payload(payload: Any) -> tuple[SessionToken, Dict[str, Any]]:
    """
    Turn a login response into (token, body).

    Accepts `{token, purpose}` as well as the legacy flag form
    `{requiresOtp | requireTotpSetup, tempToken}`.
    """
    if not isinstance(payload, dict):
        raise AuthInvalid("Invalid server response during login")

    purpose = TokenPurpose.LOGIN_COMPLETE
    raw_purpose = payload.get("purpose")
    if isinstance(raw_purpose, str) and raw_purpose:
        key = raw_purpose.strip().lower()
        if key not in _PURPOSE_ALIASES:
            raise AuthInvalid(f"Unknown login purpose: {raw_purpose}")
        purpose = _PURPOSE_ALIASES[key]
    elif payload.get("requiresOtp"):
        purpose = TokenPurpose.TOTP_LOGIN
    elif payload.get("requireTotpSetup"):
        purpose = TokenPurpose.TOTP_SETUP

    if purpose is TokenPurpose.LOGIN_COMPLETE:
        value = extract_token(payload)
    else:
        value = payload.get("tempToken") or extract_token(payload)
    if not value:
        raise AuthInvalid("Invalid server response during login")
    return SessionToken(value=value, purpose=purpose), payload


def is_public_route(path: str) -> bool:
    for route in PUBLIC_ROUTES:
        if path == route:
            return True
        if route != "/" and path.startswith(route + "/"):
            return True
    return False


class AuthSession:
    """
    Process-wide authentication state as an explicit object.

    Lifecycle: `await init()` once when the application loads, `teardown()`
    when it is disposed. Subscribers are called with the new AuthState after
    every change. Only session-level failures land here: the client reports
    an unrecoverable refresh through `on_auth_expired`, which logs the user out.
    """

    def __init__(
        self,
        client: CoinTrackClient,
        tokens: TokenStore,
        step_up: StepUpController,
        *,
        cache: Optional[QueryCache] = None,
    ) -> None:
        self._client = client
        self._tokens = tokens
        self._step_up = step_up
        self._cache = cache
        self._state = AuthState()
        self._listeners: List[Callable[[AuthState], None]] = []
        self._initialized = False

    # --------------- State ---------------
    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def user(self) -> Optional[User]:
        return self._state.user

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def step_up(self) -> StepUpController:
        return self._step_up

    def subscribe(self, listener: Callable[[AuthState], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes: Any) -> None:
        self._state = self._state.model_copy(update=changes)
        for listener in list(self._listeners):
            listener(self._state)

    # --------------- Lifecycle ---------------
    async def init(self) -> AuthState:
        """Resolve the initial identity; `loading` stays True until this returns."""
        if self._initialized:
            return self._state
        self._initialized = True
        self._client.on_auth_expired = self._handle_auth_expired
        self._update(loading=True, error=None)

        if self._step_up.resume() is StepUpPhase.PENDING_MANDATORY:
            # A restricted token cannot identify the user
            self._update(user=None, loading=False)
            return self._state

        try:
            user = await self._fetch_user()
        except AuthExpired:
            logger.info("auth_init_no_session")
            self._tokens.clear()
            self._update(user=None, loading=False)
        except ApiError as exc:
            # Network errors and 5xx keep whatever session the backend holds
            logger.warning("auth_init_failed", error=exc.message, status=exc.status_code)
            self._update(user=None, loading=False, error=f"Failed to refresh session: {exc.message}")
        else:
            logger.info("auth_init_succeeded", user_id=user.id)
            self._update(user=user, loading=False, error=None)
        return self._state

    def teardown(self) -> None:
        if self._client.on_auth_expired == self._handle_auth_expired:
            self._client.on_auth_expired = None
        self._listeners.clear()
        self._initialized = False
        self._state = AuthState()

    # --------------- Operations ---------------
    async def login(self, username: str, password: str) -> LoginOutcome:
        """
        Password login.

        A full session stores the token and refetches identity. A restricted
        token is handed to the step-up controller; the user stays
        unauthenticated. Rejections raise AuthInvalid.
        """
        self._update(loading=True, error=None)
        # Explicitly drop any previous session or abandoned step-up
        self._step_up.abandon()
        self._tokens.clear()

        try:
            payload = await self._client.post(
                LOGIN_PATH,
                json={"usernameOrEmailOrMobile": username, "password": password},
                skip_refresh=True,
            )
            token, body = parse_login_payload(payload)
        except NetworkFailure as exc:
            self._update(loading=False, error=exc.message)
            raise
        except ApiError as exc:
            logger.info("login_rejected", status=exc.status_code)
            self._update(loading=False, error=exc.message)
            if isinstance(exc, AuthInvalid):
                raise
            raise AuthInvalid(exc.message, status_code=exc.status_code, payload=exc.payload) from exc

        message = body.get("message") if isinstance(body.get("message"), str) else None
        if token.restricted:
            self._step_up.begin(token)
            self._update(user=None, loading=False)
            return LoginOutcome(
                purpose=token.purpose,
                redirect_to=self._step_up.entry_page or LOGIN_PAGE,
                message=message,
            )

        self._tokens.set(token)
        try:
            user = await self._fetch_user()
        except ApiError as exc:
            user = self._user_from_login(body)
            if user is None:
                self._update(loading=False, error=exc.message)
                raise
        logger.info("login_succeeded", user_id=user.id)
        self._update(user=user, loading=False, error=None)
        return LoginOutcome(purpose=token.purpose, user=user, redirect_to=DASHBOARD_PAGE, message=message)

    async def logout(self) -> None:
        """End the session locally; the backend call is best effort."""
        self._update(loading=True)
        try:
            await self._client.post(LOGOUT_PATH, skip_refresh=True)
        except ApiError as exc:
            logger.warning("logout_call_failed", error=exc.message)
        finally:
            self._reset_session()
        logger.info("logged_out")

    async def refresh_identity(self) -> Optional[User]:
        """Refetch the current user (e.g. after enabling 2FA from settings)."""
        user = await self._fetch_user()
        self._update(user=user)
        return user

    def resolve(self, path: str) -> RouteResolution:
        """Route protection: never redirects while the initial check is loading."""
        if self._state.loading:
            return RouteResolution(RouteDecision.WAIT)
        if self._step_up.pending and not is_public_route(path):
            entry = self._step_up.entry_page or LOGIN_PAGE
            if path == entry:
                return RouteResolution(RouteDecision.RENDER)
            return RouteResolution(RouteDecision.REDIRECT, entry)
        authenticated = self._state.authenticated
        if not authenticated and not is_public_route(path):
            return RouteResolution(RouteDecision.REDIRECT, LOGIN_PAGE)
        if authenticated and path in AUTH_PAGES:
            return RouteResolution(RouteDecision.REDIRECT, DASHBOARD_PAGE)
        return RouteResolution(RouteDecision.RENDER)

    # --------------- Internal ---------------
    async def _fetch_user(self) -> User:
        payload = await self._client.get(CURRENT_USER_PATH)
        if not isinstance(payload, dict):
            raise ApiError("Invalid user profile response")
        try:
            return User.from_payload(payload)
        except (ValueError, ValidationError) as exc:
            raise ApiError("Invalid user profile response") from exc

    @staticmethod
    def _user_from_login(body: Dict[str, Any]) -> Optional[User]:
        try:
            return User.from_payload(body)
        except (ValueError, ValidationError):
            return None

    def _reset_session(self) -> None:
        self._step_up.abandon()
        self._tokens.clear()
        if self._cache is not None:
            self._cache.clear()
        self._update(user=None, loading=False, error=None)

    def _handle_auth_expired(self, exc: AuthExpired) -> None:
        if self._step_up.pending:
            return
        logger.info("session_expired", status=exc.status_code)
        self._tokens.clear()
        if self._cache is not None:
            self._cache.clear()
        self._update(user=None, loading=False)


__all__ = [
    "AuthSession",
    "AuthState",
    "LoginOutcome",
    "RouteDecision",
    "RouteResolution",
    "parse_login_payload",
    "is_public_route",
    "PUBLIC_ROUTES",
    "DASHBOARD_PAGE",
]
