from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from common.cointrack import ApiError, AuthInvalid, CoinTrackClient, NetworkFailure
from common.log import get_logger
from state.models import (
    SessionToken,
    StepUpPhase,
    StepUpResult,
    StepUpState,
    TokenPurpose,
    TotpSetupData,
)
from state.token_store import TokenStore


SETUP_PATH = "/api/auth/2fa/setup"
VERIFY_SETUP_PATH = "/api/auth/2fa/verify"
STATUS_PATH = "/api/auth/2fa/status"
LOGIN_TOTP_PATH = "/api/auth/login/totp"
LOGIN_RECOVERY_PATH = "/api/auth/login/recovery"

RELOGIN_REDIRECT = "/login?message=Setup%20Complete%20Please%20Login"
SETTINGS_REDIRECT = "/settings/2fa-settings"
LOGIN_PAGE = "/login"
ENTRY_PAGES = {
    TokenPurpose.TOTP_SETUP: "/setup-2fa",
    TokenPurpose.TOTP_LOGIN: "/verify-2fa",
}

_CODE_RE = re.compile(r"^\d{6}$")

logger = get_logger(__name__)


class StepUpError(RuntimeError):
    """Operation not valid in the controller's current phase."""


def _validate_code(code: str) -> str:
    code = (code or "").strip()
    if not _CODE_RE.match(code):
        raise AuthInvalid("Code must be 6 digits")
    return code


def _backup_codes(payload: Any) -> List[str]:
    if isinstance(payload, dict):
        codes = payload.get("backupCodes")
        if isinstance(codes, list):
            return [str(c) for c in codes]
    return []


class StepUpController:
    """
    Finite state machine for TOTP enrollment / verification.

    NORMAL -> PENDING_MANDATORY when a restricted token is handed over by a
    login (`begin`) or found in session storage at load (`resume`). While
    pending, the restricted token sits in the Token Store so the 2FA calls
    are authorized. Verification success -> COMPLETED:

    - mandatory: the restricted token is cleared and the user is sent back to
      log in; it is never upgraded into a full session.
    - voluntary (settings, already fully authenticated): the session is kept
      and the user returns to the settings view.

    A failed verification leaves the phase untouched so the user can retry.
    """

    def __init__(self, client: CoinTrackClient, tokens: TokenStore) -> None:
        self._client = client
        self._tokens = tokens
        self._state = StepUpState()

    @property
    def state(self) -> StepUpState:
        return self._state.model_copy()

    @property
    def phase(self) -> StepUpPhase:
        return self._state.phase

    @property
    def pending(self) -> bool:
        return self._state.phase is StepUpPhase.PENDING_MANDATORY

    @property
    def entry_page(self) -> Optional[str]:
        """Where the UI should send the user to continue the step-up."""
        token = self._state.temp_token
        return ENTRY_PAGES.get(token.purpose) if token is not None else None

    # --------------- Transitions ---------------
    def resume(self) -> StepUpPhase:
        """Re-enter a step-up left in session storage (call once at load)."""
        token = self._tokens.load_persisted()
        if token is not None:
            self._enter_pending(token, source="session_storage")
        return self._state.phase

    def begin(self, token: SessionToken) -> None:
        """Start a mandatory step-up with the restricted token a login returned."""
        if not token.restricted:
            raise StepUpError("a full session token cannot start a step-up")
        self._enter_pending(token, source="login")

    def begin_voluntary(self) -> None:
        """Start optional 2FA enrollment for an already authenticated user."""
        current = self._tokens.get()
        if current is None or current.restricted:
            raise StepUpError("voluntary 2FA enrollment requires an authenticated session")
        self._state = StepUpState(phase=StepUpPhase.NORMAL, mandatory=False, voluntary_in_progress=True)
        logger.info("step_up_voluntary_started")

    def abandon(self) -> None:
        """Drop any step-up in progress; a pending restricted token is cleared."""
        if self.pending:
            self._tokens.clear()
            logger.info("step_up_abandoned")
        self._state = StepUpState()

    def _enter_pending(self, token: SessionToken, *, source: str) -> None:
        # Raises TokenConflictError if a full session is active
        self._tokens.set(token)
        self._state = StepUpState(
            phase=StepUpPhase.PENDING_MANDATORY,
            mandatory=True,
            temp_token=token,
        )
        logger.info("step_up_pending", purpose=token.purpose.value, source=source)

    # --------------- Backend calls ---------------
    async def setup(self) -> TotpSetupData:
        """Request enrollment material (secret / QR code) for an authenticator app."""
        token = self._state.temp_token
        if self.pending and token is not None and token.purpose is not TokenPurpose.TOTP_SETUP:
            raise StepUpError("2FA is already enrolled; verify a code instead")
        self._require_active()
        payload = await self._client.post(SETUP_PATH)
        return TotpSetupData.model_validate(payload or {})

    async def verify(self, code: str) -> StepUpResult:
        """Verify a 6-digit TOTP code for the step-up in progress."""
        self._require_active()
        code = _validate_code(code)
        token = self._state.temp_token
        if self.pending and token is not None and token.purpose is TokenPurpose.TOTP_LOGIN:
            payload = await self._submit(LOGIN_TOTP_PATH, {"tempToken": token.value, "code": code})
        else:
            payload = await self._submit(VERIFY_SETUP_PATH, {"code": code})
        return self._complete(payload)

    async def verify_recovery(self, backup_code: str) -> StepUpResult:
        """Complete a TOTP login with a one-time backup code."""
        token = self._state.temp_token
        if not self.pending or token is None or token.purpose is not TokenPurpose.TOTP_LOGIN:
            raise StepUpError("recovery codes only complete a pending TOTP login")
        backup_code = (backup_code or "").strip()
        if not backup_code:
            raise AuthInvalid("Backup code is required")
        payload = await self._submit(LOGIN_RECOVERY_PATH, {"tempToken": token.value, "code": backup_code})
        return self._complete(payload)

    async def status(self) -> Dict[str, Any]:
        """Return the backend's 2FA status flags (`enabled`, `verified`, ...)."""
        payload = await self._client.get(STATUS_PATH)
        return payload if isinstance(payload, dict) else {}

    # --------------- Internal ---------------
    def _require_active(self) -> None:
        if not (self.pending or self._state.voluntary_in_progress):
            raise StepUpError(f"no step-up in progress (phase={self._state.phase.value})")

    async def _submit(self, path: str, body: Dict[str, str]) -> Any:
        try:
            return await self._client.post(path, json=body)
        except NetworkFailure:
            raise
        except ApiError as exc:
            if exc.status_code is not None and 400 <= exc.status_code < 500:
                logger.info("step_up_code_rejected", status=exc.status_code)
                raise AuthInvalid(exc.message, status_code=exc.status_code, payload=exc.payload) from exc
            raise

    def _complete(self, payload: Any) -> StepUpResult:
        codes = _backup_codes(payload)
        if self._state.mandatory:
            # The restricted token is spent; a full session needs a fresh login
            self._tokens.clear()
            self._state = StepUpState(phase=StepUpPhase.COMPLETED, mandatory=True)
            logger.info("step_up_completed", mandatory=True)
            return StepUpResult(
                phase=StepUpPhase.COMPLETED,
                redirect_to=RELOGIN_REDIRECT,
                backup_codes=codes,
                message="Setup Complete Please Login",
            )

        self._state = StepUpState(phase=StepUpPhase.COMPLETED, mandatory=False)
        logger.info("step_up_completed", mandatory=False)
        return StepUpResult(
            phase=StepUpPhase.COMPLETED,
            redirect_to=SETTINGS_REDIRECT,
            backup_codes=codes,
        )


__all__ = [
    "StepUpController",
    "StepUpError",
    "RELOGIN_REDIRECT",
    "SETTINGS_REDIRECT",
    "LOGIN_PAGE",
]
