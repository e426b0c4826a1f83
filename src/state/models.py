from __future__ import annotations

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class TokenPurpose(str, Enum):
    """Purpose tag the backend assigns to a bearer token at issuance."""

    LOGIN_COMPLETE = "LOGIN_COMPLETE"
    TOTP_SETUP = "TOTP_SETUP"
    TOTP_LOGIN = "TOTP_LOGIN"


class SessionToken(BaseModel):
    """
    Opaque bearer credential plus its purpose.

    The client never inspects `value`; it only holds and transmits it.
    Tokens with any purpose other than LOGIN_COMPLETE are restricted: they
    authorize the step-up endpoints and nothing else.
    """

    model_config = ConfigDict(frozen=True)

    value: str = Field(..., min_length=1)
    purpose: TokenPurpose = TokenPurpose.LOGIN_COMPLETE

    @property
    def restricted(self) -> bool:
        return self.purpose is not TokenPurpose.LOGIN_COMPLETE

    def __repr__(self) -> str:  # keep token values out of logs and tracebacks
        return f"SessionToken(purpose={self.purpose.value})"

    __str__ = __repr__


class User(BaseModel):
    """Identity returned by the "current user" call; extra fields are kept."""

    model_config = ConfigDict(extra="allow")

    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    mobile: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "User":
        """Build a User from either a profile payload or a flat login response."""
        raw_id = data.get("id") or data.get("userId")
        if raw_id is None:
            raise ValueError("user payload has no id")
        first = data.get("firstName")
        if first:
            name = f"{first} {data.get('lastName') or ''}".strip()
        else:
            name = data.get("name") or data.get("username")
        extras = {
            k: v
            for k, v in data.items()
            if k not in ("id", "userId", "username", "email", "name", "mobile", "token", "accessToken")
        }
        return cls(
            id=str(raw_id),
            username=data.get("username"),
            email=data.get("email"),
            name=name,
            mobile=data.get("mobile") or data.get("phoneNumber"),
            **extras,
        )


class StepUpPhase(str, Enum):
    NORMAL = "NORMAL"
    PENDING_MANDATORY = "PENDING_MANDATORY"
    COMPLETED = "COMPLETED"


class StepUpState(BaseModel):
    """
    Progress of a two-factor step-up.

    `temp_token` is only set while a mandatory step-up is in progress.
    """

    phase: StepUpPhase = StepUpPhase.NORMAL
    mandatory: bool = False
    temp_token: Optional[SessionToken] = None
    # True while a fully authenticated user enrolls from settings
    voluntary_in_progress: bool = False


class BrokerConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class BrokerStatusRecord(BaseModel):
    broker: str
    connected: bool
    status: BrokerConnectionStatus
    last_checked: datetime = Field(default_factory=utcnow)
    detail: Optional[str] = Field(
        default=None,
        description="Raw backend status or failure reason when it adds information",
    )

    @classmethod
    def failed(cls, broker: str, reason: Optional[str] = None) -> "BrokerStatusRecord":
        return cls(
            broker=broker,
            connected=False,
            status=BrokerConnectionStatus.ERROR,
            detail=reason,
        )


class SyncCycle(BaseModel):
    """One refresh-and-invalidate operation. Never persisted."""

    requested_at: datetime = Field(default_factory=utcnow)
    backend_ack_received: bool = False
    invalidated: bool = False
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


class StepUpResult(BaseModel):
    phase: StepUpPhase
    redirect_to: str
    backup_codes: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class TotpSetupData(BaseModel):
    """Enrollment material for an authenticator app."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    secret: Optional[str] = None
    qr_code_uri: Optional[str] = Field(default=None, alias="qrCodeUri")
    qr_code_base64: Optional[str] = Field(default=None, alias="qrCodeBase64")
    backup_codes: List[str] = Field(default_factory=list, alias="backupCodes")


__all__ = [
    "TokenPurpose",
    "SessionToken",
    "User",
    "StepUpPhase",
    "StepUpState",
    "StepUpResult",
    "TotpSetupData",
    "BrokerConnectionStatus",
    "BrokerStatusRecord",
    "SyncCycle",
    "utcnow",
]
