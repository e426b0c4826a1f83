"""
Client-side session state.

`models` defines the value types shared by every layer; `token_store` holds
the current bearer token and persists step-up tokens to session-scoped
storage (encrypted at rest via Fernet when file-backed).
"""

from .models import BrokerStatusRecord, SessionToken, StepUpState, SyncCycle, TokenPurpose, User
from .token_store import TokenConflictError, TokenStore

__all__ = [
    "BrokerStatusRecord",
    "SessionToken",
    "StepUpState",
    "SyncCycle",
    "TokenPurpose",
    "User",
    "TokenConflictError",
    "TokenStore",
]
