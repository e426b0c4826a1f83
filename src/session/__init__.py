"""
Session orchestration.

Modules:
- auth: AuthSession (identity, login/logout, route resolution)
- step_up: TOTP step-up state machine
- manager: SessionManager wiring every component for one user session
"""

from .auth import AuthSession, AuthState, LoginOutcome, RouteDecision
from .manager import SessionManager
from .step_up import StepUpController, StepUpError

__all__ = [
    "AuthSession",
    "AuthState",
    "LoginOutcome",
    "RouteDecision",
    "SessionManager",
    "StepUpController",
    "StepUpError",
]
