from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class AuthState(str, Enum):
    """Where a browser session stands in the login flow."""

    UNAUTHENTICATED = "unauthenticated"
    MFA_REQUIRED = "mfa_required"
    MFA_SETUP_REQUIRED = "mfa_setup_required"
    AUTHENTICATED = "authenticated"


class PendingStep(str, Enum):
    """Which MFA step a temporary token was issued for."""

    VERIFY = "verify"
    SETUP = "setup"


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    created_at: datetime
    username: Optional[str] = None
    access_token: Optional[str] = None
    access_token_expiry: Optional[datetime] = None
    temp_token: Optional[str] = None
    temp_token_expiry: Optional[datetime] = None
    pending_step: Optional[PendingStep] = None

    def has_access_token(self, now: datetime) -> bool:
        return bool(
            self.access_token
            and self.access_token_expiry is not None
            and self.access_token_expiry > now
        )

    def has_temp_token(self, now: datetime) -> bool:
        return bool(
            self.temp_token
            and self.temp_token_expiry is not None
            and self.temp_token_expiry > now
        )

    def state_at(self, now: datetime) -> AuthState:
        """Derive the auth state from the token slots at ``now``."""
        if self.has_access_token(now):
            return AuthState.AUTHENTICATED
        if self.access_token is None and self.has_temp_token(now):
            if self.pending_step == PendingStep.SETUP:
                return AuthState.MFA_SETUP_REQUIRED
            return AuthState.MFA_REQUIRED
        return AuthState.UNAUTHENTICATED

    def is_expired(self, now: datetime) -> bool:
        return not self.has_access_token(now) and not self.has_temp_token(now)


@dataclass
class UserProfile:
    id: str
    username: str
    email: Optional[str] = None
    record_status: Optional[str] = None
    session_validity: Optional[int] = None
    mfa_enabled: Optional[bool] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_upstream(cls, payload: Dict[str, Any]) -> "UserProfile":
        """Build a profile from an upstream user object.

        The upstream identifies users by a hashed id and uses camelCase keys.
        """
        known = {
            "hashedUserId",
            "encryptedUserId",
            "id",
            "username",
            "userName",
            "email",
            "recordStatus",
            "sessionValidity",
            "mfaEnabled",
            "createdAt",
            "updatedAt",
            "lastLoginAt",
        }
        user_id = (
            payload.get("hashedUserId")
            or payload.get("encryptedUserId")
            or payload.get("id")
            or ""
        )
        return cls(
            id=str(user_id),
            username=payload.get("username") or payload.get("userName") or "",
            email=payload.get("email"),
            record_status=payload.get("recordStatus"),
            session_validity=payload.get("sessionValidity"),
            mfa_enabled=payload.get("mfaEnabled"),
            created_at=payload.get("createdAt"),
            updated_at=payload.get("updatedAt"),
            last_login_at=payload.get("lastLoginAt"),
            extra={k: v for k, v in payload.items() if k not in known},
        )


@dataclass
class ProxyRequest:
    endpoint: str
    method: str
    data: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, str]] = None

    def __post_init__(self) -> None:
        self.method = (self.method or "GET").upper()
        # Tolerate query strings on the endpoint; routing only looks at the path
        path, _, _ = (self.endpoint or "").partition("?")
        self.endpoint = path.rstrip("/") or "/"
