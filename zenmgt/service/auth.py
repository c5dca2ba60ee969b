from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from zenmgt.logging import get_logger
from zenmgt.service.errors import (
    InvalidCredentials,
    MfaCodeInvalid,
    MfaRequired,
    MfaSetupRequired,
    RegistrationFailed,
    ServerError,
    ServiceError,
    SessionExpired,
    SessionNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from zenmgt.service.upstream import LoginGrant, UpstreamClient, UpstreamResult, resolve_expiry
from zenmgt.storage.models import AuthState, PendingStep
from zenmgt.storage.sessions import SessionStore

logger = get_logger(__name__)

MFA_CODE_PATTERN = re.compile(r"^\d{6}$")
MIN_PASSWORD_LENGTH = 6
MAX_USERNAME_LENGTH = 128


@dataclass(frozen=True)
class LoginCommand:
    username: str
    password: str
    mfa_code: Optional[str] = None


@dataclass(frozen=True)
class RegisterCommand:
    username: str
    password: str
    email: Optional[str] = None


@dataclass(frozen=True)
class InitiateMfaSetup:
    """Ask upstream for a new authenticator secret and QR code."""


@dataclass(frozen=True)
class EnableMfa:
    """Confirm enrollment with a generated code and the account password."""

    code: str
    password: str


@dataclass(frozen=True)
class VerifyMfa:
    """Answer an MFA challenge for an already enrolled account."""

    code: str


MfaAction = Union[InitiateMfaSetup, EnableMfa, VerifyMfa]


@dataclass
class AuthOutcome:
    """Result of one auth transition.

    ``error`` is None on success. On failure it holds the ServiceError the
    route should surface, and ``state`` is the unchanged current state.
    """

    state: AuthState
    session_id: Optional[str] = None
    error: Optional[ServiceError] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


def validate_login(command: LoginCommand) -> Optional[str]:
    username = (command.username or "").strip()
    if not username:
        return "Username is required"
    if len(username) > MAX_USERNAME_LENGTH:
        return "Username is too long"
    if len(command.password or "") < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if command.mfa_code and not MFA_CODE_PATTERN.match(command.mfa_code):
        return "Verification code must be 6 digits"
    return None


def validate_mfa_code(code: Optional[str]) -> Optional[str]:
    if not code or not MFA_CODE_PATTERN.match(code):
        return "Verification code must be 6 digits"
    return None


class AuthFlow:
    """Drives a browser session through login and MFA.

    State is never stored; it is derived from the session's token slots on
    every call. A failed step returns an outcome carrying the error and
    leaves the session exactly as it was.
    """

    def __init__(
        self,
        store: SessionStore,
        upstream: UpstreamClient,
        *,
        access_token_ttl_seconds: int = 60 * 60 * 24,
        temp_token_ttl_seconds: int = 300,
    ) -> None:
        self.store = store
        self.upstream = upstream
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.temp_token_ttl_seconds = temp_token_ttl_seconds
        self.logger = logger

    def state_of(self, session_id: Optional[str]) -> AuthState:
        return self.store.state_of(session_id)

    async def login(self, command: LoginCommand) -> AuthOutcome:
        problem = validate_login(command)
        if problem:
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=ValidationError(problem))
        username = command.username.strip()
        result = await self.upstream.login(username, command.password, command.mfa_code)
        if not result.success:
            if result.unavailable:
                return AuthOutcome(AuthState.UNAUTHENTICATED, error=UpstreamUnavailable())
            self.logger.warning(
                "login_failed",
                username=username,
                status=result.status,
                upstream_message=result.error,
                with_mfa_code=bool(command.mfa_code),
            )
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=InvalidCredentials())
        return self._start_session(LoginGrant.from_data(result.data), username)

    async def check_user(self, username: str) -> Dict[str, bool]:
        """MFA hints for the login form.

        Unknown accounts and upstream failures answer exactly like an
        account without MFA, so the reply never reveals whether a username
        exists.
        """
        hints = {"mfaRequired": False, "mfaSetupRequired": False}
        username = (username or "").strip()
        if not username or len(username) > MAX_USERNAME_LENGTH:
            return hints
        result = await self.upstream.check_user(username)
        if not result.success:
            self.logger.info(
                "check_user_failed", status=result.status, upstream_message=result.error
            )
            return hints
        data = result.data if isinstance(result.data, dict) else {}
        hints["mfaRequired"] = data.get("mfaEnabled") is True
        hints["mfaSetupRequired"] = data.get("mfaSetupRequired") is True
        return hints

    async def register(self, command: RegisterCommand) -> AuthOutcome:
        """Create an upstream account. No session is created; the user logs in afterwards."""
        problem = validate_login(LoginCommand(username=command.username, password=command.password))
        if problem:
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=ValidationError(problem))
        username = command.username.strip()
        payload: Dict[str, Any] = {"username": username, "password": command.password}
        if command.email:
            payload["email"] = command.email
        result = await self.upstream.register(payload)
        if not result.success:
            if result.unavailable:
                return AuthOutcome(AuthState.UNAUTHENTICATED, error=UpstreamUnavailable())
            self.logger.warning(
                "registration_failed",
                username=username,
                status=result.status,
                upstream_message=result.error,
            )
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=RegistrationFailed())
        self.logger.info("account_registered", username=username)
        return AuthOutcome(AuthState.UNAUTHENTICATED, data={"registered": True})

    def _start_session(self, grant: LoginGrant, username: str) -> AuthOutcome:
        now = self.store.now()
        user_id = grant.user_id or username
        if grant.token:
            expiry = resolve_expiry(
                grant.token,
                now=now,
                max_ttl_seconds=self.access_token_ttl_seconds,
                expires_in=grant.expires_in,
            )
            session_id = self.store.create_session(
                user_id, grant.token, expiry, username=grant.username or username
            )
            self.logger.info("login_succeeded", user_id=user_id)
            data = {"recoveryCodes": grant.recovery_codes} if grant.recovery_codes else {}
            return AuthOutcome(AuthState.AUTHENTICATED, session_id=session_id, data=data)

        if grant.temp_token and (grant.require_mfa_setup or grant.require_mfa):
            step = PendingStep.SETUP if grant.require_mfa_setup else PendingStep.VERIFY
            expiry = resolve_expiry(
                grant.temp_token, now=now, max_ttl_seconds=self.temp_token_ttl_seconds
            )
            session_id = self.store.create_pending_session(
                user_id,
                grant.temp_token,
                expiry,
                username=grant.username or username,
                step=step,
            )
            state = (
                AuthState.MFA_SETUP_REQUIRED
                if step is PendingStep.SETUP
                else AuthState.MFA_REQUIRED
            )
            self.logger.info("login_pending_mfa", user_id=user_id, step=step.value)
            return AuthOutcome(state, session_id=session_id)

        self.logger.error(
            "login_unexpected_response",
            username=username,
            has_temp_token=bool(grant.temp_token),
            require_mfa=grant.require_mfa,
            require_mfa_setup=grant.require_mfa_setup,
        )
        return AuthOutcome(
            AuthState.UNAUTHENTICATED,
            error=ServerError("Unexpected login response", status_code=502),
        )

    async def perform_mfa(self, session_id: Optional[str], action: MfaAction) -> AuthOutcome:
        state = self.store.state_of(session_id)
        match action:
            case InitiateMfaSetup():
                if state is not AuthState.MFA_SETUP_REQUIRED:
                    return self._wrong_state(session_id, state)
                return await self._initiate_setup(session_id)
            case EnableMfa(code=code, password=password):
                if state is not AuthState.MFA_SETUP_REQUIRED:
                    return self._wrong_state(session_id, state)
                problem = validate_mfa_code(code)
                if not problem and len(password or "") < MIN_PASSWORD_LENGTH:
                    problem = "Password is required to enable two-factor authentication"
                if problem:
                    return AuthOutcome(state, session_id=session_id, error=ValidationError(problem))
                temp_token, username = self._pending_credentials(session_id)
                result = await self.upstream.mfa_setup_verify(temp_token, username, password, code)
                return self._complete_mfa(session_id, state, result)
            case VerifyMfa(code=code):
                if state is not AuthState.MFA_REQUIRED:
                    return self._wrong_state(session_id, state)
                problem = validate_mfa_code(code)
                if problem:
                    return AuthOutcome(state, session_id=session_id, error=ValidationError(problem))
                temp_token, username = self._pending_credentials(session_id)
                result = await self.upstream.verify_mfa(temp_token, username, code)
                return self._complete_mfa(session_id, state, result)
            case _:
                raise TypeError(f"unknown MFA action: {type(action).__name__}")

    def _pending_credentials(self, session_id: Optional[str]) -> tuple[str, Optional[str]]:
        temp_token = self.store.get_temp_token(session_id)
        identity = self.store.get_identity(session_id)
        if not temp_token or identity is None:
            raise SessionExpired()
        return temp_token, identity[1]

    def _wrong_state(self, session_id: Optional[str], state: AuthState) -> AuthOutcome:
        if state is AuthState.MFA_REQUIRED:
            error: ServiceError = MfaRequired()
        elif state is AuthState.MFA_SETUP_REQUIRED:
            error = MfaSetupRequired()
        elif state is AuthState.AUTHENTICATED:
            error = ValidationError("No two-factor step is pending")
        else:
            return AuthOutcome(state, error=SessionExpired())
        return AuthOutcome(state, session_id=session_id, error=error)

    async def _initiate_setup(self, session_id: Optional[str]) -> AuthOutcome:
        temp_token, username = self._pending_credentials(session_id)
        result = await self.upstream.mfa_setup_init(temp_token, username)
        if not result.success:
            if result.unavailable:
                error: ServiceError = UpstreamUnavailable()
            else:
                self.logger.warning(
                    "mfa_setup_init_failed", status=result.status, upstream_message=result.error
                )
                error = ServerError("Unable to start two-factor setup", status_code=502)
            return AuthOutcome(AuthState.MFA_SETUP_REQUIRED, session_id=session_id, error=error)
        data = result.data if isinstance(result.data, dict) else {}
        return AuthOutcome(
            AuthState.MFA_SETUP_REQUIRED,
            session_id=session_id,
            data={
                "qrCodeUrl": data.get("qrCodeUrl"),
                "secret": data.get("secret"),
                "backupCodes": list(data.get("backupCodes") or []),
            },
        )

    def _complete_mfa(
        self, session_id: Optional[str], state: AuthState, result: UpstreamResult
    ) -> AuthOutcome:
        grant = LoginGrant.from_data(result.data) if result.success else None
        if grant is None or not grant.token:
            if result.unavailable:
                return AuthOutcome(state, session_id=session_id, error=UpstreamUnavailable())
            self.logger.warning(
                "mfa_verification_failed",
                state=state.value,
                status=result.status,
                upstream_message=result.error,
            )
            return AuthOutcome(state, session_id=session_id, error=MfaCodeInvalid())
        expiry = resolve_expiry(
            grant.token,
            now=self.store.now(),
            max_ttl_seconds=self.access_token_ttl_seconds,
            expires_in=grant.expires_in,
        )
        try:
            self.store.upgrade_session(session_id, grant.token, expiry)
        except SessionNotFound:
            self.logger.warning("mfa_session_vanished")
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=SessionExpired())
        data = {"recoveryCodes": grant.recovery_codes} if grant.recovery_codes else {}
        return AuthOutcome(AuthState.AUTHENTICATED, session_id=session_id, data=data)

    async def refresh(self, session_id: Optional[str]) -> AuthOutcome:
        """Exchange the session's access token for a fresh one.

        Any failure ends the session.
        """
        token = self.store.get_token(session_id)
        if not token:
            self.store.invalidate(session_id)
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=SessionExpired())
        result = await self.upstream.refresh(token)
        grant = LoginGrant.from_data(result.data) if result.success else None
        if grant is None or not grant.token:
            self.logger.warning(
                "token_refresh_failed", status=result.status, upstream_message=result.error
            )
            self.store.invalidate(session_id)
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=SessionExpired())
        expiry = resolve_expiry(
            grant.token,
            now=self.store.now(),
            max_ttl_seconds=self.access_token_ttl_seconds,
            expires_in=grant.expires_in,
        )
        try:
            self.store.refresh_session(session_id, grant.token, expiry)
        except SessionNotFound:
            return AuthOutcome(AuthState.UNAUTHENTICATED, error=SessionExpired())
        return AuthOutcome(AuthState.AUTHENTICATED, session_id=session_id)

    async def logout(self, session_id: Optional[str]) -> AuthOutcome:
        token = self.store.get_token(session_id)
        if token:
            result = await self.upstream.logout(token)
            if not result.success:
                # The local session goes away regardless
                self.logger.warning(
                    "upstream_logout_failed", status=result.status, upstream_message=result.error
                )
        self.store.invalidate(session_id)
        return AuthOutcome(AuthState.UNAUTHENTICATED)
