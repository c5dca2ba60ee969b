from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from zenmgt.logging import get_logger
from zenmgt.service.auth import AuthFlow
from zenmgt.storage.models import AuthState
from zenmgt.storage.sessions import SessionStore

logger = get_logger(__name__)

LOGIN_PATH = "/login"


class LoginRedirect(Exception):
    """Raised by page guards; rendered as a redirect to the login page.

    ``clear_session`` is False when the browser's session is still usable,
    e.g. a pending MFA step that the login page will resume.
    """

    def __init__(
        self, reason: str, location: str = LOGIN_PATH, *, clear_session: bool = True
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.location = location
        self.clear_session = clear_session


@dataclass
class GuardContext:
    session_id: str
    user_id: str
    username: Optional[str] = None
    refreshed: bool = False


class RouteGuard:
    """Checks that a protected page request carries a live session.

    A token close to expiry gets exactly one refresh attempt; if that fails
    the session is dropped and the browser is sent back to login.
    """

    def __init__(
        self,
        store: SessionStore,
        auth: AuthFlow,
        *,
        refresh_threshold_seconds: int = 300,
    ) -> None:
        self.store = store
        self.auth = auth
        self.refresh_threshold_seconds = refresh_threshold_seconds

    async def require_session(self, session_id: Optional[str]) -> GuardContext:
        if not session_id:
            raise LoginRedirect("missing_session")

        state = self.store.state_of(session_id)
        if state is not AuthState.AUTHENTICATED:
            dead = state is AuthState.UNAUTHENTICATED
            if dead:
                self.store.invalidate(session_id)
            logger.info("route_guard_redirect", reason="not_authenticated", state=state.value)
            raise LoginRedirect(state.value, clear_session=dead)

        expiry = self.store.token_expiry(session_id)
        if expiry is None:
            self.store.invalidate(session_id)
            raise LoginRedirect("session_expired")

        refreshed = False
        remaining = (expiry - self.store.now()).total_seconds()
        if remaining <= self.refresh_threshold_seconds:
            outcome = await self.auth.refresh(session_id)
            if not outcome.ok:
                logger.info("route_guard_redirect", reason="refresh_failed")
                raise LoginRedirect("refresh_failed")
            refreshed = True

        identity = self.store.get_identity(session_id)
        if identity is None:
            raise LoginRedirect("session_vanished")
        user_id, username = identity
        return GuardContext(
            session_id=session_id,
            user_id=user_id,
            username=username,
            refreshed=refreshed,
        )
