from __future__ import annotations

import contextlib
import secrets
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Tuple

from zenmgt.logging import get_logger
from zenmgt.service.errors import SessionNotFound
from zenmgt.storage.models import AuthState, PendingStep, SessionRecord

logger = get_logger(__name__)

Clock = Callable[[], datetime]
IdFactory = Callable[[], str]


def utc_now() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionStore:
    """Process-wide registry of browser sessions and their upstream tokens.

    The browser only ever sees the session id. Tokens stay here and are
    looked up per request. Every mutation of one record happens under that
    record's lock, and the registry map itself is guarded separately so
    concurrent requests for different sessions do not serialize on each
    other.

    No listing API is provided.
    """

    def __init__(
        self,
        *,
        clock: Clock = utc_now,
        id_factory: IdFactory = new_session_id,
        sweep_interval_seconds: int = 60,
    ) -> None:
        self._clock = clock
        self._id_factory = id_factory
        self._sweep_interval_seconds = sweep_interval_seconds
        self._records: Dict[str, SessionRecord] = {}
        self._record_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._records)

    def now(self) -> datetime:
        return self._clock()

    @contextlib.contextmanager
    def _locked(self, session_id: str) -> Iterator[Optional[SessionRecord]]:
        """Yield the record for ``session_id`` while holding its lock."""

        with self._registry_lock:
            record = self._records.get(session_id)
            lock = self._record_locks.get(session_id)
        if record is None or lock is None:
            yield None
            return
        with lock:
            # The record may have been invalidated while we waited
            with self._registry_lock:
                current = self._records.get(session_id)
            yield current if current is record else None

    def _insert(self, record: SessionRecord) -> str:
        with self._registry_lock:
            session_id = record.session_id
            while session_id in self._records:
                session_id = self._id_factory()
            record.session_id = session_id
            self._records[session_id] = record
            self._record_locks[session_id] = threading.Lock()
        self.maybe_sweep()
        return session_id

    def create_session(
        self,
        user_id: str,
        access_token: str,
        expiry: datetime,
        *,
        username: Optional[str] = None,
    ) -> str:
        """Register a fully authenticated session and return its id."""

        record = SessionRecord(
            session_id=self._id_factory(),
            user_id=user_id,
            username=username,
            created_at=self.now(),
            access_token=access_token,
            access_token_expiry=expiry,
        )
        session_id = self._insert(record)
        logger.info("session_created", user_id=user_id, expires_at=expiry.isoformat())
        return session_id

    def create_pending_session(
        self,
        user_id: str,
        temp_token: str,
        expiry: datetime,
        *,
        username: Optional[str] = None,
        step: PendingStep = PendingStep.VERIFY,
    ) -> str:
        """Register a session that still owes an MFA step."""

        record = SessionRecord(
            session_id=self._id_factory(),
            user_id=user_id,
            username=username,
            created_at=self.now(),
            temp_token=temp_token,
            temp_token_expiry=expiry,
            pending_step=PendingStep(step),
        )
        session_id = self._insert(record)
        logger.info(
            "pending_session_created",
            user_id=user_id,
            step=PendingStep(step).value,
            expires_at=expiry.isoformat(),
        )
        return session_id

    def upgrade_session(self, session_id: str, access_token: str, expiry: datetime) -> None:
        """Swap the temp token of a pending session for a full access token."""

        with self._locked(session_id) as record:
            if record is None:
                raise SessionNotFound()
            record.access_token = access_token
            record.access_token_expiry = expiry
            record.temp_token = None
            record.temp_token_expiry = None
            record.pending_step = None
            user_id = record.user_id
        logger.info("session_upgraded", user_id=user_id, expires_at=expiry.isoformat())

    def refresh_session(self, session_id: str, access_token: str, expiry: datetime) -> None:
        """Replace the access token and expiry of an existing session."""

        with self._locked(session_id) as record:
            if record is None:
                raise SessionNotFound()
            record.access_token = access_token
            record.access_token_expiry = expiry
            user_id = record.user_id
        logger.info("session_refreshed", user_id=user_id, expires_at=expiry.isoformat())

    def get_token(self, session_id: Optional[str]) -> Optional[str]:
        if not session_id:
            return None
        now = self.now()
        with self._locked(session_id) as record:
            if record is None or not record.has_access_token(now):
                return None
            return record.access_token

    def get_temp_token(self, session_id: Optional[str]) -> Optional[str]:
        if not session_id:
            return None
        now = self.now()
        with self._locked(session_id) as record:
            if record is None or not record.has_temp_token(now):
                return None
            return record.temp_token

    def token_expiry(self, session_id: Optional[str]) -> Optional[datetime]:
        """Expiry of the live access token, or None."""
        if not session_id:
            return None
        now = self.now()
        with self._locked(session_id) as record:
            if record is None or not record.has_access_token(now):
                return None
            return record.access_token_expiry

    def get_identity(self, session_id: Optional[str]) -> Optional[Tuple[str, Optional[str]]]:
        if not session_id:
            return None
        with self._locked(session_id) as record:
            if record is None:
                return None
            return record.user_id, record.username

    def state_of(self, session_id: Optional[str]) -> AuthState:
        if not session_id:
            return AuthState.UNAUTHENTICATED
        now = self.now()
        with self._locked(session_id) as record:
            if record is None:
                return AuthState.UNAUTHENTICATED
            return record.state_at(now)

    def invalidate(self, session_id: Optional[str]) -> None:
        """Remove a session. Unknown ids are ignored."""

        if not session_id:
            return
        with self._registry_lock:
            record = self._records.pop(session_id, None)
            self._record_locks.pop(session_id, None)
        if record is not None:
            logger.info("session_invalidated", user_id=record.user_id)

    def sweep_expired(self) -> int:
        """Drop every record whose tokens have all expired.

        Returns:
            Number of records removed
        """
        now = self.now()
        with self._registry_lock:
            expired = [sid for sid, record in self._records.items() if record.is_expired(now)]
            for sid in expired:
                self._records.pop(sid, None)
                self._record_locks.pop(sid, None)
            self._last_sweep = now
        if expired:
            logger.info("expired_sessions_swept", count=len(expired))
        return len(expired)

    def maybe_sweep(self) -> int:
        """Sweep if the configured interval has elapsed since the last sweep."""
        now = self.now()
        if (now - self._last_sweep).total_seconds() >= self._sweep_interval_seconds:
            return self.sweep_expired()
        return 0
