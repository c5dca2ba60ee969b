from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from starlette.responses import Response

from zenmgt.config import Settings


def sign_session_id(session_id: str, secret: str) -> str:
    """Return hex HMAC-SHA256 signature for session_id."""
    return hmac.new(
        secret.encode("utf-8"), session_id.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def format_session_cookie(session_id: str, secret: str) -> str:
    signature = sign_session_id(session_id, secret)
    return f"{session_id}.{signature}"


def parse_session_cookie(value: Optional[str], secret: str) -> Optional[str]:
    """Return session_id if the cookie signature is valid, else None."""
    if not value or "." not in value:
        return None
    session_id, signature = value.rsplit(".", 1)
    if not session_id:
        return None
    expected = sign_session_id(session_id, secret)
    if not hmac.compare_digest(expected, signature):
        return None
    return session_id


def set_session_cookie(response: Response, session_id: str, settings: Settings) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        format_session_cookie(session_id, settings.session_secret),
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.session_max_age_seconds,
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    """Expire the session cookie with the same attributes it was set with."""
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )
