from __future__ import annotations

import base64
import binascii
import contextlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from zenmgt.logging import get_logger
from zenmgt.service.errors import SessionExpired, UpstreamUnavailable

logger = get_logger(__name__)

# Upstream envelope: {"code": "0000", "msg": "...", "data": {...}}
SUCCESS_CODE = "0000"


@dataclass
class UpstreamResult:
    """Outcome of one upstream call.

    Failures are values, not exceptions: ``success`` is False and ``error``
    holds the upstream message. ``error_code`` is set to
    ``upstream_unavailable`` when the upstream could not be reached at all.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    status: Optional[int] = None
    error_code: Optional[str] = None

    @property
    def unavailable(self) -> bool:
        return self.error_code == UpstreamUnavailable.error_code

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.success:
            if self.data is not None:
                payload["data"] = self.data
        else:
            payload["error"] = self.error or "Request failed"
        return payload


@dataclass
class LoginGrant:
    """The parts of an upstream login/MFA response the console acts on."""

    token: Optional[str] = None
    temp_token: Optional[str] = None
    require_mfa: bool = False
    require_mfa_setup: bool = False
    user_id: Optional[str] = None
    username: Optional[str] = None
    expires_in: Optional[int] = None
    recovery_codes: List[str] = field(default_factory=list)
    user: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_data(cls, data: Any) -> "LoginGrant":
        if not isinstance(data, dict):
            return cls()
        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        user_id = (
            data.get("hashedUserId")
            or user.get("hashedUserId")
            or user.get("encryptedUserId")
            or user.get("id")
        )
        expires_in = data.get("expiresIn")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        return cls(
            token=data.get("token") or None,
            temp_token=data.get("tempToken") or None,
            require_mfa=bool(data.get("requireMfa")),
            require_mfa_setup=bool(data.get("requireMfaSetup")),
            user_id=str(user_id) if user_id is not None else None,
            username=user.get("username") or data.get("username"),
            expires_in=expires_in,
            recovery_codes=list(data.get("recoveryCodes") or []),
            user=user,
        )


def token_claims(token: Optional[str]) -> Dict[str, Any]:
    """Decode the payload segment of a JWT without verifying it.

    The console never trusts these claims for authorization; they only feed
    expiry bookkeeping and the X-Current-User header. Opaque tokens yield {}.
    """
    if not token or token.count(".") != 2:
        return {}
    segment = token.split(".")[1]
    segment += "=" * (-len(segment) % 4)
    try:
        decoded = base64.urlsafe_b64decode(segment.encode("ascii"))
        claims = json.loads(decoded)
    except (binascii.Error, ValueError, UnicodeError):
        return {}
    return claims if isinstance(claims, dict) else {}


def current_user_header(token: Optional[str]) -> Optional[str]:
    claims = token_claims(token)
    value = claims.get("huid") or claims.get("encryptedUserId") or claims.get("sub")
    return str(value) if value else None


def resolve_expiry(
    token: Optional[str],
    *,
    now: datetime,
    max_ttl_seconds: int,
    expires_in: Optional[int] = None,
) -> datetime:
    """Pick the expiry for a token, never beyond ``max_ttl_seconds`` from now."""
    ceiling = now + timedelta(seconds=max_ttl_seconds)
    if expires_in is not None and expires_in > 0:
        return min(ceiling, now + timedelta(seconds=expires_in))
    exp = token_claims(token).get("exp")
    if isinstance(exp, (int, float)):
        try:
            from_claim = datetime.fromtimestamp(exp, tz=now.tzinfo)
        except (OverflowError, OSError, ValueError):
            return ceiling
        return min(ceiling, from_claim)
    return ceiling


class UpstreamClient:
    """Thin async client for the upstream management API.

    Every call opens a short-lived ``httpx.AsyncClient`` bounded by the
    configured timeout. There are no retries. Tokens are passed in per call
    and never cached on the client.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        current_user: Optional[str] = None,
    ) -> UpstreamResult:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if current_user:
            headers["X-Current-User"] = current_user
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=False,
            ) as client:
                response = await client.request(
                    method,
                    url,
                    json=json_body,
                    params=params or None,
                    headers=headers,
                )
        except httpx.TimeoutException as exc:
            logger.warning("upstream_timeout", method=method, path=path, error=str(exc))
            return UpstreamResult(
                success=False,
                error=UpstreamUnavailable.default_message,
                error_code=UpstreamUnavailable.error_code,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "upstream_transport_error",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return UpstreamResult(
                success=False,
                error=UpstreamUnavailable.default_message,
                error_code=UpstreamUnavailable.error_code,
            )
        return self._decode(method, path, response)

    def _decode(self, method: str, path: str, response: httpx.Response) -> UpstreamResult:
        status = response.status_code
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None
        ok_status = 200 <= status < 300

        if isinstance(body, dict) and "code" in body:
            success = ok_status and str(body.get("code")) == SUCCESS_CODE
            if success:
                return UpstreamResult(success=True, data=body.get("data"), status=status)
            message = body.get("msg") or body.get("message") or "Unknown error"
        elif ok_status:
            return UpstreamResult(success=True, data=body, status=status)
        else:
            message = (
                (body.get("msg") or body.get("message") or body.get("error"))
                if isinstance(body, dict)
                else None
            ) or f"Upstream request failed with status {status}"

        logger.warning(
            "upstream_request_failed",
            method=method,
            path=path,
            status=status,
            upstream_message=message,
        )
        return UpstreamResult(success=False, error=str(message), status=status)

    async def login(
        self, username: str, password: str, mfa_code: Optional[str] = None
    ) -> UpstreamResult:
        payload: Dict[str, Any] = {"username": username, "password": password}
        if mfa_code:
            payload["mfaCode"] = mfa_code
        return await self.request("POST", "/auth/login", json_body=payload)

    async def verify_mfa(self, temp_token: str, username: Optional[str], code: str) -> UpstreamResult:
        """Complete an MFA challenge through the login endpoint."""
        payload: Dict[str, Any] = {"mfaCode": code}
        if username:
            payload["username"] = username
        return await self.request("POST", "/auth/login", json_body=payload, token=temp_token)

    async def refresh(self, access_token: str) -> UpstreamResult:
        return await self.request("POST", "/auth/refresh", token=access_token)

    async def logout(self, access_token: str) -> UpstreamResult:
        return await self.request("POST", "/auth/logout", token=access_token)

    async def register(self, payload: Dict[str, Any]) -> UpstreamResult:
        return await self.request("POST", "/auth/register", json_body=payload)

    async def check_user(self, username: str) -> UpstreamResult:
        return await self.request("POST", "/auth/check-user", json_body={"username": username})

    async def mfa_setup_init(self, temp_token: str, username: Optional[str]) -> UpstreamResult:
        return await self.request(
            "POST", "/mfa/setup/init", json_body={"username": username}, token=temp_token
        )

    async def mfa_setup_verify(
        self,
        temp_token: str,
        username: Optional[str],
        password: str,
        code: str,
    ) -> UpstreamResult:
        return await self.request(
            "POST",
            "/mfa/setup/verify",
            json_body={"username": username, "password": password, "mfaCode": code},
            token=temp_token,
        )

    @contextlib.asynccontextmanager
    async def authorized(self, token: str) -> AsyncIterator["AuthorizedApi"]:
        """Bind ``token`` to an API handle for the duration of one request."""
        api = AuthorizedApi(self, token)
        try:
            yield api
        finally:
            api.release()


class AuthorizedApi:
    """Resource calls carrying one session's bearer token.

    Only obtainable through ``UpstreamClient.authorized``; the token is
    dropped when that block exits, and later calls fail with SessionExpired.
    """

    def __init__(self, client: UpstreamClient, token: str) -> None:
        self._client = client
        self._token: Optional[str] = token
        self._current_user = current_user_header(token)

    @property
    def active(self) -> bool:
        return self._token is not None

    def release(self) -> None:
        self._token = None
        self._current_user = None

    async def call(
        self,
        method: str,
        path: str,
        *,
        json_body: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> UpstreamResult:
        if self._token is None:
            raise SessionExpired()
        return await self._client.request(
            method,
            path,
            json_body=json_body,
            params=params,
            token=self._token,
            current_user=self._current_user,
        )
