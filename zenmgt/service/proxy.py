from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Sequence, Tuple

from zenmgt.logging import get_logger, sanitize_error_message
from zenmgt.service.errors import (
    ServiceError,
    UnsupportedEndpoint,
    UpstreamUnavailable,
    ValidationError,
)
from zenmgt.service.upstream import UpstreamClient, UpstreamResult
from zenmgt.service.users import UserService
from zenmgt.storage.models import ProxyRequest

logger = get_logger(__name__)

Handler = Callable[[UserService, "re.Match[str]", ProxyRequest], Awaitable[UpstreamResult]]

ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
# One path segment; dot-only segments are excluded since URL normalization drops them
_USER_ID = r"(?P<user_id>(?!\.+(?:/|$))[A-Za-z0-9_.~=%+-]+)"


@dataclass(frozen=True)
class ProxyRoute:
    """One row of the routing table. An empty method set accepts any method."""

    name: str
    pattern: "re.Pattern[str]"
    methods: FrozenSet[str]
    handler: Handler

    def match(self, request: ProxyRequest) -> Optional["re.Match[str]"]:
        if self.methods and request.method not in self.methods:
            return None
        return self.pattern.fullmatch(request.endpoint)


def route(name: str, pattern: str, methods: Sequence[str], handler: Handler) -> ProxyRoute:
    return ProxyRoute(name, re.compile(pattern), frozenset(m.upper() for m in methods), handler)


@dataclass
class ProxyResponse:
    status_code: int
    payload: Dict[str, Any] = field(default_factory=dict)


def _data(request: ProxyRequest) -> Dict[str, Any]:
    return request.data if isinstance(request.data, dict) else {}


async def _search_users(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.search_users(request.params)


async def _toggle_status(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.toggle_status(match["user_id"])


async def _reset_password(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.reset_password(match["user_id"])


async def _reset_mfa(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.reset_mfa(match["user_id"])


async def _toggle_mfa(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.toggle_mfa(match["user_id"], _data(request).get("enabled") is True)


async def _security_status(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.security_status(match["user_id"])


async def _session_validity(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.update_session_validity(match["user_id"], _data(request))


async def _approval_requests(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.approval_requests(match["user_id"])


async def _get_user(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.get_user(match["user_id"])


async def _update_user(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.update_user(match["user_id"], _data(request))


async def _delete_user(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    reason = (request.params or {}).get("reason") or _data(request).get("reason")
    return await users.delete_user(match["user_id"], reason)


async def _list_users(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.list_users(request.params)


async def _create_user(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    return await users.create_user(_data(request))


async def _unsupported(users: UserService, match, request: ProxyRequest) -> UpstreamResult:
    raise UnsupportedEndpoint(request.method, request.endpoint)


# Evaluated top to bottom; the first match wins. Literal sub-paths come
# before the bare /users/{id} rows so "search" is never taken for an id.
DEFAULT_ROUTES: Tuple[ProxyRoute, ...] = (
    route("search_users", r"/users/search", ["GET"], _search_users),
    route("toggle_status", rf"/users/{_USER_ID}/toggle-status", ["PATCH", "PUT", "POST"], _toggle_status),
    route("reset_password", rf"/users/{_USER_ID}/reset-password", ["POST", "PATCH"], _reset_password),
    route("reset_mfa", rf"/users/{_USER_ID}/reset-mfa", ["POST", "PATCH"], _reset_mfa),
    route("toggle_mfa", rf"/users/{_USER_ID}/toggle-mfa", ["PATCH", "PUT", "POST"], _toggle_mfa),
    route("security_status", rf"/users/{_USER_ID}/security-status", ["GET"], _security_status),
    route("session_validity", rf"/users/{_USER_ID}/session-validity", ["PUT", "PATCH"], _session_validity),
    route("approval_requests", rf"/users/{_USER_ID}/approval-requests", ["GET"], _approval_requests),
    route("get_user", rf"/users/{_USER_ID}", ["GET"], _get_user),
    route("update_user", rf"/users/{_USER_ID}", ["PUT"], _update_user),
    route("delete_user", rf"/users/{_USER_ID}", ["DELETE"], _delete_user),
    route("list_users", r"/users", ["GET"], _list_users),
    route("create_user", r"/users", ["POST"], _create_user),
    route("unsupported", r".*", [], _unsupported),
)


class ProxyDispatcher:
    """Forwards browser-originated resource calls to the upstream.

    Callers must have resolved the session's access token already; the
    dispatcher never sees a request without one. The token is bound to an
    upstream handle for the length of the call and released afterwards.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        routes: Sequence[ProxyRoute] = DEFAULT_ROUTES,
    ) -> None:
        self.upstream = upstream
        self.routes = tuple(routes)

    def resolve(self, request: ProxyRequest) -> Tuple[ProxyRoute, "re.Match[str]"]:
        for candidate in self.routes:
            found = candidate.match(request)
            if found is not None:
                return candidate, found
        raise UnsupportedEndpoint(request.method, request.endpoint)

    async def dispatch(self, token: str, request: ProxyRequest) -> ProxyResponse:
        if not request.endpoint or request.endpoint == "/" or request.method not in ALLOWED_METHODS:
            return self._failure(ValidationError("Missing endpoint or method"))
        try:
            matched, found = self.resolve(request)
            async with self.upstream.authorized(token) as api:
                result = await matched.handler(UserService(api), found, request)
        except ServiceError as exc:
            logger.warning(
                "proxy_request_rejected",
                method=request.method,
                endpoint=request.endpoint,
                error_code=exc.error_code,
            )
            return self._failure(exc)

        logger.info(
            "proxy_request_completed",
            route=matched.name,
            method=request.method,
            endpoint=request.endpoint,
            success=result.success,
            upstream_status=result.status,
        )
        if result.unavailable:
            return self._failure(UpstreamUnavailable())
        payload = result.as_payload()
        if not result.success:
            payload["error"] = sanitize_error_message(result.error)
        return ProxyResponse(200, payload)

    @staticmethod
    def _failure(exc: ServiceError) -> ProxyResponse:
        return ProxyResponse(exc.status_code, {"success": False, "error": exc.message})
