from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import quote

from zenmgt.service.upstream import AuthorizedApi, UpstreamResult
from zenmgt.storage.models import UserProfile

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200
_SORT_DIRECTIONS = {"asc", "desc"}


def _user_path(user_id: str, suffix: str = "") -> str:
    return f"/users/{quote(user_id, safe='')}{suffix}"


def _page_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    params = dict(params or {})
    try:
        page = max(0, int(params.get("page", 0)))
    except (TypeError, ValueError):
        page = 0
    try:
        size = int(params.get("size", DEFAULT_PAGE_SIZE))
    except (TypeError, ValueError):
        size = DEFAULT_PAGE_SIZE
    size = min(max(1, size), MAX_PAGE_SIZE)
    sort_dir = str(params.get("sortDir", "desc")).lower()
    if sort_dir not in _SORT_DIRECTIONS:
        sort_dir = "desc"
    return {
        "page": page,
        "size": size,
        "sortBy": params.get("sortBy") or "createdAt",
        "sortDir": sort_dir,
    }


class UserService:
    """User-management operations against the upstream, for one request."""

    def __init__(self, api: AuthorizedApi) -> None:
        self.api = api

    async def list_users(self, params: Optional[Dict[str, Any]] = None) -> UpstreamResult:
        return await self.api.call("GET", "/users", params=_page_params(params))

    async def search_users(self, params: Optional[Dict[str, Any]] = None) -> UpstreamResult:
        query = {k: v for k, v in (params or {}).items() if v not in (None, "")}
        query.update(_page_params(params))
        return await self.api.call("GET", "/users/search", params=query)

    async def get_user(self, user_id: str) -> UpstreamResult:
        return await self.api.call("GET", _user_path(user_id))

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        result = await self.get_user(user_id)
        if not result.success or not isinstance(result.data, dict):
            return None
        return UserProfile.from_upstream(result.data)

    async def create_user(self, data: Optional[Dict[str, Any]]) -> UpstreamResult:
        return await self.api.call("POST", "/users", json_body=data or {})

    async def update_user(self, user_id: str, data: Optional[Dict[str, Any]]) -> UpstreamResult:
        return await self.api.call("PUT", _user_path(user_id), json_body=data or {})

    async def delete_user(self, user_id: str, reason: Optional[str] = None) -> UpstreamResult:
        params = {"reason": reason} if reason else None
        return await self.api.call("DELETE", _user_path(user_id), params=params)

    async def toggle_status(self, user_id: str) -> UpstreamResult:
        return await self.api.call("PUT", _user_path(user_id, "/toggle-status"))

    async def reset_password(self, user_id: str) -> UpstreamResult:
        return await self.api.call("POST", _user_path(user_id, "/reset-password"))

    async def reset_mfa(self, user_id: str) -> UpstreamResult:
        return await self.api.call("POST", _user_path(user_id, "/reset-mfa"))

    async def toggle_mfa(self, user_id: str, enabled: bool) -> UpstreamResult:
        return await self.api.call(
            "PUT", _user_path(user_id, "/toggle-mfa"), json_body={"enabled": enabled}
        )

    async def security_status(self, user_id: str) -> UpstreamResult:
        return await self.api.call("GET", _user_path(user_id, "/security-status"))

    async def update_session_validity(
        self, user_id: str, data: Optional[Dict[str, Any]]
    ) -> UpstreamResult:
        return await self.api.call(
            "PUT",
            f"/users/updateSessionValidity/{quote(user_id, safe='')}",
            json_body=data or {},
        )

    async def approval_requests(self, user_id: str) -> UpstreamResult:
        return await self.api.call(
            "GET", f"/users/getApprovalRequests/{quote(user_id, safe='')}"
        )
