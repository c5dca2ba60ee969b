from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from zenmgt.api.error_handling import _error_response
from zenmgt.api.schemas import (
    AuthStateResponse,
    CheckUserRequest,
    Envelope,
    LoginRequest,
    MfaSetupRequest,
    MfaSetupResponse,
    MfaVerifyRequest,
    PageData,
    ProxyBody,
    RegisterRequest,
)
from zenmgt.config import Settings
from zenmgt.logging import get_logger
from zenmgt.service.auth import (
    AuthOutcome,
    EnableMfa,
    InitiateMfaSetup,
    LoginCommand,
    MfaAction,
    RegisterCommand,
    VerifyMfa,
)
from zenmgt.service.cookies import (
    clear_session_cookie,
    parse_session_cookie,
    set_session_cookie,
)
from zenmgt.service.errors import RateLimited
from zenmgt.service.guards import LOGIN_PATH, GuardContext
from zenmgt.service.runtime import check_rate_limit, get_runtime
from zenmgt.service.users import UserService
from zenmgt.storage.models import AuthState, ProxyRequest, UserProfile

logger = get_logger(__name__)

router = APIRouter()

DASHBOARD_PATH = "/dashboard"

_NEXT_PATH = {
    AuthState.UNAUTHENTICATED: LOGIN_PATH,
    AuthState.MFA_REQUIRED: "/auth/mfa-verify",
    AuthState.MFA_SETUP_REQUIRED: "/auth/mfa-setup",
    AuthState.AUTHENTICATED: DASHBOARD_PATH,
}

DASHBOARD_SECTIONS = (
    "users",
    "user-management",
    "sites",
    "site-management",
    "roles",
    "payment-order",
    "withdraw-order",
    "withdraw-platform",
    "bank-list",
    "customize-bank-list",
    "audit-trail",
    "settings",
)
_USER_SECTIONS = {"users", "user-management"}

AUTH_REQUIRED = {"success": False, "error": "Authentication required"}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise a 429 envelope when ``key`` has exhausted its bucket."""
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0])
        raise RateLimited()


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _session_id_from_cookie(request: Request, settings: Settings) -> Optional[str]:
    return parse_session_cookie(
        request.cookies.get(settings.session_cookie_name), settings.session_secret
    )


def _state_envelope(outcome: AuthOutcome) -> Envelope:
    body = AuthStateResponse(
        state=outcome.state.value,
        next=_NEXT_PATH[outcome.state],
        recoveryCodes=outcome.data.get("recoveryCodes") or None,
    )
    return Envelope(status="ok", data=body.model_dump(by_alias=True, exclude_none=True))


@router.get("/login", tags=["auth"])
async def login_page(request: Request):
    """Entry point for the login screen; authenticated sessions skip ahead."""
    runtime = get_runtime()
    session_id = _session_id_from_cookie(request, runtime.settings)
    state = runtime.auth.state_of(session_id)
    if state is AuthState.AUTHENTICATED:
        return RedirectResponse(url=DASHBOARD_PATH, status_code=303)
    return Envelope(
        status="ok",
        data={"state": state.value, "next": _NEXT_PATH[state]},
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Submit username and password, optionally with an MFA code.

    A successful login replaces any session the browser already carries,
    so every login yields a fresh session id. A failed attempt leaves that
    session untouched.

    Raises:
        400: If the submitted fields are malformed
        401: If upstream rejects the credentials
        429: If rate limit exceeded for this username
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.auth.login(
        LoginCommand(username=body.username, password=body.password, mfa_code=body.mfa_code)
    )
    if outcome.error:
        raise outcome.error
    previous = _session_id_from_cookie(request, runtime.settings)
    if previous and previous != outcome.session_id:
        runtime.store.invalidate(previous)
    set_session_cookie(response, outcome.session_id, runtime.settings)
    return _state_envelope(outcome)


@router.post("/auth/check-user", response_model=Envelope, tags=["auth"])
async def check_user(body: CheckUserRequest, request: Request):
    """Tell the login form whether to ask for a verification code.

    The answer for an unknown username is the same as for an account
    without MFA.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"check-user:{_client_key(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    hints = await runtime.auth.check_user(body.username)
    return Envelope(status="ok", data=hints)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an upstream account; the browser is sent to login afterwards.

    Raises:
        400: If the fields are malformed or upstream refuses the account
        429: If rate limit exceeded for this client
        503: If upstream is unreachable
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_key(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.auth.register(
        RegisterCommand(username=body.username, password=body.password, email=body.email)
    )
    if outcome.error:
        raise outcome.error
    return Envelope(status="ok", data={"registered": True, "next": LOGIN_PATH})


async def _run_mfa(request: Request, action: MfaAction) -> AuthOutcome:
    runtime = get_runtime()
    session_id = _session_id_from_cookie(request, runtime.settings)
    await _enforce_rate_limit(
        runtime,
        f"mfa:{session_id or _client_key(request)}",
        runtime.settings.mfa_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.auth.perform_mfa(session_id, action)
    if outcome.error:
        raise outcome.error
    return outcome


@router.post("/auth/mfa/setup", response_model=Envelope, tags=["auth"])
async def mfa_setup(body: MfaSetupRequest, request: Request):
    """Initiate authenticator enrollment, or confirm it with a code and password."""
    if body.action == "enable":
        action: MfaAction = EnableMfa(code=body.mfa_code or "", password=body.password or "")
    else:
        action = InitiateMfaSetup()
    outcome = await _run_mfa(request, action)
    if outcome.state is AuthState.MFA_SETUP_REQUIRED:
        setup = MfaSetupResponse(state=outcome.state.value, **outcome.data)
        return Envelope(status="ok", data=setup.model_dump(by_alias=True))
    return _state_envelope(outcome)


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def mfa_verify(body: MfaVerifyRequest, request: Request):
    outcome = await _run_mfa(request, VerifyMfa(code=body.mfa_code))
    return _state_envelope(outcome)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request):
    runtime = get_runtime()
    session_id = _session_id_from_cookie(request, runtime.settings)
    outcome = await runtime.auth.refresh(session_id)
    if outcome.error:
        failure = _error_response(
            outcome.error.status_code, outcome.error.message, code=outcome.error.error_code
        )
        clear_session_cookie(failure, runtime.settings)
        return failure
    return _state_envelope(outcome)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    outcome = await runtime.auth.logout(_session_id_from_cookie(request, runtime.settings))
    clear_session_cookie(response, runtime.settings)
    return _state_envelope(outcome)


@router.get("/logout", tags=["auth"])
async def logout_redirect(request: Request):
    runtime = get_runtime()
    await runtime.auth.logout(_session_id_from_cookie(request, runtime.settings))
    response = RedirectResponse(url=LOGIN_PATH, status_code=303)
    clear_session_cookie(response, runtime.settings)
    return response


@router.get("/auth/state", response_model=Envelope, tags=["auth"])
async def auth_state(request: Request):
    runtime = get_runtime()
    state = runtime.auth.state_of(_session_id_from_cookie(request, runtime.settings))
    return Envelope(status="ok", data={"state": state.value, "next": _NEXT_PATH[state]})


async def _proxy(request: Request, build) -> JSONResponse:
    runtime = get_runtime()
    session_id = _session_id_from_cookie(request, runtime.settings)
    token = runtime.store.get_token(session_id)
    if not token:
        logger.info("proxy_unauthenticated", path=request.url.path)
        return JSONResponse(status_code=401, content=AUTH_REQUIRED)
    allowed = await check_rate_limit(
        runtime, f"proxy:{session_id}", runtime.settings.proxy_rate_limit_per_minute, 60
    )
    if not allowed:
        return JSONResponse(status_code=429, content={"success": False, "error": "rate limit exceeded"})
    try:
        proxy_request = await build(request)
    except (ValueError, PydanticValidationError) as exc:
        logger.warning("proxy_request_invalid", error_type=type(exc).__name__)
        return JSONResponse(
            status_code=400, content={"success": False, "error": "Missing endpoint or method"}
        )
    result = await runtime.proxy.dispatch(token, proxy_request)
    return JSONResponse(status_code=result.status_code, content=result.payload)


async def _proxy_request_from_body(request: Request) -> ProxyRequest:
    body = ProxyBody.model_validate(await request.json())
    return ProxyRequest(endpoint=body.endpoint, method=body.method, data=body.data, params=body.params)


async def _proxy_request_from_query(request: Request) -> ProxyRequest:
    query = dict(request.query_params)
    body = ProxyBody.model_validate(
        {
            "endpoint": query.pop("endpoint", None),
            "method": query.pop("method", "GET"),
            "params": query or None,
        }
    )
    return ProxyRequest(endpoint=body.endpoint, method=body.method, params=body.params)


@router.post("/api/proxy", tags=["proxy"])
async def proxy_post(request: Request):
    """Forward ``{endpoint, method, data, params}`` upstream with the session token."""
    return await _proxy(request, _proxy_request_from_body)


@router.get("/api/proxy", tags=["proxy"])
async def proxy_get(request: Request):
    return await _proxy(request, _proxy_request_from_query)


async def require_session(request: Request) -> GuardContext:
    runtime = get_runtime()
    return await runtime.guard.require_session(
        _session_id_from_cookie(request, runtime.settings)
    )


async def current_profile(
    request: Request, ctx: GuardContext = Depends(require_session)
) -> Optional[UserProfile]:
    """The signed-in user's upstream profile, fetched at most once per request."""
    if hasattr(request.state, "profile"):
        return request.state.profile
    runtime = get_runtime()
    token = runtime.store.get_token(ctx.session_id)
    profile = None
    if token:
        async with runtime.upstream.authorized(token) as api:
            profile = await UserService(api).get_profile(ctx.user_id)
    request.state.profile = profile
    return profile


def _page(ctx: GuardContext, section: str, data: Any = None) -> Envelope:
    page = PageData(section=section, user_id=ctx.user_id, username=ctx.username, data=data)
    return Envelope(status="ok", data=page.model_dump())


@router.get(DASHBOARD_PATH, response_model=Envelope, tags=["dashboard"])
async def dashboard(ctx: GuardContext = Depends(require_session)):
    return _page(ctx, "overview", {"sections": list(DASHBOARD_SECTIONS)})


@router.get(DASHBOARD_PATH + "/me", response_model=Envelope, tags=["dashboard"])
async def dashboard_me(
    ctx: GuardContext = Depends(require_session),
    profile: Optional[UserProfile] = Depends(current_profile),
):
    return _page(ctx, "profile", asdict(profile) if profile else None)


@router.get(DASHBOARD_PATH + "/{section}", response_model=Envelope, tags=["dashboard"])
async def dashboard_section(
    section: str, request: Request, ctx: GuardContext = Depends(require_session)
):
    """Page data for one dashboard screen.

    User screens load their first page of rows here; other screens fetch
    through /api/proxy from the browser.
    """
    if section not in DASHBOARD_SECTIONS:
        raise _http_error("not_found", "page not found", status_code=404)
    data: Dict[str, Any] = {"rows": None}
    if section in _USER_SECTIONS:
        runtime = get_runtime()
        token = runtime.store.get_token(ctx.session_id)
        if token:
            async with runtime.upstream.authorized(token) as api:
                result = await UserService(api).list_users(dict(request.query_params))
            data = {"rows": result.data if result.success else None}
            if not result.success:
                data["error"] = "Unable to load users"
    return _page(ctx, section, data)
