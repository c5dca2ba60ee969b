from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from zenmgt.api.error_handling import register_exception_handlers
from zenmgt.api.routes import router
from zenmgt.config import get_settings
from zenmgt.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

# Fails fast when SESSION_SECRET is missing or too short
_settings = get_settings()

_sweep_task: asyncio.Task | None = None

_NO_STORE_PREFIXES = ("/auth", "/api", "/dashboard", "/login", "/logout")


async def _run_session_sweep(interval_seconds: int) -> None:
    """Periodically drop sessions whose tokens have all expired."""
    from zenmgt.service.runtime import get_runtime

    interval = max(1, interval_seconds)
    while True:
        await asyncio.sleep(interval)
        try:
            get_runtime().store.sweep_expired()
        except Exception as exc:
            logger.error("session_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the session sweeper on startup and stop it on shutdown."""
    global _sweep_task
    from zenmgt.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.settings.sweep_interval_seconds)
    )
    logger.info("session_sweeper_started", interval_seconds=runtime.settings.sweep_interval_seconds)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    logger.info("session_sweeper_stopped")


app = FastAPI(title="Zen Management Console", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every request with a correlation ID.

    The ID comes from the client's X-Request-ID header when present, else a
    new UUID. It is bound for structured logging and echoed back in the
    X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "1; mode=block")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    # Session-bound responses must never be cached by proxies
    if request.url.path.startswith(_NO_STORE_PREFIXES):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy",
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; img-src 'self' data:; connect-src 'self'; font-src 'self'; frame-ancestors 'none'; base-uri 'self'; form-action 'self'",
    )
    return response


@app.get("/healthz", tags=["health"])
async def healthz():
    from zenmgt.service.runtime import get_runtime

    runtime = get_runtime()
    return {"status": "ok", "version": __version__, "sessions": len(runtime.store)}


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
