from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union

import httpx

from zenmgt.config import Settings, get_settings, reset_settings_cache
from zenmgt.logging import get_logger
from zenmgt.service.auth import AuthFlow
from zenmgt.service.guards import RouteGuard
from zenmgt.service.proxy import ProxyDispatcher
from zenmgt.service.upstream import UpstreamClient
from zenmgt.storage.sessions import Clock, IdFactory, SessionStore, new_session_id, utc_now

logger = get_logger(__name__)


class Runtime:
    """Process-wide wiring of the console's services.

    ``transport``, ``clock`` and ``id_factory`` exist so tests can fake the
    upstream and control time without touching module globals.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now,
        id_factory: IdFactory = new_session_id,
    ):
        self.settings = settings or get_settings()
        self.store = SessionStore(
            clock=clock,
            id_factory=id_factory,
            sweep_interval_seconds=self.settings.sweep_interval_seconds,
        )
        self.upstream = UpstreamClient(
            self.settings.upstream_api_url,
            timeout_seconds=self.settings.upstream_timeout_seconds,
            transport=transport,
        )
        self.auth = AuthFlow(
            self.store,
            self.upstream,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            temp_token_ttl_seconds=self.settings.temp_token_ttl_seconds,
        )
        self.guard = RouteGuard(
            self.store,
            self.auth,
            refresh_threshold_seconds=self.settings.refresh_threshold_seconds,
        )
        self.proxy = ProxyDispatcher(self.upstream)
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            upstream_url=self.settings.upstream_api_url,
            upstream_timeout_seconds=self.settings.upstream_timeout_seconds,
            test_mode=self.settings.test_mode,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Clock = utc_now,
    id_factory: IdFactory = new_session_id,
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, transport=transport, clock=clock, id_factory=id_factory)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int]]:
    """In-process token bucket keyed by ``key``.

    Args:
        runtime: Runtime instance holding the bucket table
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining)

    Returns:
        bool if return_remaining is False, else (bool, int) tuple
    """
    if limit <= 0:
        return (True, limit) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
        )
        window_seconds = 60
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        # Drop buckets that have fully refilled so the table stays small
        stale_before = now - timedelta(seconds=window_seconds * 2)
        if len(runtime._local_rate_limits) > 10_000:
            for stale_key in [
                k for k, (_, ts) in runtime._local_rate_limits.items() if ts < stale_before
            ]:
                runtime._local_rate_limits.pop(stale_key, None)
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining)
    return allowed
