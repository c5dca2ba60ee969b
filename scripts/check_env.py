#!/usr/bin/env python3
"""Check the console's environment before starting it.

Usage:
    python scripts/check_env.py
    python scripts/check_env.py --ping     # also ping the upstream health endpoint

Environment Variables:
    SESSION_SECRET: HMAC key for the session cookie (at least 32 characters)
    API_URL: Upstream management API base URL
    API_TIMEOUT_SECONDS: Upstream request timeout
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Mapping

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

HEALTH_PATH = "/actuator/health"


def check_environment(env: Mapping[str, str]) -> dict:
    """Inspect the variables the console needs without importing its settings.

    Returns:
        dict with the observed values and a list of ``issues``
    """
    from zenmgt.config import MIN_SESSION_SECRET_LENGTH

    secret = (env.get("SESSION_SECRET") or "").strip()
    api_url = env.get("API_URL") or "http://localhost:8080"
    issues = []
    if not secret:
        issues.append("SESSION_SECRET is not set")
    elif len(secret) < MIN_SESSION_SECRET_LENGTH:
        issues.append(
            f"SESSION_SECRET is too short ({len(secret)} < {MIN_SESSION_SECRET_LENGTH})"
        )
    if not api_url.startswith(("http://", "https://")):
        issues.append(f"API_URL must be an http(s) URL, got {api_url!r}")
    timeout = env.get("API_TIMEOUT_SECONDS")
    if timeout is not None:
        try:
            if float(timeout) <= 0:
                issues.append("API_TIMEOUT_SECONDS must be positive")
        except ValueError:
            issues.append(f"API_TIMEOUT_SECONDS is not a number: {timeout!r}")
    return {
        "has_session_secret": bool(secret),
        "session_secret_length": len(secret),
        "api_url": api_url,
        "issues": issues,
        "ok": not issues,
    }


async def ping_upstream(api_url: str, timeout_seconds: float = 5.0) -> bool:
    import httpx

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.get(api_url.rstrip("/") + HEALTH_PATH)
    except httpx.HTTPError as exc:
        print(f"Upstream unreachable: {type(exc).__name__}")
        return False
    print(f"Upstream health: HTTP {response.status_code}")
    return response.status_code < 500


def main():
    parser = argparse.ArgumentParser(
        description="Check zen-mgt console configuration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--ping",
        action="store_true",
        help="Also call the upstream health endpoint",
    )
    args = parser.parse_args()

    result = check_environment(os.environ)
    print(f"Has SESSION_SECRET: {result['has_session_secret']}")
    print(f"SESSION_SECRET length: {result['session_secret_length']}")
    print(f"API_URL: {result['api_url']}")

    if result["issues"]:
        print("\nIssues found:")
        for issue in result["issues"]:
            print(f"  - {issue}")
        sys.exit(1)

    if args.ping and not asyncio.run(ping_upstream(result["api_url"])):
        sys.exit(2)

    print("\nAll environment checks passed")


if __name__ == "__main__":
    main()
