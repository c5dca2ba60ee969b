import asyncio
import inspect
import json
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before anything imports zenmgt settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-0123456789")
os.environ.setdefault("API_URL", "http://upstream.test")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_MINUTE", "100")
os.environ.setdefault("MFA_RATE_LIMIT_PER_MINUTE", "100")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from zenmgt.service.runtime import reset_runtime_for_tests  # noqa: E402

API_PREFIX = "/api/mgt/v1"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


def _ok(data=None, status_code=200):
    return httpx.Response(status_code, json={"code": "0000", "msg": "success", "data": data})


def _fail(msg, code="4001", status_code=200):
    return httpx.Response(status_code, json={"code": code, "msg": msg, "data": None})


class FakeUpstream:
    """In-memory stand-in for the upstream management API.

    alice has no MFA, bob must verify with 123456, carol must enroll and
    confirm with 654321. Every request is recorded in ``calls``.
    """

    PASSWORD = "correct"
    MFA_CODE = "123456"
    SETUP_CODE = "654321"

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.accounts = {
            "alice": {"hashedUserId": "u-alice", "mfa": False, "setup": False},
            "bob": {"hashedUserId": "u-bob", "mfa": True, "setup": False},
            "carol": {"hashedUserId": "u-carol", "mfa": False, "setup": True},
        }
        self.users = {
            "u-alice": {"hashedUserId": "u-alice", "username": "alice", "email": "alice@example.com", "recordStatus": "ACTIVE"},
            "u-bob": {"hashedUserId": "u-bob", "username": "bob", "email": "bob@example.com", "recordStatus": "ACTIVE"},
        }
        self.issued = 0
        self.expires_in = 3600
        self.refresh_fails = False
        self.down = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def paths(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.calls]

    def _token(self, kind: str, username: str) -> str:
        self.issued += 1
        return f"{kind}-{username}-{self.issued}"

    def _grant(self, username: str):
        account = self.accounts[username]
        return _ok(
            {
                "token": self._token("access", username),
                "hashedUserId": account["hashedUserId"],
                "user": {"hashedUserId": account["hashedUserId"], "username": username},
                "expiresIn": self.expires_in,
            }
        )

    def _bearer(self, request: httpx.Request) -> str | None:
        header = request.headers.get("Authorization", "")
        return header[len("Bearer "):] if header.startswith("Bearer ") else None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        assert path.startswith(API_PREFIX), path
        path = path[len(API_PREFIX):]
        body = json.loads(request.content) if request.content else {}

        if path == "/auth/login":
            return self._login(request, body)
        if path == "/auth/refresh":
            token = self._bearer(request)
            if self.refresh_fails or not token or not token.startswith("access-"):
                return _fail("Token expired", code="4010", status_code=401)
            username = token.split("-")[1]
            return self._grant(username)
        if path == "/auth/logout":
            return _ok()
        if path == "/auth/register":
            username = body.get("username")
            if username in self.accounts:
                return _fail("Username already exists", code="4009", status_code=409)
            self.accounts[username] = {"hashedUserId": f"u-{username}", "mfa": False, "setup": False}
            return _ok({"username": username}, status_code=201)
        if path == "/auth/check-user":
            account = self.accounts.get(body.get("username"))
            return _ok(
                {
                    "mfaEnabled": bool(account and account["mfa"]),
                    "mfaSetupRequired": bool(account and account["setup"]),
                }
            )
        if path == "/mfa/setup/init":
            if not (self._bearer(request) or "").startswith("temp-"):
                return _fail("Unauthorized", code="4010", status_code=401)
            return _ok({"qrCodeUrl": "otpauth://totp/zen:carol", "secret": "JBSWY3DPEHPK3PXP", "backupCodes": ["a1", "b2"]})
        if path == "/mfa/setup/verify":
            if body.get("mfaCode") != self.SETUP_CODE or body.get("password") != self.PASSWORD:
                return _fail("Invalid MFA code")
            self.accounts[body["username"]]["setup"] = False
            return self._grant(body["username"])
        if path.startswith("/users"):
            return self._users(request, path, body)
        return _fail("Not found", code="4004", status_code=404)

    def _login(self, request: httpx.Request, body: dict) -> httpx.Response:
        temp = self._bearer(request)
        username = body.get("username")
        account = self.accounts.get(username)
        if temp:
            # MFA verification through the login endpoint
            if account and temp.startswith(f"temp-{username}-") and body.get("mfaCode") == self.MFA_CODE:
                return self._grant(username)
            return _fail("Invalid MFA code")
        if not account or body.get("password") != self.PASSWORD:
            return _fail("Bad credentials for user", code="4001", status_code=401)
        if account["setup"]:
            return _ok({"requireMfaSetup": True, "tempToken": self._token("temp", username)})
        if account["mfa"]:
            if body.get("mfaCode") == self.MFA_CODE:
                return self._grant(username)
            return _ok({"requireMfa": True, "tempToken": self._token("temp", username)})
        return self._grant(username)

    def _users(self, request: httpx.Request, path: str, body: dict) -> httpx.Response:
        token = self._bearer(request) or ""
        if not token.startswith("access-"):
            return _fail("Unauthorized", code="4010", status_code=401)
        parts = path.strip("/").split("/")
        if parts == ["users"] and request.method == "GET":
            return _ok({"content": list(self.users.values()), "totalElements": len(self.users)})
        if parts == ["users"] and request.method == "POST":
            new_id = f"u-{body.get('username')}"
            self.users[new_id] = {"hashedUserId": new_id, **body}
            return _ok(self.users[new_id], status_code=201)
        user = self.users.get(parts[1]) if len(parts) >= 2 else None
        if user is None:
            return _fail("User not found", code="4004")
        if len(parts) == 2 and request.method == "GET":
            return _ok(user)
        if len(parts) == 2 and request.method == "PUT":
            user.update(body)
            return _ok(user)
        if len(parts) == 2 and request.method == "DELETE":
            self.users.pop(parts[1])
            return _ok()
        if parts[2] == "toggle-status":
            user["recordStatus"] = "INACTIVE" if user.get("recordStatus") == "ACTIVE" else "ACTIVE"
            return _ok({"newStatus": user["recordStatus"]})
        if parts[2] == "toggle-mfa":
            return _ok({"enabled": body.get("enabled")})
        return _ok({"ok": True})


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def runtime(upstream, clock):
    """Runtime wired to the fake upstream and the manual clock."""
    return reset_runtime_for_tests(transport=httpx.MockTransport(upstream), clock=clock)


@pytest.fixture
def client(runtime):
    from fastapi.testclient import TestClient

    from zenmgt import app as app_module

    return TestClient(app_module.app)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
