"""Integration tests for the console's HTTP surface.

Drives the FastAPI app through TestClient against the fake upstream:
- Password login with and without MFA
- MFA enrollment and verification
- The session-bound API proxy
- Check-user hints and registration
- Page guards and redirects
- Refresh and logout
"""

import pytest

COOKIE = "zen_session"


def _login(client, username="alice", password="correct", **extra):
    return client.post("/auth/login", json={"username": username, "password": password, **extra})


def _proxy(client, endpoint, method="GET", **body):
    return client.post("/api/proxy", json={"endpoint": endpoint, "method": method, **body})


def _replay(client, cookie_value):
    """Send the next request with exactly this cookie value."""
    client.cookies.clear()
    return {"Cookie": f"{COOKIE}={cookie_value}"}


class TestPasswordLogin:
    def test_login_sets_hardened_cookie(self, client):
        response = _login(client)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["data"]["state"] == "authenticated"
        assert data["data"]["next"] == "/dashboard"
        set_cookie = response.headers["set-cookie"].lower()
        assert set_cookie.startswith(f"{COOKIE}=")
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie
        assert "path=/" in set_cookie

    def test_token_never_reaches_the_browser(self, client):
        response = _login(client)
        assert "access-alice" not in response.text
        assert "access-alice" not in response.headers["set-cookie"]

    def test_wrong_password_is_generic(self, client):
        response = _login(client, password="incorrect")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"
        assert body["error"]["message"] == "Invalid username or password"
        assert "set-cookie" not in response.headers

    def test_short_password_is_rejected_locally(self, client, upstream):
        response = _login(client, password="abc")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert upstream.call_count == 0

    def test_missing_fields_are_400(self, client):
        response = client.post("/auth/login", json={"username": "alice"})

        assert response.status_code == 400
        details = response.json()["error"]["details"]
        assert any(item["loc"][-1] == "password" for item in details)

    def test_relogin_rotates_session(self, client, runtime):
        first = _login(client).cookies[COOKIE]
        second = _login(client).cookies[COOKIE]

        assert first != second
        response = client.post("/api/proxy", json={"endpoint": "/users"}, headers=_replay(client, first))
        assert response.status_code == 401
        assert len(runtime.store) == 1

    def test_upstream_down_is_503(self, client, upstream):
        upstream.down = True
        response = _login(client)

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "upstream_unavailable"

    def test_failed_login_keeps_existing_session(self, client, runtime):
        _login(client)

        response = _login(client, password="incorrect")

        assert response.status_code == 401
        assert client.get("/auth/state").json()["data"]["state"] == "authenticated"
        assert _proxy(client, "/users").status_code == 200
        assert len(runtime.store) == 1

    def test_login_during_outage_keeps_existing_session(self, client, runtime, upstream):
        _login(client)
        upstream.down = True

        assert _login(client, "bob").status_code == 503

        upstream.down = False
        assert client.get("/auth/state").json()["data"]["state"] == "authenticated"
        assert len(runtime.store) == 1


class TestCheckUser:
    def test_mfa_account(self, client):
        response = client.post("/auth/check-user", json={"username": "bob"})

        assert response.status_code == 200
        assert response.json()["data"] == {"mfaRequired": True, "mfaSetupRequired": False}

    def test_setup_pending_account(self, client):
        response = client.post("/auth/check-user", json={"username": "carol"})
        assert response.json()["data"] == {"mfaRequired": False, "mfaSetupRequired": True}

    def test_unknown_user_answers_like_plain_account(self, client):
        unknown = client.post("/auth/check-user", json={"username": "mallory"})
        plain = client.post("/auth/check-user", json={"username": "alice"})

        assert unknown.status_code == plain.status_code == 200
        assert unknown.json()["data"] == plain.json()["data"]

    def test_upstream_down_reveals_nothing(self, client, upstream):
        upstream.down = True
        response = client.post("/auth/check-user", json={"username": "bob"})

        assert response.status_code == 200
        assert response.json()["data"] == {"mfaRequired": False, "mfaSetupRequired": False}

    def test_creates_no_session(self, client, runtime):
        response = client.post("/auth/check-user", json={"username": "bob"})

        assert "set-cookie" not in response.headers
        assert len(runtime.store) == 0


class TestRegister:
    def test_register_creates_no_session(self, client, runtime, upstream):
        response = client.post(
            "/auth/register",
            json={"username": "dave", "password": "secret1", "email": "dave@example.com"},
        )

        assert response.status_code == 201
        assert response.json()["data"] == {"registered": True, "next": "/login"}
        assert "set-cookie" not in response.headers
        assert len(runtime.store) == 0
        assert upstream.paths() == ["POST /api/mgt/v1/auth/register"]

    def test_existing_username_is_generic(self, client):
        response = client.post("/auth/register", json={"username": "alice", "password": "secret1"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "registration_failed"
        assert body["error"]["message"] == "Registration failed"

    def test_bad_email_is_400(self, client, upstream):
        response = client.post(
            "/auth/register", json={"username": "dave", "password": "secret1", "email": "nope"}
        )

        assert response.status_code == 400
        assert upstream.call_count == 0

    def test_upstream_down_is_503(self, client, upstream):
        upstream.down = True
        response = client.post("/auth/register", json={"username": "dave", "password": "secret1"})
        assert response.status_code == 503


class TestMfaFlows:
    def test_verify_flow(self, client, upstream):
        response = _login(client, "bob")
        assert response.json()["data"] == {"state": "mfa_required", "next": "/auth/mfa-verify"}

        # Not usable until the challenge is answered
        assert _proxy(client, "/users").status_code == 401

        wrong = client.post("/auth/mfa/verify", json={"mfaCode": "000000"})
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "mfa_code_invalid"
        assert client.get("/auth/state").json()["data"]["state"] == "mfa_required"

        right = client.post("/auth/mfa/verify", json={"mfaCode": "123456"})
        assert right.status_code == 200
        assert right.json()["data"]["state"] == "authenticated"

        response = _proxy(client, "/users")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_malformed_code_is_400_without_upstream_call(self, client, upstream):
        _login(client, "bob")
        calls = upstream.call_count

        response = client.post("/auth/mfa/verify", json={"mfaCode": "12345"})

        assert response.status_code == 400
        assert upstream.call_count == calls

    def test_inline_code_on_login(self, client):
        response = _login(client, "bob", mfaCode="123456")
        assert response.json()["data"]["state"] == "authenticated"

    def test_setup_flow(self, client):
        response = _login(client, "carol")
        assert response.json()["data"]["next"] == "/auth/mfa-setup"

        started = client.post("/auth/mfa/setup", json={"action": "initiate"})
        assert started.status_code == 200
        data = started.json()["data"]
        assert data["state"] == "mfa_setup_required"
        assert data["qrCodeUrl"].startswith("otpauth://")
        assert data["secret"] == "JBSWY3DPEHPK3PXP"

        enabled = client.post(
            "/auth/mfa/setup",
            json={"action": "enable", "mfaCode": "654321", "password": "correct"},
        )
        assert enabled.status_code == 200
        assert enabled.json()["data"]["state"] == "authenticated"

    def test_enable_requires_password(self, client):
        _login(client, "carol")
        response = client.post("/auth/mfa/setup", json={"action": "enable", "mfaCode": "654321"})
        assert response.status_code == 400

    def test_verify_without_session(self, client):
        response = client.post("/auth/mfa/verify", json={"mfaCode": "123456"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_expired"


class TestProxy:
    def test_requires_session_before_anything_else(self, client, upstream):
        response = client.post("/api/proxy", content=b"not json")

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Authentication required"}
        assert upstream.call_count == 0

    def test_list_users(self, client, upstream):
        _login(client)
        response = _proxy(client, "/users", params={"page": 1})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["totalElements"] == 2
        assert upstream.calls[-1].url.params["page"] == "1"

    def test_get_form(self, client, upstream):
        _login(client)
        response = client.get("/api/proxy", params={"endpoint": "/users/search", "username": "bob"})

        assert response.status_code == 200
        assert upstream.calls[-1].url.path == "/api/mgt/v1/users/search"
        assert upstream.calls[-1].url.params["username"] == "bob"

    def test_unsupported_endpoint(self, client):
        _login(client)
        response = _proxy(client, "/reports", "GET")

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Unsupported endpoint: GET /reports"}

    @pytest.mark.parametrize(
        "body",
        [
            {"method": "GET"},
            {"endpoint": "http://evil.example/users"},
            {"endpoint": "/users/../admin"},
            {"endpoint": "/users", "method": "TRACE"},
        ],
    )
    def test_bad_body_is_400(self, client, upstream, body):
        _login(client)
        calls = upstream.call_count

        response = client.post("/api/proxy", json=body)

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Missing endpoint or method"}
        assert upstream.call_count == calls

    def test_expired_session_is_401_without_upstream_call(self, client, upstream, clock):
        _login(client)
        calls = upstream.call_count
        clock.advance(upstream.expires_in + 1)

        response = _proxy(client, "/users")

        assert response.status_code == 401
        assert upstream.call_count == calls

    def test_tampered_cookie_is_401(self, client, upstream):
        value = _login(client).cookies[COOKIE]
        sid, signature = value.rsplit(".", 1)
        forged = f"{sid}.{'0' * len(signature)}"

        response = client.post("/api/proxy", json={"endpoint": "/users"}, headers=_replay(client, forged))

        assert response.status_code == 401

    def test_unsigned_session_id_is_401(self, client):
        value = _login(client).cookies[COOKIE]
        sid = value.rsplit(".", 1)[0]

        response = client.post("/api/proxy", json={"endpoint": "/users"}, headers=_replay(client, sid))

        assert response.status_code == 401

    def test_upstream_down_is_503(self, client, upstream):
        _login(client)
        upstream.down = True

        response = _proxy(client, "/users")

        assert response.status_code == 503
        assert response.json()["success"] is False


class TestPageGuards:
    def test_dashboard_without_session_redirects(self, client):
        response = client.get("/dashboard", follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "/login"

    def test_dashboard_with_session(self, client):
        _login(client)
        response = client.get("/dashboard")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["section"] == "overview"
        assert data["user_id"] == "u-alice"
        assert "users" in data["data"]["sections"]

    def test_users_section_loads_rows(self, client):
        _login(client)
        response = client.get("/dashboard/users")

        rows = response.json()["data"]["data"]["rows"]
        assert rows["totalElements"] == 2

    def test_unknown_section_is_404(self, client):
        _login(client)
        response = client.get("/dashboard/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_profile_page(self, client):
        _login(client)
        response = client.get("/dashboard/me")

        profile = response.json()["data"]["data"]
        assert profile["username"] == "alice"
        assert profile["email"] == "alice@example.com"

    def test_pending_mfa_session_survives_page_redirect(self, client):
        _login(client, "bob")

        response = client.get("/dashboard", follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "/login"
        assert "set-cookie" not in response.headers
        assert client.get("/login").json()["data"] == {"state": "mfa_required", "next": "/auth/mfa-verify"}

        verified = client.post("/auth/mfa/verify", json={"mfaCode": "123456"})
        assert verified.status_code == 200
        assert verified.json()["data"]["state"] == "authenticated"
        assert client.get("/dashboard").status_code == 200

    def test_pending_setup_session_survives_page_redirect(self, client):
        _login(client, "carol")

        response = client.get("/dashboard/users", follow_redirects=False)

        assert response.status_code == 303
        assert "set-cookie" not in response.headers
        enabled = client.post(
            "/auth/mfa/setup",
            json={"action": "enable", "mfaCode": "654321", "password": "correct"},
        )
        assert enabled.json()["data"]["state"] == "authenticated"

    def test_near_expiry_page_view_refreshes_once(self, client, upstream, clock):
        _login(client)
        clock.advance(upstream.expires_in - 30)

        assert client.get("/dashboard").status_code == 200
        assert upstream.paths().count("POST /api/mgt/v1/auth/refresh") == 1

    def test_expired_session_redirects_and_clears_cookie(self, client, upstream, clock):
        _login(client)
        clock.advance(upstream.expires_in + 1)

        response = client.get("/dashboard", follow_redirects=False)

        assert response.status_code == 303
        set_cookie = response.headers["set-cookie"].lower()
        assert "max-age=0" in set_cookie
        assert "httponly" in set_cookie
        assert "samesite=strict" in set_cookie
        assert "path=/" in set_cookie

    def test_login_page_skips_ahead_when_signed_in(self, client):
        _login(client)
        response = client.get("/login", follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "/dashboard"

    def test_login_page_when_signed_out(self, client):
        response = client.get("/login")
        assert response.json()["data"] == {"state": "unauthenticated", "next": "/login"}


class TestRefreshAndLogout:
    def test_refresh(self, client, upstream):
        _login(client)
        response = client.post("/auth/refresh")

        assert response.status_code == 200
        assert response.json()["data"]["state"] == "authenticated"

    def test_refresh_failure_clears_cookie(self, client, upstream):
        _login(client)
        upstream.refresh_fails = True

        response = client.post("/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "session_expired"
        assert "max-age=0" in response.headers["set-cookie"].lower()
        assert _proxy(client, "/users").status_code == 401

    def test_logout_invalidates_session(self, client, upstream):
        value = _login(client).cookies[COOKIE]

        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"]["state"] == "unauthenticated"
        assert "max-age=0" in response.headers["set-cookie"].lower()
        assert "POST /api/mgt/v1/auth/logout" in upstream.paths()

        replayed = client.post("/api/proxy", json={"endpoint": "/users"}, headers=_replay(client, value))
        assert replayed.status_code == 401

    def test_logout_link_redirects(self, client):
        _login(client)
        response = client.get("/logout", follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "/login"

    def test_logout_without_session(self, client):
        assert client.post("/auth/logout").status_code == 200


class TestHeaders:
    def test_session_routes_are_not_cached(self, client):
        response = client.get("/auth/state")
        assert "no-store" in response.headers["cache-control"]
        assert response.headers["x-frame-options"] == "DENY"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"
        assert response.json()["status"] == "ok"
