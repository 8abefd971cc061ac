import time

from fastapi.testclient import TestClient

import vaultauth.app as app_module
from vaultauth.service.mfa import generate_totp
from vaultauth.service.runtime import get_runtime

PASSWORD = "Gr4nite-Meadow!"
NEW_PASSWORD = "Sp1ral-Comet#"


def _client():
    return TestClient(app_module.app)


def _register_body(email, password=PASSWORD, **overrides):
    body = {
        "email": email,
        "password": password,
        "confirm_password": password,
        "first_name": "Dana",
        "last_name": "Scully",
        "accept_terms": True,
        "accept_privacy": True,
    }
    body.update(overrides)
    return body


def _register_verified(client, outbox, email="dana@example.com", password=PASSWORD):
    resp = client.post("/auth/register", json=_register_body(email, password))
    assert resp.status_code == 201, resp.text
    token = outbox.last_verification_token(email)
    resp = client.get("/auth/verify-email", params={"token": token})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["user"]


def _login(client, email="dana@example.com", password=PASSWORD, **extra):
    resp = client.post("/auth/login", json={"email": email, "password": password, **extra})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _auth_header(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def test_register_returns_pending_user(outbox):
    client = _client()
    resp = client.post("/auth/register", json=_register_body("Dana@Example.com"))

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["verification_required"] is True
    assert body["data"]["user"]["email"] == "dana@example.com"
    assert body["data"]["user"]["status"] == "pending_verification"
    assert "password" not in resp.text
    assert outbox.verifications[0][0] == "dana@example.com"


def test_register_validation_errors(outbox):
    client = _client()
    resp = client.post(
        "/auth/register", json=_register_body("dana@example.com", confirm_password="Other-Pass1!")
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"

    resp = client.post("/auth/register", json=_register_body("not-an-email"))
    assert resp.status_code == 400
    assert resp.json()["details"][0]["field"] == "email"

    resp = client.post("/auth/register", json=_register_body("dana@example.com", password="short", confirm_password="short"))
    assert resp.status_code == 400
    assert resp.json()["error"] == "WEAK_PASSWORD"
    assert resp.json()["details"]["requirements"]


def test_duplicate_registration_conflicts(outbox):
    client = _client()
    client.post("/auth/register", json=_register_body("dana@example.com"))
    resp = client.post("/auth/register", json=_register_body("DANA@example.com"))
    assert resp.status_code == 409
    assert resp.json()["error"] == "USER_ALREADY_EXISTS"


def test_login_requires_verified_email(outbox):
    client = _client()
    client.post("/auth/register", json=_register_body("dana@example.com"))
    resp = client.post("/auth/login", json={"email": "dana@example.com", "password": PASSWORD})
    assert resp.status_code == 403
    assert resp.json()["error"] == "ACCOUNT_NOT_VERIFIED"


def test_invalid_credentials_are_generic(outbox):
    client = _client()
    _register_verified(client, outbox)
    wrong = client.post("/auth/login", json={"email": "dana@example.com", "password": "Nope-Nope1!"})
    unknown = client.post("/auth/login", json={"email": "fox@example.com", "password": PASSWORD})
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()
    assert wrong.json()["error"] == "INVALID_CREDENTIALS"


def test_login_refresh_logout_flow(outbox):
    client = _client()
    _register_verified(client, outbox)

    data = _login(client, device_type="mobile")
    tokens = data["tokens"]
    assert data["user"]["email"] == "dana@example.com"
    assert tokens["token_type"] == "Bearer"
    assert tokens["expires_in"] == 15 * 60
    assert client.cookies.get("access_token") == tokens["access_token"]
    assert client.cookies.get("refresh_token") == tokens["refresh_token"]

    profile = client.get("/auth/profile", headers=_auth_header(tokens))
    assert profile.status_code == 200
    assert profile.json()["data"]["user"]["email"] == "dana@example.com"

    # The refresh cookie is used when no body is sent
    refreshed = client.post("/auth/refresh")
    assert refreshed.status_code == 200
    new_tokens = refreshed.json()["data"]["tokens"]
    assert new_tokens["refresh_token"] != tokens["refresh_token"]

    reused = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert reused.status_code == 401
    assert reused.json()["error"] == "INVALID_REFRESH_TOKEN"

    # Reuse revoked the whole family
    assert client.get("/auth/profile", headers=_auth_header(new_tokens)).status_code == 401


def test_logout_revokes_current_session(outbox):
    client = _client()
    _register_verified(client, outbox)
    tokens = _login(client)["tokens"]

    resp = client.post("/auth/logout", headers=_auth_header(tokens))
    assert resp.status_code == 200
    assert resp.json()["message"] == "Logged out successfully"
    assert resp.json()["data"] == {"sessions_revoked": 1}

    again = client.get("/auth/profile", headers=_auth_header(tokens))
    assert again.status_code == 401
    assert again.json()["error"] == "AUTHENTICATION_REQUIRED"


def test_logout_all_devices(outbox):
    client = _client()
    _register_verified(client, outbox)
    first = _login(client)["tokens"]
    second = _login(client)["tokens"]

    resp = client.post("/auth/logout", json={"all_devices": True}, headers=_auth_header(second))
    assert resp.json()["message"] == "Logged out from all devices"
    assert resp.json()["data"]["sessions_revoked"] == 2
    assert client.get("/auth/profile", headers=_auth_header(first)).status_code == 401


def test_refresh_without_token(outbox):
    resp = _client().post("/auth/refresh", json={})
    assert resp.status_code == 401
    assert resp.json()["error"] == "INVALID_REFRESH_TOKEN"


def test_protected_route_requires_token():
    resp = _client().get("/auth/profile")
    assert resp.status_code == 401
    assert resp.json() == {
        "success": False,
        "message": "Authentication required",
        "error": "AUTHENTICATION_REQUIRED",
    }


def test_sessions_listing_and_revocation(outbox):
    client = _client()
    _register_verified(client, outbox)
    current = _login(client)["tokens"]
    other = _login(client)["tokens"]
    _login(client)

    listed = client.get("/auth/sessions", headers=_auth_header(current)).json()["data"]["sessions"]
    assert len(listed) == 3
    assert [item["current"] for item in listed if item["id"] == current["session_id"]] == [True]

    resp = client.delete(f"/auth/sessions/{other['session_id']}", headers=_auth_header(current))
    assert resp.status_code == 200
    assert client.get("/auth/profile", headers=_auth_header(other)).status_code == 401

    missing = client.delete("/auth/sessions/not-a-session", headers=_auth_header(current))
    assert missing.status_code == 404

    resp = client.delete("/auth/sessions", headers=_auth_header(current))
    assert resp.json()["data"]["sessions_revoked"] == 1
    remaining = client.get("/auth/sessions", headers=_auth_header(current)).json()["data"]["sessions"]
    assert [item["id"] for item in remaining] == [current["session_id"]]


def test_change_password_ends_sessions(outbox):
    client = _client()
    _register_verified(client, outbox)
    tokens = _login(client)["tokens"]

    resp = client.put(
        "/auth/change-password",
        json={
            "current_password": PASSWORD,
            "new_password": NEW_PASSWORD,
            "confirm_password": NEW_PASSWORD,
        },
        headers=_auth_header(tokens),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["sessions_revoked"] == 1
    assert client.get("/auth/profile", headers=_auth_header(tokens)).status_code == 401
    assert _login(client, password=NEW_PASSWORD)["tokens"]


def test_change_password_wrong_current(outbox):
    client = _client()
    _register_verified(client, outbox)
    tokens = _login(client)["tokens"]
    resp = client.put(
        "/auth/change-password",
        json={
            "current_password": "Wrong-Guess1!",
            "new_password": NEW_PASSWORD,
            "confirm_password": NEW_PASSWORD,
        },
        headers=_auth_header(tokens),
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "INVALID_CURRENT_PASSWORD"


def test_forgot_and_reset_password(outbox):
    client = _client()
    _register_verified(client, outbox)

    unknown = client.post("/auth/forgot-password", json={"email": "fox@example.com"})
    known = client.post("/auth/forgot-password", json={"email": "dana@example.com"})
    assert unknown.status_code == known.status_code == 200
    assert unknown.json()["message"] == known.json()["message"]

    token = outbox.last_reset_token("dana@example.com")
    resp = client.post(
        "/auth/reset-password",
        json={"token": token, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
    )
    assert resp.status_code == 200
    assert _login(client, password=NEW_PASSWORD)["tokens"]

    replay = client.post(
        "/auth/reset-password",
        json={"token": token, "new_password": NEW_PASSWORD, "confirm_password": NEW_PASSWORD},
    )
    assert replay.status_code == 400


def test_verify_email_with_bad_token():
    resp = _client().post("/auth/verify-email", json={"token": "bogus"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"


def test_update_profile(outbox):
    client = _client()
    _register_verified(client, outbox)
    tokens = _login(client)["tokens"]
    resp = client.put(
        "/auth/profile", json={"first_name": "  Danielle "}, headers=_auth_header(tokens)
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["first_name"] == "Danielle"


def test_totp_mfa_login(outbox):
    client = _client()
    _register_verified(client, outbox)
    tokens = _login(client)["tokens"]

    setup = client.post("/auth/mfa/setup", json={"method": "totp"}, headers=_auth_header(tokens))
    assert setup.status_code == 200
    secret = setup.json()["data"]["secret"]
    assert setup.json()["data"]["otpauth_uri"].startswith("otpauth://totp/")

    confirm = client.post(
        "/auth/mfa/confirm",
        json={"method": "totp", "code": generate_totp(secret, time.time())},
        headers=_auth_header(tokens),
    )
    assert confirm.status_code == 200
    assert len(confirm.json()["data"]["backup_codes"]) == 10

    again = client.post("/auth/mfa/setup", json={"method": "totp"}, headers=_auth_header(tokens))
    assert again.status_code == 409
    assert again.json()["error"] == "CONFLICT"

    challenge = _login(client)
    assert challenge["mfa_required"] is True
    assert challenge["mfa_methods"] == ["totp"]
    assert "tokens" not in challenge

    verified = client.post(
        "/auth/verify-mfa",
        json={
            "challenge_id": challenge["challenge_id"],
            "mfa_token": generate_totp(secret, time.time()),
            "mfa_type": "totp",
        },
    )
    assert verified.status_code == 200
    assert verified.json()["data"]["tokens"]["access_token"]


def test_mfa_wrong_code_reports_remaining_attempts(outbox):
    client = _client()
    _register_verified(client, outbox)
    tokens = _login(client)["tokens"]
    secret = client.post(
        "/auth/mfa/setup", json={"method": "totp"}, headers=_auth_header(tokens)
    ).json()["data"]["secret"]
    client.post(
        "/auth/mfa/confirm",
        json={"method": "totp", "code": generate_totp(secret, time.time())},
        headers=_auth_header(tokens),
    )

    challenge = _login(client)
    resp = client.post(
        "/auth/verify-mfa",
        json={"challenge_id": challenge["challenge_id"], "mfa_token": "abcdef", "mfa_type": "totp"},
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "MFA_VERIFICATION_FAILED"
    assert resp.json()["details"]["remaining_attempts"] == 4


def test_healthz_reports_components():
    resp = _client().get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["session_registry"]["status"] == "healthy"
    assert resp.headers["Cache-Control"] == "no-store"


def test_security_and_correlation_headers():
    resp = _client().get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_access_token_expiry_then_refresh(outbox, monkeypatch):
    client = _client()
    _register_verified(client, outbox)
    tokens = _login(client)["tokens"]
    assert client.get("/auth/profile", headers=_auth_header(tokens)).status_code == 200

    # Move only the token clock; sessions in the registry stay live
    now = time.time()
    runtime = get_runtime()
    monkeypatch.setattr(runtime.codec, "_clock", lambda: now + tokens["expires_in"] + 60)

    expired = client.get("/auth/profile", headers=_auth_header(tokens))
    assert expired.status_code == 401
    assert expired.json()["message"] == "Invalid or expired access token"

    refreshed = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200
    new_tokens = refreshed.json()["data"]["tokens"]
    assert client.get("/auth/profile", headers=_auth_header(new_tokens)).status_code == 200
