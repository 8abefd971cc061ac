import base64
from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

import vaultauth.app as app_module

CLIENT_ID = "vaultauth-web-app"
CLIENT_SECRET = "vaultauth-web-app-secret-change-me"
REDIRECT = "http://localhost:3001/auth/callback"
PASSWORD = "Amber-W4terfall!"


def _basic(client_id=CLIENT_ID, client_secret=CLIENT_SECRET):
    raw = f"{client_id}:{client_secret}".encode()
    return {"Authorization": "Basic " + base64.b64encode(raw).decode()}


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


@pytest.fixture
def client(outbox):
    """Client holding the session cookies of a verified, signed-in user."""
    client = TestClient(app_module.app)
    client.post(
        "/auth/register",
        json={
            "email": "erin@example.com",
            "password": PASSWORD,
            "confirm_password": PASSWORD,
            "first_name": "Erin",
            "last_name": "Hannon",
            "accept_terms": True,
            "accept_privacy": True,
        },
    )
    client.get(
        "/auth/verify-email", params={"token": outbox.last_verification_token("erin@example.com")}
    )
    resp = client.post("/auth/login", json={"email": "erin@example.com", "password": PASSWORD})
    assert resp.status_code == 200, resp.text
    return client


def _authorize(client, **params):
    query = {
        "response_type": "code",
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT,
        "scope": "openid profile email",
        "state": "s-1",
    }
    query.update(params)
    return client.get("/oauth/authorize", params=query, follow_redirects=False)


def _exchange(client, code, **extra):
    data = {"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT, **extra}
    return client.post("/oauth/token", data=data, headers=_basic())


def _tokens(client):
    code = _query(_authorize(client).headers["location"])["code"]
    resp = _exchange(client, code)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_authorize_redirects_with_code(client):
    resp = _authorize(client)
    assert resp.status_code == 302
    location = resp.headers["location"]
    assert location.startswith(REDIRECT)
    params = _query(location)
    assert params["state"] == "s-1"
    assert params["code"]


def test_authorize_without_session_goes_to_login():
    resp = TestClient(app_module.app).get(
        "/oauth/authorize",
        params={"response_type": "code", "client_id": CLIENT_ID, "redirect_uri": REDIRECT},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("/auth/login?")
    assert "continue=" in resp.headers["location"]


def test_authorize_unknown_redirect_uri_is_answered_directly(client):
    resp = _authorize(client, redirect_uri="https://evil.example.com/cb")
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_client"


def test_token_exchange_form_and_basic_auth(client):
    tokens = _tokens(client)
    assert tokens["token_type"] == "Bearer"
    assert tokens["scope"] == "openid profile email"
    assert {"access_token", "refresh_token", "id_token", "expires_in"} <= set(tokens)


def test_token_exchange_with_client_secret_post(client):
    code = _query(_authorize(client).headers["location"])["code"]
    resp = client.post(
        "/oauth/token",
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT,
            "client_id": CLIENT_ID,
            "client_secret": CLIENT_SECRET,
        },
    )
    assert resp.status_code == 200
    assert resp.headers["Cache-Control"] == "no-store"


def test_token_endpoint_accepts_json(client):
    code = _query(_authorize(client).headers["location"])["code"]
    resp = client.post(
        "/oauth/token",
        json={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT},
        headers=_basic(),
    )
    assert resp.status_code == 200


def test_bad_client_secret_is_401_with_challenge(client):
    code = _query(_authorize(client).headers["location"])["code"]
    resp = client.post(
        "/oauth/token",
        data={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT},
        headers=_basic(client_secret="wrong"),
    )
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_client"
    assert resp.headers["WWW-Authenticate"].startswith("Basic")


def test_code_replay_is_invalid_grant(client):
    code = _query(_authorize(client).headers["location"])["code"]
    assert _exchange(client, code).status_code == 200
    replay = _exchange(client, code)
    assert replay.status_code == 400
    assert replay.json() == {
        "error": "invalid_grant",
        "error_description": "The provided authorization grant is invalid",
    }


def test_refresh_grant(client):
    tokens = _tokens(client)
    resp = client.post(
        "/oauth/token",
        data={"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"]},
        headers=_basic(),
    )
    assert resp.status_code == 200
    assert resp.json()["refresh_token"] != tokens["refresh_token"]


def test_userinfo(client):
    tokens = _tokens(client)
    resp = client.get(
        "/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )
    assert resp.status_code == 200
    claims = resp.json()
    assert claims["email"] == "erin@example.com"
    assert claims["given_name"] == "Erin"
    assert claims["family_name"] == "Hannon"


def test_userinfo_requires_bearer_token():
    resp = TestClient(app_module.app).get("/oauth/userinfo")
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_token"
    assert resp.headers["WWW-Authenticate"] == 'Bearer error="invalid_token"'


def test_introspect_and_revoke(client):
    tokens = _tokens(client)

    active = client.post("/oauth/introspect", data={"token": tokens["access_token"]}, headers=_basic())
    assert active.json()["active"] is True
    assert active.json()["client_id"] == CLIENT_ID

    revoked = client.post(
        "/oauth/revoke",
        data={"token": tokens["refresh_token"], "token_type_hint": "refresh_token"},
        headers=_basic(),
    )
    assert revoked.status_code == 200
    assert revoked.json() == {}

    inactive = client.post("/oauth/introspect", data={"token": tokens["access_token"]}, headers=_basic())
    assert inactive.json() == {"active": False}


def test_revoke_unknown_token_still_succeeds(client):
    resp = client.post("/oauth/revoke", data={"token": "garbage"}, headers=_basic())
    assert resp.status_code == 200


def test_introspect_requires_client_auth(client):
    resp = client.post("/oauth/introspect", data={"token": "anything"})
    assert resp.status_code == 401
    assert resp.json()["error"] == "invalid_client"


def test_discovery_and_jwks():
    client = TestClient(app_module.app)
    for path in ("/.well-known/openid-configuration", "/.well-known/openid_configuration"):
        doc = client.get(path).json()
        assert doc["issuer"] == "vaultauth-api"
        assert doc["authorization_endpoint"] == "http://localhost:8000/oauth/authorize"
        assert "authorization_code" in doc["grant_types_supported"]
    assert client.get("/oauth/jwks").json() == {"keys": []}
