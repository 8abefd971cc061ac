import time

from fastapi.testclient import TestClient

import vaultauth.app as app_module
from vaultauth.service.mfa import generate_totp

PASSWORD = "C0pper-Kettle!"


def _login(client, password=PASSWORD):
    return client.post("/auth/login", json={"email": "frank@example.com", "password": password})


def _mfa_user(client, outbox):
    client.post(
        "/auth/register",
        json={
            "email": "frank@example.com",
            "password": PASSWORD,
            "confirm_password": PASSWORD,
            "first_name": "Frank",
            "last_name": "Castle",
            "accept_terms": True,
            "accept_privacy": True,
        },
    )
    client.get(
        "/auth/verify-email", params={"token": outbox.last_verification_token("frank@example.com")}
    )
    tokens = _login(client).json()["data"]["tokens"]
    headers = {"Authorization": f"Bearer {tokens['access_token']}"}
    secret = client.post("/auth/mfa/setup", json={"method": "totp"}, headers=headers).json()[
        "data"
    ]["secret"]
    client.post(
        "/auth/mfa/confirm",
        json={"method": "totp", "code": generate_totp(secret, time.time())},
        headers=headers,
    )
    return secret


def test_login_limited_per_ip():
    client = TestClient(app_module.app)
    responses = [_login(client) for _ in range(6)]

    assert [resp.status_code for resp in responses[:5]] == [401] * 5
    assert responses[0].headers["X-RateLimit-Limit"] == "5"
    assert responses[0].headers["X-RateLimit-Remaining"] == "4"

    limited = responses[5]
    assert limited.status_code == 429
    assert limited.json()["error"] == "RATE_LIMIT_EXCEEDED"
    assert int(limited.headers["Retry-After"]) >= 1
    assert limited.headers["X-RateLimit-Remaining"] == "0"


def test_each_auth_route_has_its_own_bucket():
    client = TestClient(app_module.app)
    for _ in range(5):
        _login(client)
    assert _login(client).status_code == 429

    resp = client.post("/auth/forgot-password", json={"email": "frank@example.com"})
    assert resp.status_code == 200


def test_forgot_password_limited():
    client = TestClient(app_module.app)
    statuses = [
        client.post("/auth/forgot-password", json={"email": "frank@example.com"}).status_code
        for _ in range(6)
    ]
    assert statuses == [200] * 5 + [429]


def test_mfa_verification_limited_per_user(outbox):
    client = TestClient(app_module.app)
    _mfa_user(client, outbox)
    challenge_id = _login(client).json()["data"]["challenge_id"]

    statuses = [
        client.post(
            "/auth/verify-mfa",
            json={"challenge_id": challenge_id, "mfa_token": "abcdef", "mfa_type": "totp"},
        ).status_code
        for _ in range(4)
    ]
    assert statuses == [401, 401, 401, 429]

    # A fresh challenge for the same user shares the bucket
    second = _login(client).json()["data"]["challenge_id"]
    resp = client.post(
        "/auth/verify-mfa",
        json={"challenge_id": second, "mfa_token": "abcdef", "mfa_type": "totp"},
    )
    assert resp.status_code == 429
    assert resp.headers["X-RateLimit-Limit"] == "3"


def test_unknown_challenges_share_an_ip_bucket():
    client = TestClient(app_module.app)
    statuses = [
        client.post(
            "/auth/verify-mfa",
            json={"challenge_id": f"missing-{i}", "mfa_token": "123456"},
        ).status_code
        for i in range(4)
    ]
    assert statuses == [401, 401, 401, 429]
