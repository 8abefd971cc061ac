from urllib.parse import parse_qs, urlsplit

import pytest

from vaultauth.config import get_settings
from vaultauth.service.auth import RegisterInput
from vaultauth.service.oauth import (
    AuthorizeRequest,
    ClientRegistry,
    OAuthServer,
    TokenRequest,
    append_query,
    parse_scope,
    s256_challenge,
)
from vaultauth.storage.models import OAuthClient

REDIRECT = "https://app.example.com/callback"
CONFIDENTIAL = OAuthClient(client_id="web-app", client_secret="s3cret", redirect_uris=(REDIRECT,))
PUBLIC = OAuthClient(client_id="spa", client_secret=None, redirect_uris=(REDIRECT,))
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"


@pytest.fixture
def server(auth):
    return OAuthServer(
        auth,
        auth.registry,
        auth.codec,
        auth.store,
        ClientRegistry([CONFIDENTIAL, PUBLIC]),
        get_settings(),
    )


@pytest.fixture
def signed_in(auth, notifier):
    async def _sign_in():
        await auth.register(
            RegisterInput(
                email="carol@example.com",
                password="Bright-0rchard!",
                first_name="Carol",
                last_name="Danvers",
            )
        )
        await auth.verify_email(notifier.last_verification_token("carol@example.com"))
        tokens = (await auth.login("carol@example.com", "Bright-0rchard!")).tokens
        return await auth.authenticate(tokens.access_token)

    return _sign_in


def _query(url):
    return {key: values[0] for key, values in parse_qs(urlsplit(url).query).items()}


def _authorize_request(**overrides):
    params = {
        "response_type": "code",
        "client_id": "web-app",
        "redirect_uri": REDIRECT,
        "scope": "openid email profile",
        "state": "xyz",
        "original_url": "/oauth/authorize?client_id=web-app",
    }
    params.update(overrides)
    return AuthorizeRequest(**params)


async def _code(server, ctx, **overrides):
    result = await server.authorize(_authorize_request(**overrides), ctx)
    assert result.kind == "redirect"
    return _query(result.url)["code"]


def test_parse_scope_dedupes_in_order():
    assert parse_scope("openid email openid") == ("openid", "email")
    assert parse_scope(None) == ()


def test_s256_challenge_matches_rfc7636_example():
    assert s256_challenge(VERIFIER) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_append_query_keeps_existing_params():
    url = append_query("https://app.example.com/cb?x=1", {"code": "abc", "state": None})
    assert _query(url) == {"x": "1", "code": "abc"}


class TestClientRegistry:
    def test_confidential_client_needs_matching_secret(self):
        clients = ClientRegistry([CONFIDENTIAL, PUBLIC])
        assert clients.authenticate("web-app", "s3cret") is CONFIDENTIAL
        assert clients.authenticate("web-app", "wrong") is None
        assert clients.authenticate("web-app", None) is None
        assert clients.authenticate("unknown", "s3cret") is None

    def test_public_client_must_not_send_secret(self):
        clients = ClientRegistry([CONFIDENTIAL, PUBLIC])
        assert clients.authenticate("spa", None) is PUBLIC
        assert clients.authenticate("spa", "anything") is None


class TestAuthorize:
    async def test_unknown_client_is_not_redirected(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(_authorize_request(client_id="nope"), ctx)
        assert result.kind == "error"
        assert result.code == "invalid_client"

    async def test_unregistered_redirect_uri_is_not_redirected(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(
            _authorize_request(redirect_uri="https://evil.example.com/cb"), ctx
        )
        assert result.kind == "error"
        assert result.status_code == 400

    async def test_unsupported_response_type_redirects_with_state(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(_authorize_request(response_type="token"), ctx)
        params = _query(result.url)
        assert result.url.startswith(REDIRECT)
        assert params["error"] == "unsupported_response_type"
        assert params["state"] == "xyz"

    async def test_unknown_scope_rejected(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(_authorize_request(scope="openid admin"), ctx)
        assert _query(result.url)["error"] == "invalid_scope"

    async def test_plain_pkce_rejected(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(
            _authorize_request(code_challenge="abc", code_challenge_method="plain"), ctx
        )
        assert _query(result.url)["error"] == "invalid_request"

    async def test_public_client_requires_pkce(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(_authorize_request(client_id="spa"), ctx)
        assert _query(result.url)["error"] == "invalid_request"

    async def test_anonymous_user_sent_to_login(self, server):
        result = await server.authorize(_authorize_request(), None)
        assert result.kind == "redirect"
        assert result.url.startswith("/auth/login?")
        params = _query(result.url)
        assert params["continue"] == "/oauth/authorize?client_id=web-app"
        assert params["client_id"] == "web-app"

    async def test_signed_in_user_gets_code_and_state(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(_authorize_request(), ctx)
        params = _query(result.url)
        assert result.url.startswith(REDIRECT + "?")
        assert params["state"] == "xyz"
        assert params["code"]


class TestTokenEndpoint:
    async def test_bad_client_credentials(self, server):
        result = await server.token(
            TokenRequest(grant_type="authorization_code", client_id="web-app", client_secret="x")
        )
        assert result.kind == "error"
        assert result.code == "invalid_client"
        assert result.status_code == 401

    async def test_unsupported_grant(self, server):
        result = await server.token(
            TokenRequest(grant_type="password", client_id="web-app", client_secret="s3cret")
        )
        assert result.code == "unsupported_grant_type"

    async def test_code_exchange_issues_tokens_and_id_token(self, server, signed_in, auth):
        ctx = await signed_in()
        code = await _code(server, ctx, nonce="n-0S6")

        result = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="web-app",
                client_secret="s3cret",
                code=code,
                redirect_uri=REDIRECT,
            )
        )

        assert result.kind == "tokens"
        payload = result.payload
        assert payload["token_type"] == "Bearer"
        assert payload["scope"] == "openid email profile"
        id_claims = auth.codec.peek(payload["id_token"])
        assert id_claims["aud"] == "web-app"
        assert id_claims["nonce"] == "n-0S6"
        assert id_claims["email"] == "carol@example.com"
        assert id_claims["name"] == "Carol Danvers"
        assert id_claims["iss"] == server.discovery_document("https://auth.example.com")["issuer"]

        token_ctx = await auth.authenticate(payload["access_token"])
        assert token_ctx.client_id == "web-app"

    async def test_code_is_single_use(self, server, signed_in):
        ctx = await signed_in()
        code = await _code(server, ctx)
        request = TokenRequest(
            grant_type="authorization_code",
            client_id="web-app",
            client_secret="s3cret",
            code=code,
            redirect_uri=REDIRECT,
        )
        assert (await server.token(request)).kind == "tokens"
        second = await server.token(request)
        assert second.kind == "error"
        assert second.code == "invalid_grant"

    async def test_code_bound_to_redirect_uri(self, server, signed_in):
        ctx = await signed_in()
        code = await _code(server, ctx)
        result = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="web-app",
                client_secret="s3cret",
                code=code,
                redirect_uri="https://app.example.com/other",
            )
        )
        assert result.code == "invalid_grant"

    async def test_pkce_verifier_checked(self, server, signed_in):
        ctx = await signed_in()
        challenge = s256_challenge(VERIFIER)
        wrong_code = await _code(
            server, ctx, client_id="spa", code_challenge=challenge, code_challenge_method="S256"
        )
        wrong = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="spa",
                code=wrong_code,
                redirect_uri=REDIRECT,
                code_verifier="not-the-verifier",
            )
        )
        assert wrong.code == "invalid_grant"

        code = await _code(
            server, ctx, client_id="spa", code_challenge=challenge, code_challenge_method="S256"
        )
        result = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="spa",
                code=code,
                redirect_uri=REDIRECT,
                code_verifier=VERIFIER,
            )
        )
        assert result.kind == "tokens"

    @pytest.mark.parametrize(
        "verifier",
        ["café" + "a" * 43, "short", "a" * 129, VERIFIER[:-1] + " "],
    )
    async def test_malformed_verifier_is_invalid_grant(self, server, signed_in, verifier):
        ctx = await signed_in()
        code = await _code(
            server,
            ctx,
            client_id="spa",
            code_challenge=s256_challenge(VERIFIER),
            code_challenge_method="S256",
        )
        result = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="spa",
                code=code,
                redirect_uri=REDIRECT,
                code_verifier=verifier,
            )
        )
        assert result.kind == "error"
        assert result.code == "invalid_grant"

    async def test_malformed_challenge_rejected_at_authorize(self, server, signed_in):
        ctx = await signed_in()
        result = await server.authorize(
            _authorize_request(
                client_id="spa", code_challenge="défi" * 11, code_challenge_method="S256"
            ),
            ctx,
        )
        assert result.kind == "redirect"
        params = _query(result.url)
        assert params["error"] == "invalid_request"
        assert "code" not in params

    async def test_refresh_grant_rotates_and_limits_scope(self, server, signed_in):
        ctx = await signed_in()
        code = await _code(server, ctx)
        issued = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="web-app",
                client_secret="s3cret",
                code=code,
                redirect_uri=REDIRECT,
            )
        )
        refresh_token = issued.payload["refresh_token"]

        widened = await server.token(
            TokenRequest(
                grant_type="refresh_token",
                client_id="web-app",
                client_secret="s3cret",
                refresh_token=refresh_token,
                scope="openid offline_access",
            )
        )
        assert widened.code == "invalid_scope"

        narrowed = await server.token(
            TokenRequest(
                grant_type="refresh_token",
                client_id="web-app",
                client_secret="s3cret",
                refresh_token=refresh_token,
                scope="email",
            )
        )
        assert narrowed.kind == "tokens"
        assert narrowed.payload["scope"] == "email"
        assert "id_token" not in narrowed.payload
        assert narrowed.payload["refresh_token"] != refresh_token

        replayed = await server.token(
            TokenRequest(
                grant_type="refresh_token",
                client_id="web-app",
                client_secret="s3cret",
                refresh_token=refresh_token,
            )
        )
        assert replayed.code == "invalid_grant"

    async def test_first_party_refresh_token_rejected(self, server, signed_in, auth):
        await signed_in()
        tokens = (await auth.login("carol@example.com", "Bright-0rchard!")).tokens
        result = await server.token(
            TokenRequest(
                grant_type="refresh_token",
                client_id="web-app",
                client_secret="s3cret",
                refresh_token=tokens.refresh_token,
            )
        )
        assert result.code == "invalid_grant"


class TestRevokeIntrospect:
    async def _tokens(self, server, ctx):
        code = await _code(server, ctx)
        result = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="web-app",
                client_secret="s3cret",
                code=code,
                redirect_uri=REDIRECT,
            )
        )
        return result.payload

    async def test_introspect_active_access_token(self, server, signed_in):
        ctx = await signed_in()
        payload = await self._tokens(server, ctx)

        info = await server.introspect(payload["access_token"])

        assert info["active"]
        assert info["sub"] == ctx.user_id
        assert info["client_id"] == "web-app"
        assert info["token_type"] == "Bearer"
        assert info["email"] == "carol@example.com"

    async def test_introspect_garbage_is_inactive(self, server):
        assert await server.introspect("not-a-token") == {"active": False}
        assert await server.introspect(None) == {"active": False}

    async def test_revoking_refresh_token_ends_the_grant(self, server, signed_in):
        ctx = await signed_in()
        payload = await self._tokens(server, ctx)

        await server.revoke(payload["refresh_token"], "refresh_token", CONFIDENTIAL)

        assert not (await server.introspect(payload["refresh_token"]))["active"]
        assert not (await server.introspect(payload["access_token"]))["active"]

    async def test_other_clients_cannot_revoke(self, server, signed_in):
        ctx = await signed_in()
        payload = await self._tokens(server, ctx)
        await server.revoke(payload["access_token"], None, PUBLIC)
        assert (await server.introspect(payload["access_token"]))["active"]

    async def test_rotated_refresh_token_is_inactive(self, server, signed_in):
        ctx = await signed_in()
        payload = await self._tokens(server, ctx)
        await server.token(
            TokenRequest(
                grant_type="refresh_token",
                client_id="web-app",
                client_secret="s3cret",
                refresh_token=payload["refresh_token"],
            )
        )
        assert not (await server.introspect(payload["refresh_token"]))["active"]


class TestOpenIdConnect:
    async def test_userinfo_follows_scope(self, server, signed_in, auth):
        ctx = await signed_in()
        code = await _code(server, ctx, scope="openid email")
        result = await server.token(
            TokenRequest(
                grant_type="authorization_code",
                client_id="web-app",
                client_secret="s3cret",
                code=code,
                redirect_uri=REDIRECT,
            )
        )
        token_ctx = await auth.authenticate(result.payload["access_token"])

        claims = server.userinfo(token_ctx)

        assert claims == {
            "sub": ctx.user_id,
            "email": "carol@example.com",
            "email_verified": True,
        }

    def test_jwks_publishes_no_keys(self, server):
        assert server.jwks() == {"keys": []}

    def test_discovery_document(self, server):
        doc = server.discovery_document("https://auth.example.com/")
        assert doc["issuer"] == server.codec.issuer
        assert doc["token_endpoint"] == "https://auth.example.com/oauth/token"
        assert doc["code_challenge_methods_supported"] == ["S256"]
        assert "offline_access" in doc["scopes_supported"]
