"""OAuth 2.0 / OpenID Connect authorization server.

Every operation returns a value from the ``OAuthResult`` union instead of
raising, so the HTTP layer only has to switch on ``kind``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from vaultauth.config import Settings
from vaultauth.logging import audit_event, get_logger
from vaultauth.service.auth import AuthContext, AuthService
from vaultauth.service.errors import InvalidRefreshTokenError
from vaultauth.service.tokens import TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, TokenCodec
from vaultauth.storage.common import CredentialStore
from vaultauth.storage.models import AuthorizationCode, OAuthClient, SessionMetadata, User, UserStatus
from vaultauth.storage.session_registry import SessionRegistry

logger = get_logger(__name__)

SUPPORTED_SCOPES: Tuple[str, ...] = ("openid", "profile", "email", "offline_access")
DEFAULT_REQUESTED_SCOPE: Tuple[str, ...] = ("openid", "profile", "email")
GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"

# RFC 7636 section 4.1 and the unpadded base64url SHA-256 digest
_CODE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}\Z")
_S256_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9_-]{43}\Z")


@dataclass(frozen=True)
class OAuthRedirect:
    url: str
    kind: Literal["redirect"] = "redirect"


@dataclass(frozen=True)
class OAuthTokens:
    payload: Dict[str, Any] = field(default_factory=dict)
    kind: Literal["tokens"] = "tokens"


@dataclass(frozen=True)
class OAuthError:
    code: str
    description: str
    status_code: int = 400
    kind: Literal["error"] = "error"

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.code, "error_description": self.description}


OAuthResult = Union[OAuthRedirect, OAuthTokens, OAuthError]


@dataclass(frozen=True)
class AuthorizeRequest:
    response_type: Optional[str]
    client_id: Optional[str]
    redirect_uri: Optional[str]
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None
    original_url: str = ""


@dataclass(frozen=True)
class TokenRequest:
    grant_type: Optional[str]
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


def parse_scope(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ()
    seen: List[str] = []
    for item in raw.split():
        if item not in seen:
            seen.append(item)
    return tuple(seen)


def is_valid_code_verifier(verifier: Optional[str]) -> bool:
    return bool(verifier) and _CODE_VERIFIER_RE.match(verifier) is not None


def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def append_query(url: str, params: Dict[str, Optional[str]]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items() if value is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


class ClientRegistry:
    """Static OAuth clients built from settings."""

    def __init__(self, clients: Iterable[OAuthClient]) -> None:
        self._clients = {client.client_id: client for client in clients}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ClientRegistry":
        redirect_uris = tuple(settings.oauth_redirect_uris)
        clients = [
            OAuthClient(
                client_id=settings.oauth_client_id,
                client_secret=settings.oauth_client_secret,
                redirect_uris=redirect_uris,
                name="Web application",
            )
        ]
        if settings.oauth_public_client_id:
            clients.append(
                OAuthClient(
                    client_id=settings.oauth_public_client_id,
                    client_secret=None,
                    redirect_uris=redirect_uris,
                    name="Public client",
                )
            )
        return cls(clients)

    def get(self, client_id: Optional[str]) -> Optional[OAuthClient]:
        if not client_id:
            return None
        return self._clients.get(client_id)

    def authenticate(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> Optional[OAuthClient]:
        client = self.get(client_id)
        if client is None:
            return None
        if client.is_public:
            # Public clients prove possession through PKCE instead
            return client if not client_secret else None
        if not client_secret:
            return None
        if not hmac.compare_digest(client.client_secret.encode(), client_secret.encode()):
            return None
        return client


class OAuthServer:
    def __init__(
        self,
        auth: AuthService,
        registry: SessionRegistry,
        codec: TokenCodec,
        store: CredentialStore,
        clients: ClientRegistry,
        settings: Settings,
    ) -> None:
        self.auth = auth
        self.registry = registry
        self.codec = codec
        self.store = store
        self.clients = clients
        self.settings = settings

    # authorization endpoint --------------------------------------------------
    async def authorize(
        self, request: AuthorizeRequest, ctx: Optional[AuthContext]
    ) -> OAuthResult:
        client = self.clients.get(request.client_id)
        if client is None or not request.redirect_uri or request.redirect_uri not in client.redirect_uris:
            # Never redirect to an unverified URI
            return OAuthError("invalid_client", "Invalid client_id or redirect_uri", 400)

        def redirect_error(code: str, description: str) -> OAuthRedirect:
            return OAuthRedirect(
                url=append_query(
                    request.redirect_uri,
                    {"error": code, "error_description": description, "state": request.state},
                )
            )

        if request.response_type != "code":
            return redirect_error(
                "unsupported_response_type", "Only the authorization code flow is supported"
            )
        scopes = parse_scope(request.scope) or DEFAULT_REQUESTED_SCOPE
        unknown = [item for item in scopes if item not in client.scopes]
        if unknown:
            return redirect_error("invalid_scope", f"Unsupported scope: {' '.join(unknown)}")
        if request.code_challenge and request.code_challenge_method != "S256":
            return redirect_error("invalid_request", "code_challenge_method must be S256")
        if request.code_challenge and not _S256_CHALLENGE_RE.match(request.code_challenge):
            return redirect_error("invalid_request", "code_challenge is malformed")
        if request.code_challenge_method and not request.code_challenge:
            return redirect_error("invalid_request", "code_challenge is required")
        if client.is_public and not request.code_challenge:
            return redirect_error("invalid_request", "PKCE is required for public clients")

        user = self.store.get_user(ctx.user_id) if ctx else None
        if ctx is None or user is None:
            login_url = append_query(
                self.settings.login_url,
                {
                    "continue": request.original_url,
                    "client_id": client.client_id,
                    "redirect_uri": request.redirect_uri,
                    "state": request.state or "",
                },
            )
            return OAuthRedirect(url=login_url)
        if user.status != UserStatus.ACTIVE:
            return redirect_error("access_denied", "Account is not active")

        code = secrets.token_urlsafe(32)
        grant = AuthorizationCode(
            code=code,
            client_id=client.client_id,
            redirect_uri=request.redirect_uri,
            user_id=user.id,
            scope=scopes,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
            nonce=request.nonce,
            auth_time=ctx.issued_at or self.codec.now(),
        )
        await self.registry.put_authorization_code(
            code, grant.to_dict(), self.settings.authorization_code_ttl_seconds
        )
        audit_event(
            "oauth_code_issued",
            user_id=user.id,
            client_id=client.client_id,
            scope=" ".join(scopes),
        )
        return OAuthRedirect(url=append_query(request.redirect_uri, {"code": code, "state": request.state}))

    # token endpoint ----------------------------------------------------------
    async def token(self, request: TokenRequest) -> OAuthResult:
        client = self.clients.authenticate(request.client_id, request.client_secret)
        if client is None:
            return OAuthError("invalid_client", "Client authentication failed", 401)
        if request.grant_type == GRANT_AUTHORIZATION_CODE and GRANT_AUTHORIZATION_CODE in client.grant_types:
            return await self._exchange_code(client, request)
        if request.grant_type == GRANT_REFRESH_TOKEN and GRANT_REFRESH_TOKEN in client.grant_types:
            return await self._refresh(client, request)
        return OAuthError(
            "unsupported_grant_type", f"Grant type '{request.grant_type}' is not supported"
        )

    async def _exchange_code(self, client: OAuthClient, request: TokenRequest) -> OAuthResult:
        invalid_grant = OAuthError("invalid_grant", "The provided authorization grant is invalid")
        if not request.code:
            return OAuthError("invalid_request", "code is required")
        data = await self.registry.consume_authorization_code(request.code)
        if data is None:
            return invalid_grant
        grant = AuthorizationCode.from_dict(data)
        if grant.client_id != client.client_id or grant.redirect_uri != request.redirect_uri:
            return invalid_grant
        if grant.code_challenge:
            verifier = request.code_verifier
            if not is_valid_code_verifier(verifier) or not hmac.compare_digest(
                s256_challenge(verifier), grant.code_challenge
            ):
                return invalid_grant
        user = self.store.get_user(grant.user_id)
        if user is None or user.status != UserStatus.ACTIVE:
            return invalid_grant

        _, tokens = await self.auth.issue_session_tokens(
            user,
            SessionMetadata(client_id=client.client_id),
            scope=grant.scope,
            client_id=client.client_id,
        )
        payload: Dict[str, Any] = {
            "access_token": tokens.access_token,
            "token_type": "Bearer",
            "expires_in": tokens.expires_in,
            "refresh_token": tokens.refresh_token,
            "scope": " ".join(grant.scope),
        }
        if "openid" in grant.scope:
            payload["id_token"] = self._id_token(
                user, client, grant.scope, nonce=grant.nonce, auth_time=grant.auth_time
            )
        audit_event(
            "oauth_token_issued",
            user_id=user.id,
            client_id=client.client_id,
            grant_type=GRANT_AUTHORIZATION_CODE,
        )
        return OAuthTokens(payload=payload)

    async def _refresh(self, client: OAuthClient, request: TokenRequest) -> OAuthResult:
        invalid_grant = OAuthError("invalid_grant", "The provided refresh token is invalid")
        if not request.refresh_token:
            return OAuthError("invalid_request", "refresh_token is required")
        requested = parse_scope(request.scope) or None
        if requested is not None:
            result = self.codec.verify(request.refresh_token, expected_type=TOKEN_TYPE_REFRESH)
            if not result.valid:
                return invalid_grant
            granted = set(result.payload.get("scope") or ())
            if not set(requested).issubset(granted):
                return OAuthError("invalid_scope", "Requested scope exceeds the original grant")
        try:
            tokens = await self.auth.refresh_tokens(
                request.refresh_token, client_id=client.client_id, scope=requested
            )
        except InvalidRefreshTokenError:
            return invalid_grant

        payload: Dict[str, Any] = {
            "access_token": tokens.access_token,
            "token_type": "Bearer",
            "expires_in": tokens.expires_in,
            "refresh_token": tokens.refresh_token,
            "scope": " ".join(tokens.scope),
        }
        user = self.store.get_user(tokens.user_id)
        if user is not None and "openid" in tokens.scope:
            session = await self.registry.get_session(tokens.session_id)
            auth_time = int(session.created_at.timestamp()) if session else self.codec.now()
            payload["id_token"] = self._id_token(user, client, tokens.scope, auth_time=auth_time)
        audit_event(
            "oauth_token_issued",
            user_id=tokens.user_id,
            client_id=client.client_id,
            grant_type=GRANT_REFRESH_TOKEN,
        )
        return OAuthTokens(payload=payload)

    def _id_token(
        self,
        user: User,
        client: OAuthClient,
        scope: Iterable[str],
        *,
        nonce: Optional[str] = None,
        auth_time: int = 0,
    ) -> str:
        scopes = set(scope)
        claims: Dict[str, Any] = {"sub": user.id, "auth_time": auth_time or self.codec.now()}
        if nonce:
            claims["nonce"] = nonce
        claims.update(self._scoped_claims(user, scopes))
        return self.codec.issue_id_token(
            claims, client_id=client.client_id, ttl_seconds=self.settings.id_token_ttl_seconds
        ).token

    @staticmethod
    def _scoped_claims(user: User, scopes: set) -> Dict[str, Any]:
        claims: Dict[str, Any] = {}
        if "email" in scopes:
            claims["email"] = user.email
            claims["email_verified"] = user.email_verified
        if "profile" in scopes:
            claims["name"] = user.display_name
            claims["given_name"] = user.first_name
            claims["family_name"] = user.last_name
            claims["locale"] = "en-US"
            claims["updated_at"] = int(user.updated_at.timestamp())
        return claims

    # revocation and introspection --------------------------------------------
    async def revoke(
        self, token: Optional[str], token_type_hint: Optional[str], client: OAuthClient
    ) -> None:
        """RFC 7009: unknown or foreign tokens are ignored and still succeed."""
        if not token:
            return
        result = self.codec.verify(token)
        if not result.valid:
            return
        payload = result.payload
        if payload.get("client_id") != client.client_id:
            return
        token_type = payload.get("token_type")
        if token_type == TOKEN_TYPE_REFRESH and payload.get("token_family"):
            await self.registry.revoke_family(payload["token_family"])
        elif token_type == TOKEN_TYPE_ACCESS and payload.get("sid"):
            await self.registry.revoke_session(payload["sid"])
        else:
            return
        audit_event(
            "oauth_token_revoked",
            user_id=payload.get("sub"),
            client_id=client.client_id,
            token_type=token_type,
            hint=token_type_hint,
        )

    async def introspect(self, token: Optional[str]) -> Dict[str, Any]:
        inactive: Dict[str, Any] = {"active": False}
        if not token:
            return inactive
        try:
            result = self.codec.verify(token)
            if not result.valid:
                return inactive
            payload = result.payload
            token_type = payload.get("token_type")
            if token_type not in (TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH):
                return inactive
            if not await self.registry.is_session_active(payload.get("sid") or ""):
                return inactive
            if token_type == TOKEN_TYPE_REFRESH and not await self.registry.is_refresh_current(
                payload.get("token_family") or "", payload["jti"]
            ):
                return inactive
            user = self.store.get_user(payload["sub"])
            if user is None or user.status in (UserStatus.CLOSED, UserStatus.LOCKED):
                return inactive
        except Exception as exc:
            # Introspection answers "inactive" rather than failing
            logger.warning("oauth_introspection_failed", error=str(exc))
            return inactive
        return {
            "active": True,
            "sub": payload["sub"],
            "scope": " ".join(payload.get("scope") or ()),
            "exp": payload.get("exp"),
            "iat": payload.get("iat"),
            "client_id": payload.get("client_id"),
            "token_type": "Bearer" if token_type == TOKEN_TYPE_ACCESS else "refresh_token",
            "email": user.email,
        }

    # openid connect ----------------------------------------------------------
    def userinfo(self, ctx: AuthContext) -> Optional[Dict[str, Any]]:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            return None
        claims: Dict[str, Any] = {"sub": user.id}
        claims.update(self._scoped_claims(user, set(ctx.scope)))
        return claims

    @staticmethod
    def jwks() -> Dict[str, Any]:
        # HS256 keys are shared secrets and are never published
        return {"keys": []}

    def discovery_document(self, base_url: str) -> Dict[str, Any]:
        base = base_url.rstrip("/")
        return {
            # Must equal the iss claim of every ID token
            "issuer": self.codec.issuer,
            "authorization_endpoint": f"{base}/oauth/authorize",
            "token_endpoint": f"{base}/oauth/token",
            "revocation_endpoint": f"{base}/oauth/revoke",
            "introspection_endpoint": f"{base}/oauth/introspect",
            "userinfo_endpoint": f"{base}/oauth/userinfo",
            "jwks_uri": f"{base}/oauth/jwks",
            "response_types_supported": ["code"],
            "grant_types_supported": [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
            "subject_types_supported": ["public"],
            "id_token_signing_alg_values_supported": ["HS256"],
            "scopes_supported": list(SUPPORTED_SCOPES),
            "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
            "claims_supported": [
                "sub",
                "iss",
                "aud",
                "exp",
                "iat",
                "auth_time",
                "nonce",
                "email",
                "email_verified",
                "name",
                "given_name",
                "family_name",
                "locale",
                "updated_at",
            ],
            "code_challenge_methods_supported": ["S256"],
            "revocation_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
            "introspection_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        }
