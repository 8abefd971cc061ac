from __future__ import annotations

import base64
import binascii
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from vaultauth.api.routes import get_optional_user
from vaultauth.logging import get_logger
from vaultauth.service.auth import AuthContext
from vaultauth.service.oauth import AuthorizeRequest, OAuthError, TokenRequest
from vaultauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _oauth_json(
    payload: Dict[str, Any], status_code: int = 200, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    merged = dict(_NO_STORE)
    if headers:
        merged.update(headers)
    return JSONResponse(status_code=status_code, content=payload, headers=merged)


def _oauth_error(error: OAuthError) -> JSONResponse:
    headers = None
    if error.status_code == 401:
        headers = {"WWW-Authenticate": 'Basic realm="oauth"'}
    return _oauth_json(error.to_dict(), error.status_code, headers)


async def _read_params(request: Request) -> Dict[str, str]:
    """Token-style endpoints accept form-encoded bodies and, for convenience, JSON."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        if not isinstance(body, dict):
            return {}
        return {str(k): str(v) for k, v in body.items() if v is not None}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _client_credentials(request: Request, params: Dict[str, str]) -> Tuple[Optional[str], Optional[str]]:
    """client_secret_basic takes precedence over client_secret_post."""
    authorization = request.headers.get("authorization", "")
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() == "basic" and encoded:
        try:
            decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None, None
        client_id, sep, client_secret = decoded.partition(":")
        if not sep:
            return None, None
        return unquote(client_id), unquote(client_secret)
    return params.get("client_id"), params.get("client_secret")


@router.get("/oauth/authorize", tags=["oauth"])
async def authorize(
    request: Request, principal: Optional[AuthContext] = Depends(get_optional_user)
):
    """Authorization endpoint (authorization code flow with optional PKCE).

    Unauthenticated users are sent to the login page with enough context to
    resume; everything else is reported through the client's redirect URI,
    except an unknown client or redirect URI, which is answered directly.
    """
    runtime = get_runtime()
    query = request.query_params
    result = await runtime.oauth.authorize(
        AuthorizeRequest(
            response_type=query.get("response_type"),
            client_id=query.get("client_id"),
            redirect_uri=query.get("redirect_uri"),
            scope=query.get("scope"),
            state=query.get("state"),
            code_challenge=query.get("code_challenge"),
            code_challenge_method=query.get("code_challenge_method"),
            nonce=query.get("nonce"),
            original_url=str(request.url),
        ),
        principal,
    )
    if isinstance(result, OAuthError):
        logger.warning("oauth_authorize_rejected", error=result.code, client_id=query.get("client_id"))
        return _oauth_error(result)
    return RedirectResponse(result.url, status_code=302, headers=_NO_STORE)


@router.post("/oauth/token", tags=["oauth"])
async def token(request: Request):
    runtime = get_runtime()
    params = await _read_params(request)
    client_id, client_secret = _client_credentials(request, params)
    result = await runtime.oauth.token(
        TokenRequest(
            grant_type=params.get("grant_type"),
            client_id=client_id,
            client_secret=client_secret,
            code=params.get("code"),
            redirect_uri=params.get("redirect_uri"),
            code_verifier=params.get("code_verifier"),
            refresh_token=params.get("refresh_token"),
            scope=params.get("scope"),
        )
    )
    if isinstance(result, OAuthError):
        logger.info("oauth_token_rejected", error=result.code, client_id=client_id)
        return _oauth_error(result)
    return _oauth_json(result.payload)


@router.post("/oauth/revoke", tags=["oauth"])
async def revoke(request: Request):
    """Token revocation (RFC 7009); answers 200 for any token once the client authenticates."""
    runtime = get_runtime()
    params = await _read_params(request)
    client = runtime.clients.authenticate(*_client_credentials(request, params))
    if client is None:
        return _oauth_error(OAuthError("invalid_client", "Client authentication failed", 401))
    await runtime.oauth.revoke(params.get("token"), params.get("token_type_hint"), client)
    return _oauth_json({})


@router.post("/oauth/introspect", tags=["oauth"])
async def introspect(request: Request):
    runtime = get_runtime()
    params = await _read_params(request)
    client = runtime.clients.authenticate(*_client_credentials(request, params))
    if client is None:
        return _oauth_error(OAuthError("invalid_client", "Client authentication failed", 401))
    return _oauth_json(await runtime.oauth.introspect(params.get("token")))


@router.get("/oauth/userinfo", tags=["oauth"])
async def userinfo(principal: Optional[AuthContext] = Depends(get_optional_user)):
    runtime = get_runtime()
    claims = runtime.oauth.userinfo(principal) if principal else None
    if claims is None:
        return _oauth_json(
            OAuthError("invalid_token", "Access token is missing or invalid", 401).to_dict(),
            401,
            {"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    return _oauth_json(claims)


@router.get("/oauth/jwks", tags=["oauth"])
async def jwks():
    runtime = get_runtime()
    return _oauth_json(runtime.oauth.jwks())


@router.get("/.well-known/openid_configuration", tags=["oauth"])
@router.get("/.well-known/openid-configuration", tags=["oauth"])
async def openid_configuration():
    runtime = get_runtime()
    return JSONResponse(runtime.oauth.discovery_document(runtime.settings.app_base_url))
