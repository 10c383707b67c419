"""
api/routes/v1/oauth.py -- OAuth2 authorization-code grant endpoints (RFC 6749 / RFC 7009).

Routes:
  GET  /oauth/authorize  -- resource owner (bearer-authenticated) approves a
                            client; 302 to redirect_uri with ?code=&state=
  POST /oauth/token      -- exchange a code or refresh token for tokens
  POST /oauth/revoke     -- revoke an access or refresh token; always 200

Error bodies on these routes follow RFC 6749 section 5.2 ({"error": "<code>"}
with a flat string) rather than the {"error": {code, message}} envelope the
/api routes use, because OAuth client libraries parse that shape.

/oauth/token and /oauth/revoke accept application/json or
application/x-www-form-urlencoded bodies. The handlers are async only to read
the body; the flow controller does blocking SQLite work, so it is called via
run_in_threadpool.

Security:
  Cache-Control: no-store on every token response (RFC 6749 section 5.1).
  /oauth/revoke answers 200 for any input so it cannot be used to probe
  whether a token is valid.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from api.models import GrantTypeEnum, RevokeRequest, TokenRequest, TokenResponse
from auth.dependencies import get_current_identity
from auth.errors import AuthError
from auth.flow import OAuthFlowController, oauth_error
from auth.models import Identity, TokenGrant, parse_scopes, scopes_to_str

logger = logging.getLogger("hitime.api.oauth")

# Auth policy:
# - GET  /oauth/authorize: requires auth (the resource owner's bearer token)
# - POST /oauth/token:     public -- the code / refresh token is the credential
# - POST /oauth/revoke:    public -- possession of the token is enough to revoke it
router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _redirect(redirect_uri: str, **params: Optional[str]) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(f"{redirect_uri}{separator}{query}", status_code=302)


def _oauth_error_response(error: str, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error}, headers=_NO_STORE)


async def _read_body(request: Request) -> dict:
    """Return the request body as a dict, from JSON or form encoding.

    A body that is neither, JSON that is not an object, or a form Starlette
    cannot parse yields {} and the caller reports invalid_request.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    try:
        form = await request.form()
    except (MultiPartException, StarletteHTTPException) as exc:
        logger.info("Unreadable form body on %s: %s", request.url.path, exc)
        return {}
    return dict(form)


def _grant_response(grant: TokenGrant) -> JSONResponse:
    body = TokenResponse(
        access_token=grant.access_token,
        token_type=grant.token_type,
        expires_in=grant.expires_in,
        refresh_token=grant.refresh_token,
        scope=scopes_to_str(grant.scopes),
    )
    return JSONResponse(status_code=200, content=body.model_dump(exclude_none=True), headers=_NO_STORE)


# ---------------------------------------------------------------------------
# GET /oauth/authorize
# ---------------------------------------------------------------------------


@router.get("/oauth/authorize", status_code=302)
def authorize(
    request: Request,
    response_type: str = "",
    client_id: str = "",
    redirect_uri: str = "",
    scope: str = "",
    state: Optional[str] = None,
    identity: Identity = Depends(get_current_identity),
) -> Response:
    """Issue an authorization code for the authenticated resource owner.

    Every outcome that has somewhere to go is a redirect to redirect_uri. A
    request with no redirect_uri at all gets a 400 with invalid_request.
    """
    if not redirect_uri:
        return _oauth_error_response("invalid_request")
    if response_type != "code" or not client_id:
        return _redirect(redirect_uri, error="invalid_request", state=state)

    flow: OAuthFlowController = request.app.state.flow
    try:
        code = flow.authorize(identity.subject, client_id, redirect_uri, parse_scopes(scope))
    except AuthError as exc:
        logger.info("Authorization refused: %s (client=%s)", exc.code, client_id)
        return _redirect(redirect_uri, error=oauth_error(exc), state=state)
    return _redirect(redirect_uri, code=code, state=state)


# ---------------------------------------------------------------------------
# POST /oauth/token
# ---------------------------------------------------------------------------


@router.post("/oauth/token", response_model=TokenResponse)
async def token(request: Request) -> JSONResponse:
    """Token endpoint for the authorization_code and refresh_token grants."""
    try:
        body = TokenRequest.model_validate(await _read_body(request))
    except ValidationError:
        return _oauth_error_response("invalid_request")

    flow: OAuthFlowController = request.app.state.flow

    if body.grant_type == GrantTypeEnum.authorization_code.value:
        if not (body.code and body.client_id and body.redirect_uri):
            return _oauth_error_response("invalid_request")
        call = (flow.token, body.code, body.client_id, body.redirect_uri)
    elif body.grant_type == GrantTypeEnum.refresh_token.value:
        if not body.refresh_token:
            return _oauth_error_response("invalid_request")
        call = (flow.refresh, body.refresh_token, body.client_id or None)
    elif not body.grant_type:
        return _oauth_error_response("invalid_request")
    else:
        return _oauth_error_response("unsupported_grant_type")

    try:
        grant = await run_in_threadpool(*call)
    except AuthError as exc:
        return _oauth_error_response(oauth_error(exc))
    return _grant_response(grant)


# ---------------------------------------------------------------------------
# POST /oauth/revoke
# ---------------------------------------------------------------------------


@router.post("/oauth/revoke", status_code=200)
async def revoke(request: Request) -> Response:
    """Revoke a token (RFC 7009). The answer is 200 with an empty body, always."""
    try:
        body = RevokeRequest.model_validate(await _read_body(request))
    except ValidationError:
        return Response(status_code=200)

    flow: OAuthFlowController = request.app.state.flow
    try:
        await run_in_threadpool(flow.revoke, body.token, body.token_type_hint)
    except SQLAlchemyError:
        # Always 200, storage failures included.
        logger.exception("Token revocation failed")
    return Response(status_code=200)
