"""
api/routes/v1/auth.py -- Account and first-party login REST endpoints.

Routes:
  POST /api/register   -- create an account; 201 {id, email}
  POST /api/login      -- email/password login; bearer access token
  GET  /api/profile    -- current user's account (scope "profile")

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
  Wrong email and wrong password produce the same bad_credentials error.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, login_limit
from api.models import LoginRequest, LoginResponse, ProfileResponse, RegisterRequest, RegisterResponse
from auth.dependencies import require_scope
from auth.flow import OAuthFlowController
from auth.models import Identity, User, scopes_to_str
from auth.store import UserStore
from auth.tokens import authenticate_user, hash_password
from core.config import get_settings

# Auth policy:
# - POST /api/register: public -- account creation
# - POST /api/login:    public -- login endpoint must be unauthenticated
# - GET  /api/profile:  requires auth + scope "profile"
router = APIRouter()


@router.post("/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create a local account with the configured default scopes."""
    user_store: UserStore = request.app.state.user_store
    new_user = User(
        email=body.email,
        scopes=frozenset(get_settings().default_user_scopes),
        hashed_password=hash_password(body.password),
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc
    return RegisterResponse(id=user_id, email=body.email.lower())


@limiter.limit(login_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a bearer access token.

    The token carries every scope the user holds and has no refresh token.
    Third-party clients go through /oauth/authorize instead.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    flow: OAuthFlowController = request.app.state.flow
    grant = flow.issue_login_token(user)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=grant.access_token,
            token_type=grant.token_type,
            expires_in=grant.expires_in,
            scope=scopes_to_str(grant.scopes),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/profile", response_model=ProfileResponse)
def profile(request: Request, identity: Identity = Depends(require_scope("profile"))) -> ProfileResponse:
    """Return the account behind the bearer token."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_subject(identity.subject)
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return ProfileResponse(
        id=user.id,
        email=user.email,
        scope=scopes_to_str(identity.scopes),
        created_at=user.created_at or "",
    )
