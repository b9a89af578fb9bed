import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from pulsecrm.core.api_docs import error_responses
from pulsecrm.core.deps import get_db
from pulsecrm.core.id_utils import generate_short_token
from pulsecrm.core.observability import log_event, logger
from pulsecrm.core.rate_limit import LoginRateLimiter
from pulsecrm.core.security import (
    REFRESH_TOKEN_TYPE,
    TokenValidationError,
    decode_token,
    hash_password,
    issue_token_pair,
    verify_password,
)
from pulsecrm.core.security_current import get_current_user
from pulsecrm.models.user import User
from pulsecrm.schemas.auth import LoginIn, RefreshIn, RegisterIn, TokenOut, UserProfileOut

router = APIRouter(prefix="/auth", tags=["auth"])
TOKEN_PAIR_RESPONSE = {
    200: {
        "description": "Access and refresh tokens",
        "content": {
            "application/json": {
                "example": {
                    "access_token": "access-token",
                    "refresh_token": "refresh-token",
                    "token_type": "bearer",
                }
            }
        },
    }
}

login_rate_limiter = LoginRateLimiter.from_settings()


def _slugify_username(seed: str) -> str:
    cleaned = re.sub(r"[^a-z0-9_]+", "_", seed.strip().lower())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    if not cleaned:
        return "user"
    return cleaned[:30]


def _username_exists(db: Session, username: str) -> bool:
    found = db.execute(
        select(User.id).where(func.lower(User.username) == username.lower())
    ).scalar_one_or_none()
    return found is not None


def _generate_unique_username(db: Session, preferred_username: str | None, fallback_seed: str) -> str:
    base = _slugify_username(preferred_username or fallback_seed)
    candidate = base
    while _username_exists(db, candidate):
        candidate = f"{base[:22]}_{generate_short_token(6)}"
    return candidate


def _client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _enforce_rate_limit(identifier: str, client_ip: str) -> str:
    key = LoginRateLimiter.key(identifier, client_ip)
    retry_after = login_rate_limiter.retry_after(key)
    if retry_after > 0:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed attempts. Try again later.",
            headers={"Retry-After": str(retry_after)},
        )
    return key


def _authenticate_user(db: Session, identifier: str, password: str) -> User:
    normalized_identifier = identifier.strip().lower()
    user = db.execute(
        select(User).where(
            or_(
                func.lower(User.email) == normalized_identifier,
                func.lower(User.username) == normalized_identifier,
            )
        )
    ).scalar_one_or_none()

    if not user or not verify_password(password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="User is inactive")
    return user


def _token_out(user_id: str) -> TokenOut:
    pair = issue_token_pair(user_id)
    return TokenOut(access_token=pair.access_token, refresh_token=pair.refresh_token)


def _login(db: Session, request: Request, identifier: str, password: str) -> TokenOut:
    key = _enforce_rate_limit(identifier, _client_ip(request))
    try:
        user = _authenticate_user(db, identifier, password)
    except HTTPException as exc:
        if exc.status_code == 401 and login_rate_limiter.record_failure(key):
            log_event(logger, "login_locked", level=logging.WARNING, key=key)
        raise

    login_rate_limiter.record_success(key)
    return _token_out(user.id)


@router.post(
    "/register",
    response_model=TokenOut,
    summary="Register a user",
    description="Creates a user account and returns access + refresh tokens.",
    responses={
        **TOKEN_PAIR_RESPONSE,
        **error_responses(
            400, 422, 500,
            path="/auth/register",
            messages={400: "Email already registered"},
        ),
    },
)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    normalized_email = payload.email.lower()
    exists = db.execute(
        select(User).where(func.lower(User.email) == normalized_email)
    ).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=400, detail="Email already registered")

    username = _generate_unique_username(
        db,
        preferred_username=payload.username,
        fallback_seed=normalized_email.split("@")[0],
    )
    user = User(
        email=normalized_email,
        username=username,
        full_name=payload.full_name,
        hashed_password=hash_password(payload.password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return _token_out(user.id)


@router.post(
    "/login",
    response_model=TokenOut,
    summary="Login with JSON",
    description="Authenticate with email/username and password.",
    responses={
        **TOKEN_PAIR_RESPONSE,
        **error_responses(401, 403, 422, 429, 500, path="/auth/login"),
    },
)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_db)):
    return _login(db, request, payload.identifier, payload.password)


@router.post(
    "/token",
    response_model=TokenOut,
    summary="OAuth2 password token (Swagger Authorize)",
    description=(
        "Form-data login endpoint used by Swagger Authorize. "
        "Use your email or username in the `username` field."
    ),
    responses={
        **TOKEN_PAIR_RESPONSE,
        **error_responses(401, 403, 422, 429, 500, path="/auth/token"),
    },
)
def login_for_swagger(
    request: Request,
    db: Session = Depends(get_db),
    form_data: OAuth2PasswordRequestForm = Depends(),
):
    return _login(db, request, form_data.username, form_data.password)


@router.post(
    "/refresh",
    response_model=TokenOut,
    summary="Refresh access token",
    description="Exchanges a valid refresh token for a new access + refresh token pair.",
    responses={
        **TOKEN_PAIR_RESPONSE,
        **error_responses(
            401, 422, 500,
            path="/auth/refresh",
            messages={401: "Invalid refresh token"},
        ),
    },
)
def refresh_tokens(payload: RefreshIn, db: Session = Depends(get_db)):
    try:
        claims = decode_token(payload.refresh_token, expected_type=REFRESH_TOKEN_TYPE)
    except TokenValidationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    user = db.execute(select(User).where(User.id == claims["sub"])).scalar_one_or_none()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    return _token_out(user.id)


@router.get(
    "/me",
    response_model=UserProfileOut,
    summary="Get current user profile",
    responses=error_responses(401, 403, 500, path="/auth/me"),
)
def get_my_profile(user: User = Depends(get_current_user)):
    return UserProfileOut(
        id=user.id,
        email=user.email,
        username=user.username,
        full_name=user.full_name,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )
