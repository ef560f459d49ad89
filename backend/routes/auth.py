"""
Auth endpoints - Google sign-in and session management.

Flow:
  1) GET /auth/google/login     -> 302 to Google (state stored server-side)
  2) Google redirects back to   -> GET /auth/google/callback?code&state
  3) callback exchanges code, upserts the user, returns a JWT access token
  4) POST /auth/logout          -> revokes the session behind the token
"""

import logging
import secrets
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from db_models import OAuthState, User, UserSession
from deps import get_identity_provider
from domain.enums import UserRole
from domain.errors import ConflictError
from domain.responses import success_response
from exceptions import IdentityProviderError
from middleware.auth import create_session, require_session, revoke_session
from middleware.rate_limit import rate_limit
from services.identity_provider import IdentityProfile, IdentityProvider

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


class AuthUrlResponse(BaseModel):
    authorization_url: str = Field(..., alias="authorizationUrl")
    state: str


class LoginResponse(BaseModel):
    access_token: str = Field(..., alias="accessToken")
    token_type: str = Field("Bearer", alias="tokenType")
    expires_in_seconds: int = Field(..., alias="expiresInSeconds")
    user: dict


def user_to_dict(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
    }


async def _new_state(db: AsyncSession) -> str:
    state = secrets.token_urlsafe(32)
    db.add(
        OAuthState(
            state=state,
            expires_at=datetime.utcnow() + timedelta(minutes=settings.oauth_state_ttl_minutes),
        )
    )
    await db.commit()
    return state


async def _consume_state(db: AsyncSession, state: str) -> None:
    res = await db.execute(
        select(OAuthState).where(OAuthState.state == state, OAuthState.used_at.is_(None))
    )
    row = res.scalar_one_or_none()
    if not row:
        logger.warning("OAuth callback with unknown or reused state")
        raise HTTPException(status_code=400, detail="Invalid or already-used OAuth state.")
    now = datetime.utcnow()
    if row.expires_at <= now:
        raise HTTPException(status_code=400, detail="OAuth state expired. Please sign in again.")
    row.used_at = now


async def upsert_user(db: AsyncSession, profile: IdentityProfile) -> User:
    """Find the user by Google subject (falling back to email) or create one."""
    res = await db.execute(select(User).where(User.google_sub == profile.subject))
    user = res.scalar_one_or_none()
    if not user:
        res = await db.execute(select(User).where(User.email == profile.email))
        user = res.scalar_one_or_none()
        if user:
            user.google_sub = profile.subject

    if not user:
        user = User(
            google_sub=profile.subject,
            email=profile.email,
            name=profile.name,
            role=UserRole.CUSTOMER.value,
        )
        db.add(user)
        logger.info(f"New customer signed up: {profile.email}")
    else:
        if profile.email != user.email:
            taken = await db.execute(
                select(User.id).where(User.email == profile.email, User.id != user.id)
            )
            if taken.scalar_one_or_none() is not None:
                logger.warning(f"User {user.id} Google email change collides with another account")
                raise ConflictError("Another account already uses this email address.")
        user.email = profile.email
        if profile.name:
            user.name = profile.name

    if profile.email in settings.admin_emails_list:
        user.role = UserRole.ADMIN.value
    user.last_login_at = datetime.utcnow()
    await db.flush()
    return user


@router.get("/google/url", response_model=AuthUrlResponse)
async def google_auth_url(
    db: AsyncSession = Depends(get_db),
    identity: IdentityProvider = Depends(get_identity_provider),
    _rate=Depends(rate_limit(max_requests=20, window_seconds=60)),
):
    state = await _new_state(db)
    try:
        url = identity.authorization_url(state)
    except IdentityProviderError as e:
        logger.error(f"Cannot build Google authorization URL: {e}")
        raise HTTPException(status_code=503, detail="Google sign-in is not configured.")
    return AuthUrlResponse(authorizationUrl=url, state=state)


@router.get("/google/login")
async def google_login(
    db: AsyncSession = Depends(get_db),
    identity: IdentityProvider = Depends(get_identity_provider),
    _rate=Depends(rate_limit(max_requests=20, window_seconds=60)),
):
    state = await _new_state(db)
    try:
        url = identity.authorization_url(state)
    except IdentityProviderError as e:
        logger.error(f"Cannot build Google authorization URL: {e}")
        raise HTTPException(status_code=503, detail="Google sign-in is not configured.")
    return RedirectResponse(url, status_code=302)


@router.get("/google/callback")
async def google_callback(
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    identity: IdentityProvider = Depends(get_identity_provider),
    _rate=Depends(rate_limit(max_requests=30, window_seconds=60)),
):
    if error:
        raise HTTPException(status_code=400, detail=f"Google sign-in was not completed: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state.")

    await _consume_state(db, state)

    try:
        profile = await identity.exchange_code(code)
    except IdentityProviderError as e:
        await db.commit()  # keep the state burned
        logger.warning(f"Google code exchange failed: {e}")
        raise HTTPException(status_code=502, detail="Could not complete Google sign-in.")

    if not profile.email_verified:
        await db.commit()
        raise HTTPException(status_code=403, detail="Google account email is not verified.")

    try:
        user = await upsert_user(db, profile)
    except ConflictError:
        await db.commit()  # keep the state burned
        raise
    token, _session = await create_session(db, user)
    await db.commit()
    await db.refresh(user)

    logger.info(f"User {user.id} signed in ({user.role})")

    if settings.frontend_login_redirect:
        return RedirectResponse(f"{settings.frontend_login_redirect}#access_token={token}", status_code=302)

    return LoginResponse(
        accessToken=token,
        expiresInSeconds=settings.jwt_access_ttl_minutes * 60,
        user=user_to_dict(user),
    ).model_dump(by_alias=True)


@router.post("/logout")
async def logout(
    session: UserSession = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    await revoke_session(db, session)
    await db.commit()
    return success_response(data={"signed_out": True})
