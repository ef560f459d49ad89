"""
Session authentication helpers.

After Google sign-in (routes/auth.py) the API issues a short JWT access
token. Each token carries a `jti` backed by a row in user_sessions, so a
token stops working as soon as the session is revoked (logout) even though
its signature and exp are still valid.

Clients send:  Authorization: Bearer <jwt>
"""
import logging
import secrets
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from db_models import User, UserSession
from domain.enums import UserRole

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def _require_secret() -> str:
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    return settings.jwt_secret


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            _require_secret(),
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub", "jti"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Access token expired.")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid access token.")


def issue_access_token(*, user_id: int, role: str, jti: str, expires_at: datetime) -> str:
    now = _now_utc()
    payload = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "role": role,
        "jti": jti,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.replace(tzinfo=timezone.utc).timestamp()),
    }
    return jwt.encode(payload, _require_secret(), algorithm="HS256")


async def create_session(db: AsyncSession, user: User) -> tuple[str, UserSession]:
    """Persist a session row and return (access_token, session)."""
    # Naive UTC, consistent with the DB columns
    expires_at = datetime.utcnow().replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    session = UserSession(
        user_id=user.id,
        jti=secrets.token_hex(16),
        expires_at=expires_at,
    )
    db.add(session)
    await db.flush()
    token = issue_access_token(
        user_id=user.id,
        role=user.role,
        jti=session.jti,
        expires_at=expires_at,
    )
    return token, session


async def revoke_session(db: AsyncSession, session: UserSession) -> None:
    if session.revoked_at is None:
        session.revoked_at = datetime.utcnow()
        await db.flush()


async def require_session(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db),
) -> UserSession:
    token = _parse_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide Authorization: Bearer <token>.",
        )
    payload = decode_access_token(token)

    res = await db.execute(select(UserSession).where(UserSession.jti == payload["jti"]))
    session = res.scalar_one_or_none()
    if not session or str(session.user_id) != str(payload["sub"]):
        raise HTTPException(status_code=401, detail="Unknown session.")
    if session.revoked_at is not None:
        raise HTTPException(status_code=401, detail="Session has been signed out.")
    if session.expires_at <= datetime.utcnow():
        raise HTTPException(status_code=401, detail="Session expired.")
    return session


async def require_user(
    session: UserSession = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> User:
    user = await db.get(User, session.user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Account no longer exists.")
    return user


async def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != UserRole.ADMIN.value:
        logger.warning(f"Non-admin user {user.id} attempted an admin endpoint")
        raise HTTPException(status_code=403, detail="Admin role required for this endpoint.")
    return user
