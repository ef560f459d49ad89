"""
Liveness probe: database reachability plus background worker state.
"""
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def _worker_state(request: Request) -> dict:
    dispatcher = getattr(request.app.state, "notification_dispatcher", None)
    sweeper = getattr(request.app.state, "reservation_sweeper", None)
    return {
        "notification_dispatcher": bool(dispatcher and dispatcher.is_running),
        "reservation_sweeper": bool(sweeper and sweeper.is_running),
        "reservations_expired": sweeper.expired_total if sweeper else 0,
    }


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request, db: AsyncSession = Depends(get_db)):
    workers = _worker_state(request)
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check: database unreachable ({e})")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database_connected": False,
                "workers": workers,
            },
        )

    return {
        "status": "healthy",
        "database_connected": True,
        "environment": settings.environment,
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
