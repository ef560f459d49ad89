"""
Shared FastAPI dependencies.

External clients (payment processor, identity provider, notification
dispatcher) are created once in main.py and hung on app.state; routers get
them through these dependencies so tests can swap in fakes with
app.dependency_overrides.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from fastapi import Query, Request

from services.identity_provider import IdentityProvider
from services.notification_service import NotificationDispatcher
from services.payment_provider import PaymentProvider
from middleware.auth import require_admin, require_session, require_user  # noqa: F401


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


def get_payment_provider(request: Request) -> PaymentProvider:
    return request.app.state.payment_provider


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


def get_notification_dispatcher(request: Request) -> Optional[NotificationDispatcher]:
    return getattr(request.app.state, "notification_dispatcher", None)
