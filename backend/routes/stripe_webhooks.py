"""
Stripe endpoints.

Endpoints:
    GET  /api/stripe/config                  - publishable key for Stripe.js
    POST /api/stripe/create-payment-intent   - client secret for a pending order
    POST /api/stripe/webhook                 - Stripe → us payment notifications

The webhook must answer quickly: it verifies the signature, applies the
order transition in one transaction and returns. Emails are only queued;
the notification dispatcher sends them in the background.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from db_models import User
from deps import get_notification_dispatcher, get_payment_provider, require_user
from domain.errors import DomainError
from domain.responses import success_response
from exceptions import WebhookVerificationError
from services import order_service
from services.notification_service import NotificationDispatcher
from services.payment_provider import PaymentProvider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["stripe"])


class CreatePaymentIntentRequest(BaseModel):
    order_id: int = Field(..., gt=0, alias="orderId")

    model_config = {"populate_by_name": True}


@router.get("/config")
async def get_stripe_config():
    return success_response(
        data={
            "publishableKey": settings.stripe_publishable_key,
            "currency": settings.currency,
        }
    )


@router.post("/create-payment-intent")
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    user: User = Depends(require_user),
    payments: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
):
    try:
        order, handle = await order_service.ensure_payment_intent(
            db, payments, order_id=request.order_id, user=user
        )
    except DomainError:
        await db.rollback()
        raise
    await db.commit()

    return success_response(
        data={
            "orderId": order.id,
            "paymentIntentId": handle.id,
            "clientSecret": handle.client_secret,
            "amount": order.total_cents,
            "currency": order.currency,
            "status": handle.status,
        }
    )


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    payments: PaymentProvider = Depends(get_payment_provider),
    dispatcher: Optional[NotificationDispatcher] = Depends(get_notification_dispatcher),
):
    """
    Stripe webhook callback.

    Unknown intents, terminal orders and redelivered events are
    acknowledged with 200 so Stripe stops retrying them.
    """
    body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = payments.construct_event(body, signature)
    except WebhookVerificationError as e:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"🚨 SECURITY: rejected Stripe webhook from {client_ip}: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    try:
        result = await order_service.handle_payment_event(db, event)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.error(f"Webhook {event.event_id} ({event.event_type}) failed; Stripe will retry")
        raise

    if result.get("status") == "completed" and dispatcher is not None:
        dispatcher.kick()

    return {"received": True, "result": result}
