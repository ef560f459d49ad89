"""
Order endpoints - checkout and order lookup for signed-in customers.

POST /api/orders never reads a price from the request body; the total is
computed server-side from the stored product price.
"""

import logging

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import get_payment_provider, require_user
from domain.errors import DomainError
from domain.responses import success_response
from middleware.rate_limit import rate_limit
from services import order_service
from services.payment_provider import PaymentProvider
from utils.validators import normalize_phone, validate_email_address

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])


class OrderCreateRequest(BaseModel):
    product_id: int = Field(..., gt=0, alias="productId")
    quantity: int = Field(1, ge=1, le=1000)
    customer_name: str = Field(..., alias="customerName", min_length=1, max_length=200)
    customer_email: str | None = Field(default=None, alias="customerEmail", max_length=320)
    customer_phone: str | None = Field(default=None, alias="customerPhone", max_length=40)
    notes: str | None = Field(default=None, max_length=1000)

    model_config = {"populate_by_name": True}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(
    request: OrderCreateRequest,
    user: User = Depends(require_user),
    payments: PaymentProvider = Depends(get_payment_provider),
    db: AsyncSession = Depends(get_db),
    _rate=Depends(rate_limit(max_requests=10, window_seconds=60)),
):
    email = validate_email_address(request.customer_email) if request.customer_email else None
    phone = normalize_phone(request.customer_phone)

    try:
        order, handle = await order_service.create_order(
            db,
            payments,
            user=user,
            product_id=request.product_id,
            quantity=request.quantity,
            customer_name=request.customer_name.strip(),
            customer_email=email,
            customer_phone=phone,
            notes=request.notes,
        )
    except DomainError:
        # Releases the reservation together with any half-created order
        await db.rollback()
        raise
    await db.commit()
    await db.refresh(order)

    return success_response(
        data={
            "order": order_service.order_to_dict(order),
            "payment": {
                "paymentIntentId": handle.id,
                "clientSecret": handle.client_secret,
            },
        }
    )


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.get_order_for_user(db, order_id=order_id, user=user)
    return success_response(data=order_service.order_to_dict(order))
