"""
Admin endpoints - catalog maintenance and order overview.

Admins are users whose Google email is listed in ADMIN_EMAILS.
"""

import logging

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import Pagination, pagination_params, require_admin
from domain.enums import OrderStatus
from domain.responses import paginated_response, success_response
from services import catalog_service, order_service
from utils.validators import validate_slug

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["admin"])


class ProductCreateRequest(BaseModel):
    slug: str = Field(..., min_length=2, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    unit: str | None = Field(default=None, max_length=50)
    price_cents: int = Field(..., gt=0, alias="priceCents")
    inventory_quantity: int = Field(0, ge=0, alias="inventoryQuantity")
    max_per_order: int = Field(10, ge=1, le=1000, alias="maxPerOrder")
    active: bool = True

    model_config = {"populate_by_name": True}


class ProductUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)
    unit: str | None = Field(default=None, max_length=50)
    price_cents: int | None = Field(default=None, gt=0, alias="priceCents")
    max_per_order: int | None = Field(default=None, ge=1, le=1000, alias="maxPerOrder")
    active: bool | None = None

    model_config = {"populate_by_name": True}


class RestockRequest(BaseModel):
    delta: int = Field(..., description="Units to add (negative to remove)")


@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(
    request: ProductCreateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    validate_slug(request.slug)
    product = await catalog_service.create_product(
        db,
        slug=request.slug,
        name=request.name,
        description=request.description,
        unit=request.unit,
        price_cents=request.price_cents,
        inventory_quantity=request.inventory_quantity,
        max_per_order=request.max_per_order,
        active=request.active,
    )
    await db.commit()
    await db.refresh(product)
    logger.info(f"Admin {admin.id} created product {product.slug}")
    return success_response(data=catalog_service.product_to_dict(product))


@router.patch("/products/{product_id}")
async def update_product(
    product_id: int,
    request: ProductUpdateRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    product = await catalog_service.update_product(
        db,
        product_id=product_id,
        name=request.name,
        description=request.description,
        unit=request.unit,
        price_cents=request.price_cents,
        max_per_order=request.max_per_order,
        active=request.active,
    )
    await db.commit()
    await db.refresh(product)
    return success_response(data=catalog_service.product_to_dict(product))


@router.post("/products/{product_id}/restock")
async def restock_product(
    product_id: int,
    request: RestockRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    product = await catalog_service.restock_product(db, product_id=product_id, delta=request.delta)
    await db.commit()
    logger.info(f"Admin {admin.id} adjusted stock of {product.slug} by {request.delta}")
    return success_response(
        data={
            **catalog_service.product_to_dict(product),
            "inventory_quantity": product.inventory_quantity,
            "reserved_quantity": product.reserved_quantity,
        }
    )


@router.get("/orders")
async def list_orders(
    status_filter: OrderStatus | None = Query(None, alias="status"),
    page: Pagination = Depends(pagination_params),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await order_service.list_orders(
        db,
        status=status_filter.value if status_filter else None,
        limit=page["limit"],
        offset=page["offset"],
    )
    return paginated_response(
        [order_service.order_to_dict(o) for o in orders],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )
