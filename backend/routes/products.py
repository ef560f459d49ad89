"""
Public catalog endpoints.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from deps import Pagination, pagination_params
from domain.errors import NotFoundError
from domain.responses import paginated_response, success_response
from services import catalog_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/products", tags=["products"])


@router.get("")
async def list_products(
    page: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db),
):
    products = await catalog_service.list_products(db, limit=page["limit"], offset=page["offset"])
    total = await catalog_service.count_products(db)
    return paginated_response(
        [catalog_service.product_to_dict(p) for p in products],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )


@router.get("/{product_id}")
async def get_product(
    product_id: int,
    db: AsyncSession = Depends(get_db),
):
    product = await catalog_service.get_product(db, product_id=product_id, active_only=True)
    if not product:
        raise NotFoundError("Product", str(product_id))
    return success_response(data=catalog_service.product_to_dict(product))
