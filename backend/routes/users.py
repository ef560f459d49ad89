"""
Current-user endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import Pagination, pagination_params, require_user
from domain.responses import paginated_response, success_response
from routes.auth import user_to_dict
from services import order_service

router = APIRouter(prefix="/api/user", tags=["user"])


@router.get("/me")
async def get_me(user: User = Depends(require_user)):
    return success_response(data=user_to_dict(user))


@router.get("/orders")
async def list_my_orders(
    page: Pagination = Depends(pagination_params),
    user: User = Depends(require_user),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await order_service.list_user_orders(
        db, user_id=user.id, limit=page["limit"], offset=page["offset"]
    )
    return paginated_response(
        [order_service.order_to_dict(o) for o in orders],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )
