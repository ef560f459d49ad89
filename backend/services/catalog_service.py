"""
Catalog service - product listing, lookup and admin maintenance.

Inventory is never assigned directly here. Order-driven changes live in
order_service; admin restocks go through a conditional UPDATE so stock can
never drop below zero or below what pending orders have reserved.
"""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Product
from domain.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def product_to_dict(p: Product) -> dict:
    return {
        "id": p.id,
        "slug": p.slug,
        "name": p.name,
        "description": p.description,
        "unit": p.unit,
        "price_cents": p.price_cents,
        "max_per_order": p.max_per_order,
        "available_quantity": p.available_quantity,
        "in_stock": p.available_quantity > 0,
        "active": p.active,
    }


async def list_products(
    db: AsyncSession,
    *,
    active_only: bool = True,
    limit: int = 50,
    offset: int = 0,
) -> list[Product]:
    # Stock counters change through bulk UPDATEs; always read current values
    q = select(Product).execution_options(populate_existing=True)
    if active_only:
        q = q.where(Product.active == True)  # noqa: E712
    res = await db.execute(q.order_by(Product.name.asc(), Product.id.asc()).limit(limit).offset(offset))
    return res.scalars().all()


async def count_products(db: AsyncSession, *, active_only: bool = True) -> int:
    q = select(func.count(Product.id))
    if active_only:
        q = q.where(Product.active == True)  # noqa: E712
    return (await db.execute(q)).scalar_one()


async def get_product(db: AsyncSession, *, product_id: int, active_only: bool = False) -> Product | None:
    q = select(Product).where(Product.id == product_id).execution_options(populate_existing=True)
    if active_only:
        q = q.where(Product.active == True)  # noqa: E712
    return (await db.execute(q)).scalar_one_or_none()


async def get_product_by_slug(db: AsyncSession, *, slug: str) -> Product | None:
    return (await db.execute(select(Product).where(Product.slug == slug))).scalar_one_or_none()


async def create_product(
    db: AsyncSession,
    *,
    slug: str,
    name: str,
    price_cents: int,
    inventory_quantity: int = 0,
    description: str | None = None,
    unit: str | None = None,
    max_per_order: int = 10,
    active: bool = True,
) -> Product:
    if await get_product_by_slug(db, slug=slug):
        raise ConflictError(f"Product slug already exists: {slug}")

    product = Product(
        slug=slug,
        name=name,
        description=description,
        unit=unit,
        price_cents=price_cents,
        inventory_quantity=inventory_quantity,
        reserved_quantity=0,
        max_per_order=max_per_order,
        active=active,
    )
    db.add(product)
    await db.flush()
    logger.info(f"Product created: {slug} ({price_cents}c, stock {inventory_quantity})")
    return product


async def update_product(
    db: AsyncSession,
    *,
    product_id: int,
    name: str | None = None,
    description: str | None = None,
    unit: str | None = None,
    price_cents: int | None = None,
    max_per_order: int | None = None,
    active: bool | None = None,
) -> Product:
    """
    Update a product's descriptive fields. Only provided fields are updated.

    Price changes affect new orders only; existing orders keep their
    unit_price_cents snapshot.
    """
    product = await get_product(db, product_id=product_id)
    if not product:
        raise NotFoundError("Product", str(product_id))

    if name is not None:
        product.name = name
    if description is not None:
        product.description = description
    if unit is not None:
        product.unit = unit
    if price_cents is not None:
        product.price_cents = price_cents
    if max_per_order is not None:
        product.max_per_order = max_per_order
    if active is not None:
        product.active = active

    product.updated_at = datetime.utcnow()
    await db.flush()
    return product


async def restock_product(db: AsyncSession, *, product_id: int, delta: int) -> Product:
    """
    Adjust on-hand stock by delta (negative for shrinkage/spoilage).

    Rejected with 409 when the result would be negative or would leave less
    stock than pending orders have reserved.
    """
    product = await get_product(db, product_id=product_id)
    if not product:
        raise NotFoundError("Product", str(product_id))

    res = await db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.inventory_quantity + delta >= Product.reserved_quantity,
            Product.inventory_quantity + delta >= 0,
        )
        .values(
            inventory_quantity=Product.inventory_quantity + delta,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await db.refresh(product)
        raise ConflictError(
            f"Cannot adjust stock of {product.slug} by {delta}",
            details={
                "inventory_quantity": product.inventory_quantity,
                "reserved_quantity": product.reserved_quantity,
            },
        )

    await db.refresh(product)
    logger.info(f"Product {product.slug} restocked by {delta} → {product.inventory_quantity}")
    return product
