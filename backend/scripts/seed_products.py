"""
Seed the catalog with a starter set of farm products.

Existing slugs are left untouched, so the script can be re-run safely.

Run from the backend/ directory:
    python scripts/seed_products.py
"""
import asyncio
import os
import sys

# Add backend/ to path so we can import config
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session, init_db
from services import catalog_service

STARTER_PRODUCTS = [
    {"slug": "eggs-dozen", "name": "Pasture-Raised Eggs", "unit": "dozen", "price_cents": 650, "inventory_quantity": 40},
    {"slug": "raw-honey", "name": "Raw Wildflower Honey", "unit": "16 oz jar", "price_cents": 1400, "inventory_quantity": 24},
    {"slug": "salad-greens", "name": "Mixed Salad Greens", "unit": "half pound", "price_cents": 500, "inventory_quantity": 30},
    {"slug": "heirloom-tomatoes", "name": "Heirloom Tomatoes", "unit": "lb", "price_cents": 450, "inventory_quantity": 50,
     "max_per_order": 15},
]


async def seed() -> None:
    os.makedirs("data", exist_ok=True)
    await init_db()

    async with async_session() as db:
        created = 0
        for item in STARTER_PRODUCTS:
            if await catalog_service.get_product_by_slug(db, slug=item["slug"]):
                print(f"  ⏭️  {item['slug']} already exists")
                continue
            await catalog_service.create_product(db, **item)
            created += 1
            print(f"  ✅ {item['slug']} ({item['price_cents']}c, stock {item['inventory_quantity']})")
        await db.commit()

    print(f"\n🌱 Seeded {created} product(s)")


if __name__ == "__main__":
    asyncio.run(seed())
