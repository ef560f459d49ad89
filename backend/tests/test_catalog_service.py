"""
Tests for catalog listing and admin stock maintenance.
"""
import pytest

from domain.errors import ConflictError, NotFoundError
from services import catalog_service


class TestCatalogQueries:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_is_sorted_by_name_and_hides_inactive(self, db_session):
        await catalog_service.create_product(db_session, slug="zucchini", name="Zucchini", price_cents=200)
        await catalog_service.create_product(db_session, slug="apples", name="Apples", price_cents=300)
        await catalog_service.create_product(db_session, slug="old-jam", name="Jam", price_cents=500, active=False)
        await db_session.commit()

        products = await catalog_service.list_products(db_session)

        assert [p.slug for p in products] == ["apples", "zucchini"]
        assert await catalog_service.count_products(db_session) == 2
        assert await catalog_service.count_products(db_session, active_only=False) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_product_dict_reports_availability(self, db_session, sample_product):
        sample_product.reserved_quantity = 5
        await db_session.commit()

        data = catalog_service.product_to_dict(sample_product)

        assert data["available_quantity"] == 0
        assert data["in_stock"] is False
        assert "reserved_quantity" not in data


class TestCatalogMaintenance:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_slug(self, db_session, sample_product):
        with pytest.raises(ConflictError):
            await catalog_service.create_product(db_session, slug="eggs-dozen", name="Eggs", price_cents=100)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_keeps_stock(self, db_session, sample_product):
        product = await catalog_service.update_product(
            db_session, product_id=sample_product.id, name="Pasture Eggs", price_cents=650
        )
        await db_session.commit()

        assert product.name == "Pasture Eggs"
        assert product.price_cents == 650
        assert product.inventory_quantity == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_missing_product(self, db_session):
        with pytest.raises(NotFoundError):
            await catalog_service.update_product(db_session, product_id=404, name="Ghost")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restock_adds_and_removes(self, db_session, sample_product):
        product = await catalog_service.restock_product(db_session, product_id=sample_product.id, delta=7)
        assert product.inventory_quantity == 12

        product = await catalog_service.restock_product(db_session, product_id=sample_product.id, delta=-12)
        assert product.inventory_quantity == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restock_cannot_go_negative(self, db_session, sample_product):
        with pytest.raises(ConflictError) as exc_info:
            await catalog_service.restock_product(db_session, product_id=sample_product.id, delta=-6)
        assert exc_info.value.details["inventory_quantity"] == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_restock_cannot_drop_below_reserved(self, db_session, sample_product):
        sample_product.reserved_quantity = 3
        await db_session.commit()

        with pytest.raises(ConflictError):
            await catalog_service.restock_product(db_session, product_id=sample_product.id, delta=-3)
