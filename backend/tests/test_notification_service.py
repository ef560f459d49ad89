"""
Tests for the order-confirmation outbox and its dispatcher.
"""
import pytest
from datetime import datetime, timedelta
from sqlalchemy import select

from db_models import Notification, Order, Product, User
from domain.enums import NotificationStatus, OrderStatus
from services import notification_service
from services.notification_service import NotificationDispatcher, backoff_delay
from tests.conftest import FakeEmailSender


async def seed_completed_order(session_factory) -> int:
    """Insert a completed order and queue its confirmation; returns the order id."""
    async with session_factory() as db:
        user = User(google_sub="g-1", email="carol@farm.test", name="Carol")
        product = Product(slug="honey", name="Wildflower Honey", unit="jar", price_cents=1250, inventory_quantity=4)
        db.add_all([user, product])
        await db.flush()
        order = Order(
            user_id=user.id,
            product_id=product.id,
            quantity=2,
            unit_price_cents=1250,
            total_cents=2500,
            currency="usd",
            status=OrderStatus.COMPLETED.value,
            customer_name="Carol",
            customer_email="carol@farm.test",
            completed_at=datetime.utcnow(),
        )
        db.add(order)
        await db.flush()
        await notification_service.enqueue_order_confirmation(db, order=order, product=product)
        await db.commit()
        return order.id


async def load_notification(session_factory, order_id: int) -> Notification:
    async with session_factory() as db:
        return (
            await db.execute(select(Notification).where(Notification.order_id == order_id))
        ).scalar_one()


def make_dispatcher(session_factory, sender, **kwargs) -> NotificationDispatcher:
    params = {"max_attempts": 3, "base_delay_seconds": 2.0, "max_delay_seconds": 60.0, "poll_seconds": 1}
    params.update(kwargs)
    return NotificationDispatcher(session_factory, sender, **params)


class TestBackoff:

    @pytest.mark.unit
    def test_doubles_per_attempt(self):
        assert backoff_delay(1, 2.0, 300.0) == 2.0
        assert backoff_delay(2, 2.0, 300.0) == 4.0
        assert backoff_delay(4, 2.0, 300.0) == 16.0

    @pytest.mark.unit
    def test_capped_at_max(self):
        assert backoff_delay(20, 2.0, 300.0) == 300.0

    @pytest.mark.unit
    def test_no_delay_before_first_failure(self):
        assert backoff_delay(0, 2.0, 300.0) == 0.0


class TestRenderConfirmation:

    @pytest.mark.unit
    def test_body_lists_quantity_and_total(self):
        order = Order(id=7, quantity=2, unit_price_cents=1250, total_cents=2500, currency="usd",
                      customer_name="Carol", notes="Leave by the gate")
        product = Product(name="Wildflower Honey", unit="jar")

        subject, body = notification_service.render_order_confirmation(order, product)

        assert subject == "Order #7 confirmed"
        assert "2 x Wildflower Honey (jar) @ $12.50" in body
        assert "Total: $25.00" in body
        assert "Leave by the gate" in body

    @pytest.mark.unit
    def test_non_usd_amounts(self):
        assert notification_service.format_money(1999, "eur") == "19.99 EUR"


class TestEnqueue:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_enqueue_is_once_per_order(self, session_factory):
        order_id = await seed_completed_order(session_factory)

        async with session_factory() as db:
            order = await db.get(Order, order_id)
            product = await db.get(Product, order.product_id)
            again = await notification_service.enqueue_order_confirmation(db, order=order, product=product)
            await db.commit()

        assert again is None
        row = await load_notification(session_factory, order_id)
        assert row.status == NotificationStatus.PENDING.value
        assert row.recipient == "carol@farm.test"


class TestDispatcher:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sends_due_notification(self, session_factory):
        order_id = await seed_completed_order(session_factory)
        sender = FakeEmailSender()

        sent = await make_dispatcher(session_factory, sender).dispatch_due()

        assert sent == 1
        assert sender.sent[0]["recipient"] == "carol@farm.test"
        assert sender.sent[0]["subject"] == f"Order #{order_id} confirmed"
        row = await load_notification(session_factory, order_id)
        assert row.status == NotificationStatus.SENT.value
        assert row.attempts == 1
        assert row.sent_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sent_notification_is_not_resent(self, session_factory):
        await seed_completed_order(session_factory)
        sender = FakeEmailSender()
        dispatcher = make_dispatcher(session_factory, sender)

        await dispatcher.dispatch_due()
        assert await dispatcher.dispatch_due() == 0
        assert len(sender.sent) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self, session_factory):
        order_id = await seed_completed_order(session_factory)
        sender = FakeEmailSender(fail_times=1)
        dispatcher = make_dispatcher(session_factory, sender)
        now = datetime.utcnow()

        assert await dispatcher.dispatch_due(now=now) == 0

        row = await load_notification(session_factory, order_id)
        assert row.status == NotificationStatus.PENDING.value
        assert row.attempts == 1
        assert "refused" in row.last_error
        assert row.next_attempt_at == now + timedelta(seconds=2)

        # Not due yet
        assert await dispatcher.dispatch_due(now=now + timedelta(seconds=1)) == 0
        assert sender.calls == 1

        assert await dispatcher.dispatch_due(now=now + timedelta(seconds=3)) == 1
        row = await load_notification(session_factory, order_id)
        assert row.status == NotificationStatus.SENT.value
        assert row.attempts == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, session_factory):
        order_id = await seed_completed_order(session_factory)
        sender = FakeEmailSender(fail_times=10)
        dispatcher = make_dispatcher(session_factory, sender, max_attempts=3)
        now = datetime.utcnow()

        for step in range(5):
            await dispatcher.dispatch_due(now=now + timedelta(hours=step))

        assert sender.calls == 3
        row = await load_notification(session_factory, order_id)
        assert row.status == NotificationStatus.FAILED.value
        assert row.attempts == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recover_stuck_resets_sending_rows(self, session_factory):
        order_id = await seed_completed_order(session_factory)
        async with session_factory() as db:
            row = (await db.execute(select(Notification).where(Notification.order_id == order_id))).scalar_one()
            row.status = NotificationStatus.SENDING.value
            await db.commit()

        recovered = await make_dispatcher(session_factory, FakeEmailSender()).recover_stuck()

        assert recovered == 1
        row = await load_notification(session_factory, order_id)
        assert row.status == NotificationStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_start_kick_stop(self, session_factory):
        import asyncio

        order_id = await seed_completed_order(session_factory)
        sender = FakeEmailSender()
        dispatcher = make_dispatcher(session_factory, sender, poll_seconds=30)

        await dispatcher.start()
        try:
            for _ in range(50):
                if sender.sent:
                    break
                dispatcher.kick()
                await asyncio.sleep(0.05)
        finally:
            await dispatcher.stop()

        assert not dispatcher.is_running
        assert len(sender.sent) == 1
        row = await load_notification(session_factory, order_id)
        assert row.status == NotificationStatus.SENT.value
