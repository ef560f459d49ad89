"""
Notification service - order confirmation emails via a DB outbox.

enqueue_order_confirmation() runs inside the payment webhook transaction,
so an email is queued if and only if the order actually completed, and the
UNIQUE(order_id, kind) constraint keeps replays from queueing twice.

NotificationDispatcher is a background asyncio task (started in the app
lifespan) that drains the outbox. The webhook only kick()s it, so it never
waits on SMTP. Failed sends are retried with exponential backoff up to
notification_max_attempts, then marked failed.

Single-process assumption: rows are claimed with a pending → sending
compare-and-set; rows stuck in "sending" after a crash are reset on start().
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db_models import Notification, Order, Product
from domain.constants import NOTIFICATION_ORDER_CONFIRMATION
from domain.enums import NotificationStatus
from services.email_sender import EmailSender

logger = logging.getLogger(__name__)


def format_money(cents: int, currency: str) -> str:
    if currency.lower() == "usd":
        return f"${cents / 100:.2f}"
    return f"{cents / 100:.2f} {currency.upper()}"


def render_order_confirmation(order: Order, product: Product) -> tuple[str, str]:
    subject = f"Order #{order.id} confirmed"
    unit = f" ({product.unit})" if product.unit else ""
    lines = [
        f"Hi {order.customer_name},",
        "",
        "Thanks for your order! Your payment was received.",
        "",
        f"Order #{order.id}",
        f"  {order.quantity} x {product.name}{unit} @ {format_money(order.unit_price_cents, order.currency)}",
        f"  Total: {format_money(order.total_cents, order.currency)}",
    ]
    if order.notes:
        lines += ["", f"Notes: {order.notes}"]
    lines += ["", "We'll be in touch about pickup.", ""]
    return subject, "\n".join(lines)


async def enqueue_order_confirmation(
    db: AsyncSession,
    *,
    order: Order,
    product: Product,
) -> Optional[Notification]:
    """Queue the confirmation email for a completed order (no-op if already queued)."""
    existing = (
        await db.execute(
            select(Notification).where(
                Notification.order_id == order.id,
                Notification.kind == NOTIFICATION_ORDER_CONFIRMATION,
            )
        )
    ).scalar_one_or_none()
    if existing:
        return None

    subject, body = render_order_confirmation(order, product)
    notification = Notification(
        order_id=order.id,
        kind=NOTIFICATION_ORDER_CONFIRMATION,
        recipient=order.customer_email,
        subject=subject,
        body=body,
        status=NotificationStatus.PENDING.value,
        attempts=0,
        next_attempt_at=datetime.utcnow(),
    )
    db.add(notification)
    await db.flush()
    return notification


def backoff_delay(attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Delay before the next try after `attempts` failures: base * 2^(attempts-1), capped."""
    if attempts < 1:
        return 0.0
    return min(max_seconds, base_seconds * (2 ** (attempts - 1)))


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        sender: EmailSender,
        *,
        max_attempts: int = 5,
        base_delay_seconds: float = 2.0,
        max_delay_seconds: float = 300.0,
        poll_seconds: float = 15.0,
        batch_size: int = 20,
    ):
        self._session_factory = session_factory
        self._sender = sender
        self._max_attempts = max_attempts
        self._base_delay = base_delay_seconds
        self._max_delay = max_delay_seconds
        self._poll_seconds = poll_seconds
        self._batch_size = batch_size

        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._wake = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        await self.recover_stuck()
        self._running = True
        self._task = asyncio.create_task(self._run(), name="notification-dispatcher")
        logger.info(
            f"Notification dispatcher started (poll {self._poll_seconds}s, max {self._max_attempts} attempts)"
        )

    async def stop(self) -> None:
        self._running = False
        self._wake.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Notification dispatcher stopped")

    def kick(self) -> None:
        """Wake the loop now instead of at the next poll."""
        self._wake.set()

    async def recover_stuck(self) -> int:
        async with self._session_factory() as db:
            res = await db.execute(
                update(Notification)
                .where(Notification.status == NotificationStatus.SENDING.value)
                .values(status=NotificationStatus.PENDING.value)
            )
            await db.commit()
            if res.rowcount:
                logger.warning(f"Reset {res.rowcount} notification(s) stuck in 'sending'")
            return res.rowcount

    async def _run(self) -> None:
        while self._running:
            try:
                await self.dispatch_due()
            except Exception as e:
                logger.error(f"Notification dispatch cycle failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def dispatch_due(self, now: Optional[datetime] = None) -> int:
        """Send every due pending notification once. Returns how many were sent."""
        async with self._lock:
            now = now or datetime.utcnow()
            async with self._session_factory() as db:
                res = await db.execute(
                    select(Notification.id)
                    .where(
                        Notification.status == NotificationStatus.PENDING.value,
                        Notification.next_attempt_at <= now,
                    )
                    .order_by(Notification.next_attempt_at.asc())
                    .limit(self._batch_size)
                )
                due_ids = list(res.scalars().all())

            sent = 0
            for notification_id in due_ids:
                if await self._deliver(notification_id, now):
                    sent += 1
            return sent

    async def _deliver(self, notification_id: int, now: datetime) -> bool:
        async with self._session_factory() as db:
            claim = await db.execute(
                update(Notification)
                .where(
                    Notification.id == notification_id,
                    Notification.status == NotificationStatus.PENDING.value,
                )
                .values(status=NotificationStatus.SENDING.value)
            )
            if claim.rowcount != 1:
                await db.rollback()
                return False
            await db.commit()

            notification = await db.get(Notification, notification_id)
            await db.refresh(notification)

            try:
                await self._sender.send(
                    recipient=notification.recipient,
                    subject=notification.subject,
                    body=notification.body,
                )
            except Exception as e:
                notification.attempts += 1
                notification.last_error = str(e)[:1000]
                if notification.attempts >= self._max_attempts:
                    notification.status = NotificationStatus.FAILED.value
                    logger.error(
                        f"Email for order {notification.order_id} failed permanently "
                        f"after {notification.attempts} attempts: {e}"
                    )
                else:
                    delay = backoff_delay(notification.attempts, self._base_delay, self._max_delay)
                    notification.status = NotificationStatus.PENDING.value
                    notification.next_attempt_at = now + timedelta(seconds=delay)
                    logger.warning(
                        f"Email for order {notification.order_id} failed "
                        f"(attempt {notification.attempts}/{self._max_attempts}), retry in {delay:.0f}s: {e}"
                    )
                await db.commit()
                return False

            notification.attempts += 1
            notification.status = NotificationStatus.SENT.value
            notification.sent_at = datetime.utcnow()
            notification.last_error = None
            await db.commit()
            logger.info(f"  📧 Order {notification.order_id} confirmation sent to {notification.recipient}")
            return True
