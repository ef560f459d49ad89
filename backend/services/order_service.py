"""
Order service - checkout, payment reconciliation and reservation expiry.

Inventory accounting is two-phase:
    create_order          reserved  += q   (only if inventory - reserved >= q)
    payment succeeded     inventory -= q, reserved -= q
    payment failed/expiry reserved  -= q

Every step is a single conditional UPDATE, and the order's own
pending → completed/failed transition is a compare-and-set on status, so
concurrent or replayed webhooks cannot double-apply a transition.

Transactions are owned by the caller (routes / background tasks commit);
functions here only flush.
"""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Order, PaymentEvent, Product, User
from domain.constants import (
    FAILURE_REASON_AMOUNT_MISMATCH,
    FAILURE_REASON_CANCELED,
    FAILURE_REASON_EXPIRED,
    PAYMENT_INTENT_IDEMPOTENCY_PREFIX,
)
from domain.enums import OrderStatus, PaymentEventKind, UserRole
from domain.errors import (
    ConflictError,
    NotFoundError,
    OutOfStockError,
    PermissionDeniedError,
    UpstreamServiceError,
    ValidationError,
)
from exceptions import InventoryInvariantError, PaymentProviderError
from services import notification_service
from services.payment_provider import PaymentEvent as ProcessorEvent
from services.payment_provider import PaymentIntentHandle, PaymentProvider

logger = logging.getLogger(__name__)


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "user_id": order.user_id,
        "product_id": order.product_id,
        "quantity": order.quantity,
        "unit_price_cents": order.unit_price_cents,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "status": order.status,
        "payment_intent_id": order.payment_intent_id,
        "failure_reason": order.failure_reason,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "notes": order.notes,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "completed_at": order.completed_at.isoformat() if order.completed_at else None,
        "failed_at": order.failed_at.isoformat() if order.failed_at else None,
    }


# ════════════════════════════════════════════════════════════════════
# Checkout
# ════════════════════════════════════════════════════════════════════


async def _ensure_customer(db: AsyncSession, payments: PaymentProvider, user: User) -> str:
    """Link the user to a payment-processor customer, creating one on first checkout."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer_id = await payments.create_customer(
        email=user.email,
        name=user.name,
        metadata={"user_id": str(user.id)},
    )
    user.stripe_customer_id = customer_id
    await db.flush()
    return customer_id


async def _create_intent_for_order(
    db: AsyncSession,
    payments: PaymentProvider,
    *,
    order: Order,
    user: User,
) -> PaymentIntentHandle:
    try:
        customer_id = await _ensure_customer(db, payments, user)
        handle = await payments.create_payment_intent(
            amount=order.total_cents,
            currency=order.currency,
            customer_id=customer_id,
            metadata={
                "order_id": order.id,
                "user_id": user.id,
                "product_id": order.product_id,
            },
            idempotency_key=f"{PAYMENT_INTENT_IDEMPOTENCY_PREFIX}{order.checkout_token}",
        )
    except PaymentProviderError as e:
        logger.error(f"Payment intent for order {order.id} failed: {e}")
        raise UpstreamServiceError("Payment processor unavailable. Please try again.")

    order.payment_intent_id = handle.id
    await db.flush()
    return handle


async def create_order(
    db: AsyncSession,
    payments: PaymentProvider,
    *,
    user: User,
    product_id: int,
    quantity: int,
    customer_name: str,
    customer_email: str | None = None,
    customer_phone: str | None = None,
    notes: str | None = None,
) -> tuple[Order, PaymentIntentHandle]:
    """
    Reserve stock, create a pending order and open a PaymentIntent for it.

    The charged amount is always computed from the stored product price.
    On any failure the caller must roll back so the reservation is released
    together with the order row.
    """
    product = (
        await db.execute(select(Product).where(Product.id == product_id))
    ).scalar_one_or_none()
    if not product or not product.active:
        raise NotFoundError("Product", str(product_id))

    limit = min(product.max_per_order, settings.max_quantity_per_order)
    if quantity < 1:
        raise ValidationError("Quantity must be positive", field="quantity")
    if quantity > limit:
        raise ValidationError(f"Max {limit} per order for {product.slug}", field="quantity")

    reserve = await db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.active == True,  # noqa: E712
            Product.inventory_quantity - Product.reserved_quantity >= quantity,
        )
        .values(reserved_quantity=Product.reserved_quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    if reserve.rowcount != 1:
        await db.refresh(product)
        logger.info(
            f"Out of stock: {product.slug} requested={quantity} available={product.available_quantity}"
        )
        raise OutOfStockError(product.name, quantity, product.available_quantity)

    unit_price = product.price_cents
    order = Order(
        user_id=user.id,
        product_id=product.id,
        quantity=quantity,
        unit_price_cents=unit_price,
        total_cents=unit_price * quantity,
        currency=settings.currency,
        status=OrderStatus.PENDING.value,
        checkout_token=uuid.uuid4().hex,
        customer_name=customer_name,
        customer_email=customer_email or user.email,
        customer_phone=customer_phone,
        notes=notes,
        created_at=datetime.utcnow(),
    )
    db.add(order)
    await db.flush()

    handle = await _create_intent_for_order(db, payments, order=order, user=user)

    logger.info(
        f"  🧺 Order {order.id} created: {quantity} x {product.slug} = {order.total_cents}c "
        f"(user {user.id}, intent {handle.id})"
    )
    return order, handle


async def ensure_payment_intent(
    db: AsyncSession,
    payments: PaymentProvider,
    *,
    order_id: int,
    user: User,
) -> tuple[Order, PaymentIntentHandle]:
    """Return the client handle for a pending order, creating the intent if missing."""
    order = await get_order_for_user(db, order_id=order_id, user=user)
    if order.status != OrderStatus.PENDING.value:
        raise ConflictError(f"Order {order.id} is already {order.status}")

    if order.payment_intent_id:
        try:
            handle = await payments.retrieve_payment_intent(order.payment_intent_id)
        except PaymentProviderError as e:
            logger.error(f"Retrieving intent {order.payment_intent_id} failed: {e}")
            raise UpstreamServiceError("Payment processor unavailable. Please try again.")
        return order, handle

    owner = user if user.id == order.user_id else await db.get(User, order.user_id)
    handle = await _create_intent_for_order(db, payments, order=order, user=owner)
    return order, handle


# ════════════════════════════════════════════════════════════════════
# Payment reconciliation
# ════════════════════════════════════════════════════════════════════


async def _order_by_intent(db: AsyncSession, payment_intent_id: str | None) -> Order | None:
    if not payment_intent_id:
        return None
    res = await db.execute(select(Order).where(Order.payment_intent_id == payment_intent_id))
    return res.scalar_one_or_none()


async def on_payment_succeeded(db: AsyncSession, event: ProcessorEvent) -> dict:
    """
    pending → completed, committing the reservation into on-hand stock.

    Idempotent: only the delivery that wins the status compare-and-set
    touches inventory or enqueues the confirmation email.
    """
    order = await _order_by_intent(db, event.payment_intent_id)
    if not order:
        logger.warning(f"Payment succeeded for unknown intent {event.payment_intent_id} (event {event.event_id})")
        return {"status": "ignored", "reason": "unknown_payment_intent"}

    if order.status != OrderStatus.PENDING.value:
        logger.info(f"Order {order.id} already {order.status}; ignoring {event.event_type}")
        return {"status": "ignored", "reason": "already_terminal", "order_id": order.id}

    if event.amount < order.total_cents or (event.currency and event.currency != order.currency):
        # Succeeded intents cannot be cancelled by the sweeper; release the stock here
        if not await _fail_pending_order(db, order, FAILURE_REASON_AMOUNT_MISMATCH):
            return {"status": "ignored", "reason": "already_terminal", "order_id": order.id}
        logger.error(
            f"Amount mismatch for order {order.id}: expected {order.total_cents} {order.currency}, "
            f"got {event.amount} {event.currency} (intent {event.payment_intent_id}); "
            f"order failed, payment needs a manual refund"
        )
        return {"status": "failed", "reason": FAILURE_REASON_AMOUNT_MISMATCH, "order_id": order.id}

    now = datetime.utcnow()
    cas = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
        .values(status=OrderStatus.COMPLETED.value, completed_at=now)
        .execution_options(synchronize_session=False)
    )
    if cas.rowcount != 1:
        return {"status": "ignored", "reason": "already_terminal", "order_id": order.id}

    commit = await db.execute(
        update(Product)
        .where(
            Product.id == order.product_id,
            Product.inventory_quantity >= order.quantity,
            Product.reserved_quantity >= order.quantity,
        )
        .values(
            inventory_quantity=Product.inventory_quantity - order.quantity,
            reserved_quantity=Product.reserved_quantity - order.quantity,
        )
        .execution_options(synchronize_session=False)
    )
    if commit.rowcount != 1:
        logger.error(
            f"Inventory invariant violated completing order {order.id} "
            f"(product {order.product_id}, qty {order.quantity})"
        )
        raise InventoryInvariantError(f"reservation missing for order {order.id}")

    await db.refresh(order)
    product = await db.get(Product, order.product_id)
    await db.refresh(product)
    await notification_service.enqueue_order_confirmation(db, order=order, product=product)

    logger.info(f"  ✅ Order {order.id} completed (intent {event.payment_intent_id})")
    return {"status": "completed", "order_id": order.id}


async def _fail_pending_order(db: AsyncSession, order: Order, reason: str) -> bool:
    """pending → failed and release the reservation. False if already terminal."""
    cas = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == OrderStatus.PENDING.value)
        .values(
            status=OrderStatus.FAILED.value,
            failure_reason=reason[:500],
            failed_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if cas.rowcount != 1:
        return False

    release = await db.execute(
        update(Product)
        .where(Product.id == order.product_id, Product.reserved_quantity >= order.quantity)
        .values(reserved_quantity=Product.reserved_quantity - order.quantity)
        .execution_options(synchronize_session=False)
    )
    if release.rowcount != 1:
        logger.error(f"Reservation missing while failing order {order.id}")
        raise InventoryInvariantError(f"reservation missing for order {order.id}")

    await db.refresh(order)
    return True


async def on_payment_failed(db: AsyncSession, event: ProcessorEvent) -> dict:
    """pending → failed; the reserved units become available again."""
    order = await _order_by_intent(db, event.payment_intent_id)
    if not order:
        logger.warning(f"Payment failure for unknown intent {event.payment_intent_id} (event {event.event_id})")
        return {"status": "ignored", "reason": "unknown_payment_intent"}

    reason = event.failure_message or FAILURE_REASON_CANCELED
    if not await _fail_pending_order(db, order, reason):
        logger.info(f"Order {order.id} no longer pending; ignoring {event.event_type}")
        return {"status": "ignored", "reason": "already_terminal", "order_id": order.id}

    logger.info(f"  ❌ Order {order.id} failed: {reason}")
    return {"status": "failed", "order_id": order.id}


async def handle_payment_event(db: AsyncSession, event: ProcessorEvent) -> dict:
    """
    Apply a verified payment notification.

    Each processor event id is recorded in payment_events; redelivery of an
    already-recorded event returns {"status": "duplicate"} without effects.
    """
    if event.event_id:
        existing = (
            await db.execute(select(PaymentEvent).where(PaymentEvent.event_id == event.event_id))
        ).scalar_one_or_none()
        if existing:
            logger.info(f"Duplicate webhook delivery {event.event_id} ({existing.outcome})")
            return {"status": "duplicate", "outcome": existing.outcome, "order_id": existing.order_id}

        record = PaymentEvent(
            event_id=event.event_id,
            event_type=event.event_type,
            payment_intent_id=event.payment_intent_id,
            outcome="processing",
        )
        db.add(record)
        try:
            await db.flush()
        except IntegrityError:
            # Concurrent delivery of the same event recorded it first
            await db.rollback()
            return {"status": "duplicate", "outcome": "processing", "order_id": None}
    else:
        record = None

    if event.kind is PaymentEventKind.SUCCEEDED:
        result = await on_payment_succeeded(db, event)
    elif event.kind in (PaymentEventKind.FAILED, PaymentEventKind.CANCELED):
        result = await on_payment_failed(db, event)
    else:
        logger.debug(f"Ignoring webhook event type {event.event_type}")
        result = {"status": "ignored", "reason": "unhandled_event_type"}

    if record is not None:
        record.order_id = result.get("order_id")
        record.outcome = result.get("reason") or result["status"]
        await db.flush()

    return result


# ════════════════════════════════════════════════════════════════════
# Reservation expiry
# ════════════════════════════════════════════════════════════════════


async def expire_stale_orders(
    db: AsyncSession,
    payments: PaymentProvider,
    *,
    now: datetime | None = None,
    ttl_minutes: int | None = None,
    batch_size: int = 100,
) -> int:
    """
    Fail pending orders older than the reservation TTL and release their stock.

    The processor-side intent is cancelled first; if the processor refuses
    (the customer may already have paid) the order is left for the webhook.
    """
    now = now or datetime.utcnow()
    ttl = ttl_minutes if ttl_minutes is not None else settings.reservation_ttl_minutes
    cutoff = now - timedelta(minutes=ttl)

    res = await db.execute(
        select(Order)
        .where(Order.status == OrderStatus.PENDING.value, Order.created_at < cutoff)
        .order_by(Order.created_at.asc())
        .limit(batch_size)
    )
    stale = res.scalars().all()

    expired = 0
    for order in stale:
        if order.payment_intent_id:
            try:
                cancelled = await payments.cancel_payment_intent(order.payment_intent_id)
            except PaymentProviderError as e:
                logger.warning(f"Could not cancel intent for stale order {order.id}: {e}")
                continue
            if not cancelled:
                continue
        if await _fail_pending_order(db, order, FAILURE_REASON_EXPIRED):
            expired += 1
            logger.info(f"  ⌛ Order {order.id} expired; {order.quantity} unit(s) released")

    return expired


# ════════════════════════════════════════════════════════════════════
# Queries
# ════════════════════════════════════════════════════════════════════


async def get_order_for_user(db: AsyncSession, *, order_id: int, user: User) -> Order:
    order = (await db.execute(select(Order).where(Order.id == order_id))).scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", str(order_id))
    if order.user_id != user.id and user.role != UserRole.ADMIN.value:
        raise PermissionDeniedError("You do not have access to this order.")
    return order


async def list_user_orders(
    db: AsyncSession,
    *,
    user_id: int,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    res = await db.execute(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .offset(offset)
    )
    total = (
        await db.execute(select(func.count(Order.id)).where(Order.user_id == user_id))
    ).scalar_one()
    return res.scalars().all(), total


async def list_orders(
    db: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    q = select(Order)
    count_q = select(func.count(Order.id))
    if status:
        q = q.where(Order.status == status)
        count_q = count_q.where(Order.status == status)
    res = await db.execute(q.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).offset(offset))
    total = (await db.execute(count_q)).scalar_one()
    return res.scalars().all(), total
