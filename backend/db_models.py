"""
SQLAlchemy ORM models for the Farm Shop API.

Tables:
    users            - Google-authenticated customers and admins
    user_sessions    - server-side record of issued JWTs (revocable)
    oauth_states     - one-time CSRF states for the Google redirect
    products         - catalog with two-phase inventory counters
    orders           - single-product orders driven by Stripe PaymentIntents
    payment_events   - processed Stripe webhook deliveries (audit + dedup)
    notifications    - email outbox drained by the notification dispatcher
"""
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, ForeignKey,
    UniqueConstraint, Index, CheckConstraint,
)
from sqlalchemy.orm import relationship

from database import Base
from domain.enums import NotificationStatus, OrderStatus, UserRole


class User(Base):
    """Customers and admins; identity is delegated to Google."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    google_sub = Column(String(255), unique=True, nullable=False, index=True)
    email = Column(String(320), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CUSTOMER.value)
    stripe_customer_id = Column(String(255), unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login_at = Column(DateTime, nullable=True)

    # Relationships
    orders = relationship("Order", back_populates="user", lazy="select")


class UserSession(Base):
    """
    One row per issued access token.

    The JWT carries the jti; a token is only accepted while its row exists,
    is not revoked and has not expired.
    """
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    jti = Column(String(64), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class OAuthState(Base):
    """
    Short-lived state parameter for the Google OAuth redirect.

    Flow:
      1) /auth/google/login stores a random state and redirects to Google.
      2) Google redirects back with ?state=...&code=...
      3) /auth/google/callback consumes the state exactly once.
    """
    __tablename__ = "oauth_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    state = Column(String(128), unique=True, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


# ════════════════════════════════════════════════════════════════════
# Catalog & Orders
# ════════════════════════════════════════════════════════════════════

class Product(Base):
    """
    Catalog entry.

    inventory_quantity - units physically on hand (committed stock)
    reserved_quantity  - units held by pending orders awaiting payment
    available to sell  = inventory_quantity - reserved_quantity
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    unit = Column(String(50), nullable=True)  # "dozen", "lb", "bunch"
    price_cents = Column(Integer, nullable=False)
    inventory_quantity = Column(Integer, nullable=False, default=0)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    max_per_order = Column(Integer, nullable=False, default=10)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("price_cents > 0", name="ck_products_price_positive"),
        CheckConstraint("inventory_quantity >= 0", name="ck_products_inventory_nonnegative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_products_reserved_nonnegative"),
        CheckConstraint("reserved_quantity <= inventory_quantity", name="ck_products_reserved_le_inventory"),
        CheckConstraint("max_per_order >= 1", name="ck_products_max_per_order"),
    )

    @property
    def available_quantity(self) -> int:
        return max(0, (self.inventory_quantity or 0) - (self.reserved_quantity or 0))


class Order(Base):
    """
    Single-product order.

    Lifecycle: pending → completed | failed (terminal, set exactly once by
    a compare-and-set on status).
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)  # snapshot at order time
    total_cents = Column(Integer, nullable=False)
    currency = Column(String(10), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    # Idempotency key for PaymentIntent creation; SQLite can hand a rolled-back id out again
    checkout_token = Column(String(32), unique=True, nullable=False, default=lambda: uuid.uuid4().hex)
    failure_reason = Column(String(500), nullable=True)

    # Customer contact
    customer_name = Column(String(200), nullable=False)
    customer_email = Column(String(320), nullable=False)
    customer_phone = Column(String(40), nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    # Relationships
    user = relationship("User", back_populates="orders")
    product = relationship("Product", lazy="select")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_orders_quantity_positive"),
        CheckConstraint("total_cents = unit_price_cents * quantity", name="ck_orders_total"),
        # For order history: filter by user_id, order by created_at DESC
        Index("ix_orders_user_created", "user_id", "created_at"),
        # For the reservation sweeper: pending orders by age
        Index("ix_orders_status_created", "status", "created_at"),
    )


class PaymentEvent(Base):
    """
    Idempotency table for Stripe webhook deliveries.

    Stripe retries deliveries and may send the same event more than once;
    each event id is processed at most once.
    """
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payment_intent_id = Column(String(255), nullable=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    outcome = Column(String(50), nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow)


class Notification(Base):
    """
    Email outbox.

    Rows are inserted in the same transaction as the order transition and
    sent later by the NotificationDispatcher, with exponential backoff.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(String(50), nullable=False)  # "order_confirmation"
    recipient = Column(String(320), nullable=False)
    subject = Column(String(300), nullable=False)
    body = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=NotificationStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_error = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("order_id", "kind", name="uq_notification_order_kind"),
        # Dispatcher scan: due pending rows
        Index("ix_notifications_status_due", "status", "next_attempt_at"),
    )
