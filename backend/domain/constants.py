"""
Domain constants used across services/routers.
"""

# Notification kinds (one row per order per kind)
NOTIFICATION_ORDER_CONFIRMATION = "order_confirmation"

# Failure reasons recorded on orders
FAILURE_REASON_EXPIRED = "expired"
FAILURE_REASON_CANCELED = "payment_canceled"
FAILURE_REASON_AMOUNT_MISMATCH = "amount_mismatch"

# Idempotency key prefix for PaymentIntent creation
PAYMENT_INTENT_IDEMPOTENCY_PREFIX = "order-"
