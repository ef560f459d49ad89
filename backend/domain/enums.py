"""
Domain enums (minimal set used for clarity in services).
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class PaymentEventKind(str, Enum):
    SUCCEEDED = "payment_succeeded"
    FAILED = "payment_failed"
    CANCELED = "payment_canceled"
    IGNORED = "ignored"
