"""
Exceptions raised by the external-provider adapters and the order engine.

These are not HTTP errors; routes and services translate them into
domain errors (domain/errors.py) where a client response is needed.
"""


class PaymentProviderError(Exception):
    """Raised when the payment processor API call fails."""
    pass


class WebhookVerificationError(Exception):
    """Raised when a webhook signature or payload cannot be trusted."""
    pass


class IdentityProviderError(Exception):
    """Raised when the OAuth code exchange or profile fetch fails."""
    pass


class EmailDeliveryError(Exception):
    """Raised when an email cannot be handed to the mail server."""
    pass


class InventoryInvariantError(Exception):
    """Raised when committing a reservation would drive stock negative."""
    pass
