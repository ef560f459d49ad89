"""
Domain errors raised by services and routers.

Each error is an HTTPException carrying a stable machine-readable `code`;
the global handler in main.py renders it into the error envelope.
"""
from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base class for all domain-specific errors."""
    code = "domain_error"

    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: dict | None = None):
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.details = details or {}


class NotFoundError(DomainError):
    """Product or order missing (404)."""
    code = "not_found"

    def __init__(self, resource_type: str, identifier: str, details: dict | None = None):
        super().__init__(
            f"{resource_type} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            details=details,
        )


class ValidationError(DomainError):
    """Business-rule validation failure, e.g. quantity over the per-order cap (400)."""
    code = "validation_error"

    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        if field:
            details = {**(details or {}), "field": field}
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class PermissionDeniedError(DomainError):
    """Authenticated but not allowed to see this resource (403)."""
    code = "permission_denied"

    def __init__(self, message: str = "Permission denied", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class ConflictError(DomainError):
    """State conflict: duplicate slug, terminal order, stock adjustment refused (409)."""
    code = "conflict"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


class OutOfStockError(ConflictError):
    """Requested quantity exceeds available-to-sell inventory (409)."""
    code = "out_of_stock"

    def __init__(self, product_name: str, requested: int, available: int):
        super().__init__(
            f"{product_name} is out of stock",
            details={"requested": requested, "available": available},
        )


class UpstreamServiceError(DomainError):
    """Payment processor or identity provider failure (502)."""
    code = "upstream_unavailable"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_502_BAD_GATEWAY, details=details)
