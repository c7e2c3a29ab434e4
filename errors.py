"""Exceptions raised by the shop services."""
from typing import Optional


class ShopError(Exception):
    """Base exception for all shop errors."""

    def __init__(self, message: str = "Internal server error"):
        self.message = message
        super().__init__(message)


class InvalidRequest(ShopError):
    """Raised when input is missing or malformed, or a precondition fails."""

    pass


class InsufficientStock(InvalidRequest):
    """Raised when a product has fewer units than an order line asks for."""

    def __init__(self, product_id: str, requested: int):
        self.product_id = product_id
        self.requested = requested
        super().__init__(f"Insufficient stock for product {product_id}")


class WebhookSignatureError(InvalidRequest):
    """Raised when a webhook payload cannot be verified."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook Error: {reason}")


class Unauthorized(ShopError):
    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class Forbidden(ShopError):
    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class NotFound(ShopError):
    """Raised when an entity is absent or not visible to the caller."""

    def __init__(self, entity: str):
        self.entity = entity
        super().__init__(f"{entity} not found")


class Conflict(ShopError):
    pass


class ExternalServiceError(ShopError):
    """Raised when the payment provider fails.

    `detail` holds the provider's message for the logs; clients only see
    `message`.
    """

    def __init__(self, message: str = "Payment provider error", detail: Optional[str] = None):
        self.detail = detail
        super().__init__(message)


class PaymentProviderUnavailable(ExternalServiceError):
    """Raised on provider timeouts and connection failures. Safe to retry."""

    def __init__(self, detail: Optional[str] = None):
        super().__init__("Payment provider unavailable, please retry", detail)


class WebhookProcessingError(ShopError):
    """Raised when a verified webhook event could not be applied."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__("Webhook processing failed")


class InternalError(ShopError):
    pass


class TransactionConflict(ShopError):
    """Raised when a transaction keeps colliding with concurrent writers. Safe to retry."""

    def __init__(self):
        super().__init__("Request conflicted with a concurrent update, please retry")
