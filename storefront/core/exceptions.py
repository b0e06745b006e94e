from decimal import Decimal


class StorefrontError(Exception):
    """Base exception for the storefront payment core."""

    pass


class GatewayAuthRequired(StorefrontError):
    """Raised when the service credential for the payment gateway is missing or expired."""

    def __init__(self, reauth_url: str, message: str = "Payment gateway authorization required"):
        self.reauth_url = reauth_url
        super().__init__(message)


class GatewayError(StorefrontError):
    """Raised on non-2xx, malformed, or timed out gateway responses."""

    def __init__(self, message: str = "Payment gateway error", retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class InvalidSignature(StorefrontError):
    """Raised when a webhook signature is missing or does not match the body."""

    pass


class MalformedPayload(StorefrontError):
    """Raised when a webhook body is not a usable JSON event."""

    pass


class OrderNotFound(StorefrontError):
    """Raised when no order is eligible for reconciliation."""

    pass


class Unauthorized(StorefrontError):
    """Raised when the caller does not own the order."""

    pass


class AlreadySettled(StorefrontError):
    """Signals that the order was settled earlier. Callers treat this as success."""

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} is already settled")


class ProductNotFound(StorefrontError):
    """Raised when a cart line references an unknown product."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class OutOfStock(StorefrontError):
    """Raised when live stock cannot cover a cart line."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Insufficient stock for product {product_id}")


class ShippingMismatch(StorefrontError):
    """Raised when the declared shipping charge differs from the recomputed one."""

    def __init__(self, declared: Decimal, expected: Decimal):
        self.declared = declared
        self.expected = expected
        super().__init__(f"Shipping charge mismatch: declared {declared}, expected {expected}")


class PaymentVerificationFailed(StorefrontError):
    """Raised when the gateway reports no final outcome for a client verification."""

    pass


class PaymentNotFinal(StorefrontError):
    """Raised when a webhook carries a gateway status with no final outcome."""

    pass
