"""Exceptions raised by the checkout pipeline.

Every error carries a stable machine-readable `code`; the HTTP layer maps the
exception type to a status code.
"""


class CheckoutError(Exception):
    """Base exception for all checkout errors."""

    code = "CHECKOUT_ERROR"

    def __init__(self, message: str, details=None):
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidRequest(CheckoutError):
    """Raised when a request body does not have the expected shape."""

    code = "INVALID_REQUEST"


# --- Pricing ---


class PricingError(CheckoutError):
    """Base class for errors that stop an order from being priced."""

    code = "PRICING_ERROR"


class ProductNotFound(PricingError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InvalidQuantity(PricingError):
    code = "INVALID_QUANTITY"

    def __init__(self, product_id: str, quantity=None):
        self.product_id = product_id
        self.quantity = quantity
        super().__init__(f"Invalid quantity for product {product_id}: must be between 1 and 100")


class CouponError(PricingError):
    """Base class for coupon eligibility failures."""

    code = "COUPON_ERROR"


class CouponInvalid(CouponError):
    code = "COUPON_INVALID"

    def __init__(self, code: str):
        self.coupon_code = code
        super().__init__("Invalid or inactive coupon code")


class CouponExpired(CouponError):
    code = "COUPON_EXPIRED"

    def __init__(self, code: str):
        self.coupon_code = code
        super().__init__("This coupon has expired")


class CouponExhausted(CouponError):
    code = "COUPON_EXHAUSTED"

    def __init__(self, code: str):
        self.coupon_code = code
        super().__init__("This coupon has reached its usage limit")


class CouponMinimumNotMet(CouponError):
    code = "COUPON_MINIMUM_NOT_MET"

    def __init__(self, code: str, required: int):
        self.coupon_code = code
        self.required = required
        super().__init__(
            f"Minimum order amount of ₹{required} required",
            details={"minOrderAmount": required},
        )


class OrderTotalTooLow(PricingError):
    code = "ORDER_TOTAL_TOO_LOW"

    def __init__(self, final_total: int):
        self.final_total = final_total
        super().__init__(f"Order total {final_total} is below the minimum chargeable amount of ₹1")


# --- Security ---


class AuthenticationRequired(CheckoutError):
    code = "AUTHENTICATION_REQUIRED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class OriginRejected(CheckoutError):
    code = "CSRF_VALIDATION_FAILED"

    def __init__(self, message: str = "Cross-site request blocked"):
        super().__init__(message)


class RateLimitExceeded(CheckoutError):
    code = "RATE_LIMITED"

    def __init__(self, limit: int, retry_after: int):
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded. Please try again in {retry_after} seconds.",
            details={"limit": limit, "remaining": 0, "retryAfter": retry_after},
        )


# --- Payment gateway ---


class PaymentGatewayUnavailable(CheckoutError):
    """Gateway credentials are missing or the gateway cannot be reached."""

    code = "PAYMENT_GATEWAY_UNAVAILABLE"


class PaymentGatewayError(CheckoutError):
    """The gateway answered but refused the request."""

    code = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, message: str, status_code=None):
        self.status_code = status_code
        super().__init__(message)


class PaymentVerificationFailed(CheckoutError):
    code = "PAYMENT_VERIFICATION_FAILED"

    def __init__(self, message: str = "Payment verification failed"):
        super().__init__(message)


class WebhookSignatureInvalid(CheckoutError):
    code = "WEBHOOK_SIGNATURE_INVALID"

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message)


# --- Orders & storage ---


class CheckoutSessionNotFound(CheckoutError):
    code = "CHECKOUT_SESSION_NOT_FOUND"

    def __init__(self, gateway_order_id: str):
        self.gateway_order_id = gateway_order_id
        super().__init__(f"No checkout found for payment order {gateway_order_id}")


class OrderNotFound(CheckoutError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class StoreUnavailable(CheckoutError):
    """Transient document store failure; callers retry with the same key."""

    code = "STORE_UNAVAILABLE"


class DocumentExists(Exception):
    """Raised by `DocumentStore.create` when the document id is already taken."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {collection}/{doc_id} already exists")


def format_validation_errors(errors) -> list:
    """
    Turns pydantic error dicts into "path: message" strings.

    Example:
        ["cartItems.0.id: Field required", "couponCode: String should have at most 50 characters"]
    """
    formatted = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        prefix = ".".join(loc) + ": " if loc else ""
        formatted.append(f"{prefix}{error.get('msg', 'Invalid value')}")
    return formatted
