"""Error taxonomy for checkout, confirmation, coupons and entitlements.

Every error carries a machine-readable :class:`ErrorCode`, a message that is
safe to show to the purchaser, and the HTTP status the JSON views answer with.
Server-side failures (5xx) keep their detail for the logs and expose only a
generic message.
"""

from enum import Enum

GENERIC_FAILURE_MESSAGE = "Something went wrong on our side. Please try again or contact support."


class ErrorCode(Enum):
    """Stable error codes returned in JSON error bodies."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
    INVALID_PAYER_EMAIL = "INVALID_PAYER_EMAIL"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_NOT_YET_VALID = "COUPON_NOT_YET_VALID"
    COUPON_REDEMPTION_LIMIT_REACHED = "COUPON_REDEMPTION_LIMIT_REACHED"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    PAYMENT_OWNERSHIP_MISMATCH = "PAYMENT_OWNERSHIP_MISMATCH"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    PAYMENT_NOT_COMPLETED = "PAYMENT_NOT_COMPLETED"
    PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
    SERVICE_UNREACHABLE = "SERVICE_UNREACHABLE"
    PAYMENT_PROCESSOR_UNREACHABLE = "PAYMENT_PROCESSOR_UNREACHABLE"


class StoreError(Exception):
    """Base class for all store errors.

    Attributes:
        code: The :class:`ErrorCode` identifying the failure.
        message: A purchaser-facing message.
        status_code: HTTP status used by the JSON views.
    """

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    status_code: int = 400
    default_message: str = "The request could not be processed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    @property
    def public_message(self) -> str:
        """Return the message that may be shown to the caller."""
        if self.status_code >= 500:
            return GENERIC_FAILURE_MESSAGE
        return self.message


class StoreValidationError(StoreError):
    """Raised when a request is malformed or missing required fields."""

    code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request."

    def __init__(self, message: str | None = None, *, fields: dict[str, list[str]] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or {}


class ProductUnavailable(StoreError):
    """Raised when a product id is unknown, inactive or has no price."""

    code = ErrorCode.PRODUCT_UNAVAILABLE
    default_message = "One or more products are not available for purchase."

    def __init__(self, product_ids: list[str] | None = None, message: str | None = None) -> None:
        self.product_ids = list(product_ids or [])
        if message is None and self.product_ids:
            message = f"Products not available for purchase: {', '.join(self.product_ids)}."
        super().__init__(message)


class InvalidPayerEmail(StoreError):
    """Raised when checkout has no usable payer email."""

    code = ErrorCode.INVALID_PAYER_EMAIL
    default_message = "A valid email address is required for checkout."


class CouponRejected(StoreError):
    """Base class for coupon-specific rejections (never a system fault)."""

    def __init__(self, coupon_code: str, message: str | None = None) -> None:
        self.coupon_code = coupon_code
        super().__init__(message)


class CouponNotFound(CouponRejected):
    code = ErrorCode.COUPON_NOT_FOUND
    default_message = "This coupon code is not valid."


class CouponExpired(CouponRejected):
    code = ErrorCode.COUPON_EXPIRED
    default_message = "This coupon code has expired."


class CouponNotYetValid(CouponRejected):
    code = ErrorCode.COUPON_NOT_YET_VALID
    default_message = "This coupon code is not valid yet."


class RedemptionLimitReached(CouponRejected):
    code = ErrorCode.COUPON_REDEMPTION_LIMIT_REACHED
    default_message = "This coupon code has reached its redemption limit."


class AuthenticationRequired(StoreError):
    code = ErrorCode.AUTHENTICATION_REQUIRED
    status_code = 401
    default_message = "Please sign in, or check out with an email address."


class PaymentOwnershipMismatch(StoreError):
    """Raised when a signed-in user confirms another user's payment."""

    code = ErrorCode.PAYMENT_OWNERSHIP_MISMATCH
    status_code = 403
    default_message = "This payment belongs to a different account."


class PaymentReferenceNotFound(StoreError):
    code = ErrorCode.PAYMENT_NOT_FOUND
    status_code = 404
    default_message = "No payment was found for this reference."


class PaymentNotCompleted(StoreError):
    """Raised when the processor does not report the payment as succeeded."""

    code = ErrorCode.PAYMENT_NOT_COMPLETED
    status_code = 402
    default_message = "Payment has not been completed."

    def __init__(self, status: str = "", message: str | None = None) -> None:
        self.status = status
        if message is None and status:
            message = f"Payment has not been completed (status: {status})."
        super().__init__(message)


class PersistenceFailure(StoreError):
    """Raised when entitlement could not be recorded after a successful payment.

    Money has moved but access has not been granted: this always needs
    operator attention.
    """

    code = ErrorCode.PERSISTENCE_FAILURE
    status_code = 500
    default_message = "Your payment succeeded but your purchase could not be recorded."

    def __init__(self, payment_reference: str, message: str | None = None) -> None:
        self.payment_reference = payment_reference
        super().__init__(message)


class ServiceUnreachable(StoreError):
    """Raised when a backing service (database, processor) cannot be reached."""

    code = ErrorCode.SERVICE_UNREACHABLE
    status_code = 503
    default_message = "A backing service is currently unreachable."


class PaymentProcessorUnreachable(ServiceUnreachable):
    code = ErrorCode.PAYMENT_PROCESSOR_UNREACHABLE
    default_message = "The payment processor is currently unreachable."
