"""
Domain errors.

Each error carries the HTTP status it maps to and a message that is safe to
show to the user. main.py renders them as {"detail": message, ...extra}.
"""
from typing import Any, Dict, Optional


class StoreError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, **self.extra}


# ---------------------- Validation ----------------------

class ValidationFailed(StoreError):
    status_code = 422
    default_message = "Please fix the highlighted fields"

    def __init__(self, errors: Dict[str, str], message: Optional[str] = None):
        self.errors = dict(errors)
        super().__init__(message, errors=self.errors)


# ---------------------- Auth ----------------------

class AuthenticationError(StoreError):
    status_code = 401
    default_message = "Not authorized"


class PermissionDenied(StoreError):
    status_code = 403
    default_message = "Not authorized to perform this action"


class OTPVerificationFailed(StoreError):
    status_code = 400
    default_message = "Invalid or expired OTP. Please request a new one."


class TooManyAttempts(StoreError):
    status_code = 429
    default_message = "Too many attempts. Please try again later."


# ---------------------- Repository ----------------------

class NotFound(StoreError):
    status_code = 404
    default_message = "Not found"


class InvalidIdentifier(StoreError):
    status_code = 400
    default_message = "Invalid ID"


class DuplicateEmail(StoreError):
    status_code = 400
    default_message = "Email already exists"


class InputTooLarge(StoreError):
    status_code = 400
    default_message = "Input data exceeds maximum length"


class RepositoryError(StoreError):
    status_code = 500
    default_message = "Database operation failed"


class InvalidStatusTransition(StoreError):
    status_code = 400
    default_message = "Order status change not allowed"


# ---------------------- Payments ----------------------

class PaymentError(StoreError):
    status_code = 400
    default_message = "Payment failed"


class PaymentInitializationError(PaymentError):
    status_code = 503
    default_message = "Payment system not configured properly. Please contact support."


class PaymentReferenceMissing(PaymentError):
    status_code = 400
    default_message = "Payment reference not found"


class PaymentVerificationFailed(PaymentError):
    status_code = 402
    default_message = "Payment could not be confirmed. Your order was not placed."


class PaymentProviderError(PaymentError):
    status_code = 502
    default_message = "Payment provider request failed"


class PaymentReferenceReused(PaymentError):
    status_code = 409
    default_message = "This payment has already been applied to another order."


class OrderRecordingFailed(PaymentError):
    """Payment confirmed, order write failed: needs manual reconciliation."""
    status_code = 500

    def __init__(self, reference: str, message: Optional[str] = None):
        self.reference = reference
        super().__init__(
            message or (
                "Your payment was received but we could not record your order. "
                f"Please contact support with payment reference {reference}."
            ),
            reference=reference,
            severity="critical",
        )
