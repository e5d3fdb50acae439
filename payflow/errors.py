"""Error taxonomy of the payment service.

Every error carries the HTTP status it maps to and a public message that is
safe to show the caller. Provider and persistence internals never reach the
public message; they go to the logs.
"""
from typing import List, Optional

GENERIC_FAILURE = "Payment could not be processed, please try again"


class PaymentServiceError(Exception):
    status_code = 400
    public_message = GENERIC_FAILURE

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if message is not None:
            self.public_message = message


class ValidationError(PaymentServiceError):
    status_code = 400

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Validation failed: {', '.join(self.errors)}")


class FeeCalculationError(ValidationError):
    def __init__(self, reason: str):
        super().__init__([reason])


class AuthenticationError(PaymentServiceError):
    status_code = 401
    public_message = "Invalid or missing token"


class AuthorizationError(PaymentServiceError):
    status_code = 403
    public_message = "Access denied"

    def __init__(self):
        # Never echo which resource or owner was involved.
        super().__init__()


class NotFoundError(PaymentServiceError):
    status_code = 404
    public_message = "Payment not found"

    def __init__(self):
        super().__init__()


class ProviderError(PaymentServiceError):
    """Upstream payment API failure. ``detail`` is for the logs only."""

    status_code = 502

    def __init__(self, detail: str, public_message: str = GENERIC_FAILURE):
        self.detail = detail
        super().__init__(public_message)


class WebhookAuthError(PaymentServiceError):
    """Unsigned or mis-signed webhook. Dropped, never surfaced to the sender."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__("Invalid webhook signature")
