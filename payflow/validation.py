"""Validation and sanitization of incoming payment requests.

All checks run and every violation is collected; nothing here raises or
touches the network.
"""
import math
import re
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import ValidationError as DetailsError

from payflow.fees import MAX_PAYMENT_AMOUNT, membership_price
from payflow.schemas import PAYMENT_TYPES, PaymentRequest, SanitizedPayment, parse_payment_details

MIN_DESCRIPTION_LENGTH = 3

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
UNSAFE_CHARS_RE = re.compile(r"[<>\"'&]")


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def sanitize_string(value) -> str:
    """Drop ``< > " ' &`` and surrounding whitespace.

    Guards the provider's hosted checkout page against injected markup. It is
    not an HTML sanitizer.
    """
    if not isinstance(value, str):
        return ""
    return UNSAFE_CHARS_RE.sub("", value).strip()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email))


def _blank(value) -> bool:
    return not isinstance(value, str) or not value.strip()


def _details_errors(exc: DetailsError) -> List[str]:
    errors = []
    for error in exc.errors():
        name = ".".join(str(part) for part in error["loc"] if part not in PAYMENT_TYPES) or "metadata"
        if error["type"] == "missing":
            errors.append(f"{name} is required")
        else:
            errors.append(f"Invalid {name}")
    return errors


def validate_payment_request(request: PaymentRequest, max_amount: int = MAX_PAYMENT_AMOUNT) -> ValidationResult:
    errors = []

    amount = request.amount
    whole_amount = None
    if amount is None or not math.isfinite(amount) or amount <= 0:
        errors.append("Invalid payment amount")
    else:
        if amount > max_amount:
            errors.append("Payment amount exceeds maximum limit")
        if amount != int(amount):
            errors.append("Payment amount must be a whole number of minor currency units")
        else:
            whole_amount = int(amount)

    # Checked on the text that reaches the provider.
    if len(sanitize_string(request.description)) < MIN_DESCRIPTION_LENGTH:
        errors.append(f"Payment description is required and must be at least {MIN_DESCRIPTION_LENGTH} characters")

    if _blank(request.user_id):
        errors.append("User ID is required")

    if _blank(request.user_email):
        errors.append("User email is required")
    elif not is_valid_email(request.user_email.strip()):
        errors.append("Invalid email format")

    if _blank(request.user_name):
        errors.append("User name is required")

    if request.payment_type not in PAYMENT_TYPES:
        errors.append("Invalid payment type")
    else:
        try:
            details = parse_payment_details(request.payment_type, request.metadata)
        except DetailsError as exc:
            errors.extend(_details_errors(exc))
        else:
            if details.payment_type == "membership" and whole_amount is not None:
                expected = membership_price(details.membership_tier, details.billing_period)
                if whole_amount != expected:
                    errors.append(f"Payment amount does not match the {details.membership_tier} "
                                  f"{details.billing_period} membership price of {expected}")

    return ValidationResult(valid=not errors, errors=errors)


def sanitize_payment_request(request: PaymentRequest) -> SanitizedPayment:
    """Return the cleaned request. Only call on a request that validated."""
    return SanitizedPayment(
        amount=int(request.amount),
        description=sanitize_string(request.description),
        user_id=request.user_id.strip(),
        user_email=sanitize_string(request.user_email),
        user_name=sanitize_string(request.user_name),
        details=parse_payment_details(request.payment_type, request.metadata),
        metadata=dict(request.metadata),
        success_url=_optional_url(request.success_url),
        failure_url=_optional_url(request.failure_url),
        pending_url=_optional_url(request.pending_url),
    )


def _optional_url(value) -> Optional[str]:
    return value.strip() if isinstance(value, str) and value.strip() else None
