"""Provider-agnostic payment intents and the provider interface.

Adapters (``stripe_service``, ``mercadopago_service``) translate these into
their own API calls. One provider instance is built at application start and
handed to the request handlers.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from payflow.config import Settings


@dataclass
class PreferencePayload:
    """Everything a provider needs to create a hosted checkout."""

    external_reference: str
    title: str
    amount: int                     # minor units
    currency: str
    payer_name: str
    payer_email: str
    success_url: str
    failure_url: str
    pending_url: str
    notification_url: str
    max_installments: int
    default_installments: int = 1
    excluded_payment_types: List[str] = field(default_factory=lambda: ["ticket"])
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PreferenceResult:
    preference_id: str
    redirect_url: Optional[str]
    sandbox_redirect_url: Optional[str] = None


@dataclass
class WebhookNotification:
    """A verified webhook, used only as a pointer to the authoritative record."""

    kind: str                        # "payment" or the provider's raw type
    resource_id: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_payment(self) -> bool:
        return self.kind == "payment" and bool(self.resource_id)


@dataclass
class ProviderPayment:
    """Authoritative payment state as reported by the provider."""

    payment_id: str
    status: str                      # one of models.TRANSACTION_STATUSES
    external_reference: Optional[str]
    amount: Optional[int] = None
    currency: Optional[str] = None
    status_detail: Optional[str] = None
    payment_method: Optional[str] = None
    preference_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    name: str

    def create_preference(self, payload: PreferencePayload) -> PreferenceResult:
        """Create the hosted checkout. Raises ``ProviderError`` on failure."""

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str],
                       query: Optional[Mapping[str, str]] = None) -> WebhookNotification:
        """Authenticate and parse a webhook. Raises ``WebhookAuthError``."""

    def fetch_payment(self, resource_id: str) -> ProviderPayment:
        """Look up the payment a webhook points at. Raises ``ProviderError``."""


def build_provider(settings: Settings) -> PaymentProvider:
    if settings.payment_provider == "stripe":
        from payflow.stripe_service import StripeProvider
        return StripeProvider(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout=settings.provider_timeout_seconds,
        )
    if settings.payment_provider == "mercadopago":
        from payflow.mercadopago_service import MercadoPagoProvider
        return MercadoPagoProvider(
            access_token=settings.mercadopago_access_token,
            webhook_secret=settings.mercadopago_webhook_secret,
            base_url=settings.mercadopago_api_url,
            timeout=settings.provider_timeout_seconds,
        )
    raise RuntimeError(f"Unknown PAYMENT_PROVIDER: {settings.payment_provider}")
