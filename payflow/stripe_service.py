import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from payflow.errors import ProviderError, WebhookAuthError
from payflow.models import APPROVED, CANCELLED, IN_PROCESS, PENDING, REJECTED
from payflow.providers import PreferencePayload, PreferenceResult, ProviderPayment, WebhookNotification

logger = logging.getLogger(__name__)

SESSION_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}

INTENT_STATUSES = {
    "processing": IN_PROCESS,
    "requires_capture": IN_PROCESS,
    "canceled": CANCELLED,
    "succeeded": APPROVED,
}


def as_plain(value):
    """Turn Stripe SDK objects into plain dicts and lists, recursively."""
    if isinstance(value, stripe.StripeObject):
        value = value.to_dict()
    if isinstance(value, Mapping):
        return {k: as_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [as_plain(v) for v in value]
    return value


def _stripe_metadata(metadata: Dict[str, Any]) -> Dict[str, str]:
    # Stripe only stores flat string values.
    return {str(k): str(v) for k, v in metadata.items() if v is not None and not isinstance(v, (dict, list))}


def _session_status(session: Dict[str, Any]) -> str:
    if session.get("status") == "expired":
        return CANCELLED
    if session.get("payment_status") in ("paid", "no_payment_required"):
        return APPROVED

    intent = session.get("payment_intent")
    if not isinstance(intent, dict):
        return PENDING
    if intent.get("status") == "requires_payment_method" and intent.get("last_payment_error"):
        return REJECTED
    return INTENT_STATUSES.get(intent.get("status"), PENDING)


class StripeProvider:
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str, timeout: float = 10.0,
                 client: Optional[stripe.StripeClient] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.client = client or stripe.StripeClient(
            secret_key,
            http_client=stripe.RequestsClient(timeout=timeout),
        )

    def create_preference(self, payload: PreferencePayload) -> PreferenceResult:
        metadata = _stripe_metadata({**payload.metadata, "external_reference": payload.external_reference})
        try:
            session = self.client.v1.checkout.sessions.create(
                params={
                    "mode": "payment",
                    "line_items": [{
                        "quantity": 1,
                        "price_data": {
                            "currency": payload.currency.lower(),
                            "unit_amount": payload.amount,
                            "product_data": {"name": payload.title},
                        },
                    }],
                    "customer_email": payload.payer_email,
                    "client_reference_id": payload.external_reference,
                    "success_url": payload.success_url,
                    "cancel_url": payload.failure_url,
                    "metadata": metadata,
                    "payment_intent_data": {"metadata": metadata},
                },
                options={"idempotency_key": payload.external_reference},
            )
        except stripe.StripeError as exc:
            raise ProviderError(f"stripe checkout.sessions.create failed: {exc}") from exc

        session = as_plain(session)
        url = session.get("url")
        sandbox_url = url if self.secret_key.startswith("sk_test_") else None
        return PreferenceResult(preference_id=session["id"], redirect_url=url, sandbox_redirect_url=sandbox_url)

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str],
                       query: Optional[Mapping[str, str]] = None) -> WebhookNotification:
        signature = headers.get("stripe-signature")
        if not signature or not self.webhook_secret:
            raise WebhookAuthError("missing stripe-signature header or webhook secret")
        try:
            event = stripe.Webhook.construct_event(raw_body, signature, self.webhook_secret)
        except ValueError as exc:
            raise WebhookAuthError(f"invalid payload: {exc}") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookAuthError(f"invalid signature: {exc}") from exc

        event = as_plain(event)
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        if event_type in SESSION_EVENTS:
            return WebhookNotification(kind="payment", resource_id=obj.get("id"), raw=event)
        return WebhookNotification(kind=event_type or "unknown", resource_id=None, raw=event)

    def fetch_payment(self, resource_id: str) -> ProviderPayment:
        try:
            session = self.client.v1.checkout.sessions.retrieve(
                resource_id,
                params={"expand": ["payment_intent", "payment_intent.payment_method"]},
            )
        except stripe.StripeError as exc:
            raise ProviderError(f"stripe checkout.sessions.retrieve {resource_id} failed: {exc}") from exc

        session = as_plain(session)
        intent = session.get("payment_intent")
        payment_id = resource_id
        payment_method = None
        status_detail = session.get("payment_status")
        if isinstance(intent, dict):
            payment_id = intent.get("id") or resource_id
            status_detail = intent.get("status") or status_detail
            method = intent.get("payment_method")
            payment_method = method.get("type") if isinstance(method, dict) else method
        elif isinstance(intent, str):
            payment_id = intent

        metadata = session.get("metadata") or {}
        logger.debug("stripe.fetch_payment session=%s status=%s", resource_id, session.get("status"))
        return ProviderPayment(
            payment_id=payment_id,
            status=_session_status(session),
            external_reference=session.get("client_reference_id") or metadata.get("external_reference"),
            amount=session.get("amount_total"),
            currency=(session.get("currency") or "").upper() or None,
            status_detail=status_detail,
            payment_method=payment_method,
            preference_id=session.get("id"),
            metadata=metadata,
        )
