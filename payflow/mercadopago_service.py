import hashlib
import hmac
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Mapping, Optional

import httpx

from payflow.errors import ProviderError, WebhookAuthError
from payflow.models import TRANSACTION_STATUSES, PENDING
from payflow.providers import PreferencePayload, PreferenceResult, ProviderPayment, WebhookNotification

logger = logging.getLogger(__name__)

# MercadoPago statuses outside our lifecycle
STATUS_ALIASES = {
    "authorized": "in_process",
    "refunded": "cancelled",
    "charged_back": "cancelled",
}


def to_major_units(amount: int) -> float:
    return float(Decimal(amount) / 100)


def to_minor_units(value) -> Optional[int]:
    if value is None:
        return None
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def map_status(status: Optional[str]) -> str:
    status = STATUS_ALIASES.get(status, status)
    return status if status in TRANSACTION_STATUSES else PENDING


def signature_manifest(data_id: Optional[str], request_id: Optional[str], ts: Optional[str]) -> str:
    """The string MercadoPago signs: ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``.

    Parts without a value are left out.
    """
    manifest = ""
    if data_id:
        manifest += f"id:{data_id.lower()};"
    if request_id:
        manifest += f"request-id:{request_id};"
    if ts:
        manifest += f"ts:{ts};"
    return manifest


def signature_digest(manifest: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``ts=...,v1=...`` into its parts."""
    parts = {}
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key and value:
            parts[key.strip()] = value.strip()
    return parts


class MercadoPagoProvider:
    name = "mercadopago"

    def __init__(self, access_token: str, webhook_secret: str,
                 base_url: str = "https://api.mercadopago.com", timeout: float = 10.0,
                 http_client: Optional[httpx.Client] = None):
        self.webhook_secret = webhook_secret
        self.client = http_client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def close(self):
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"mercadopago {method} {path} transport error: {exc}") from exc
        if response.is_error:
            raise ProviderError(f"mercadopago {method} {path} returned {response.status_code}: {response.text}")
        return response.json()

    def build_preference_body(self, payload: PreferencePayload) -> dict:
        return {
            "items": [{
                "id": payload.external_reference,
                "title": payload.title,
                "quantity": 1,
                "unit_price": to_major_units(payload.amount),
                "currency_id": payload.currency,
            }],
            "payer": {"name": payload.payer_name, "email": payload.payer_email},
            "payment_methods": {
                "excluded_payment_types": [{"id": t} for t in payload.excluded_payment_types],
                "installments": payload.max_installments,
                "default_installments": payload.default_installments,
            },
            "back_urls": {
                "success": payload.success_url,
                "failure": payload.failure_url,
                "pending": payload.pending_url,
            },
            "auto_return": "approved",
            "external_reference": payload.external_reference,
            "notification_url": payload.notification_url,
            "metadata": payload.metadata,
        }

    def create_preference(self, payload: PreferencePayload) -> PreferenceResult:
        preference = self._request("POST", "/checkout/preferences", json=self.build_preference_body(payload))
        return PreferenceResult(
            preference_id=str(preference["id"]),
            redirect_url=preference.get("init_point"),
            sandbox_redirect_url=preference.get("sandbox_init_point"),
        )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str],
                       query: Optional[Mapping[str, str]] = None) -> WebhookNotification:
        header = headers.get("x-signature")
        if not header or not self.webhook_secret:
            raise WebhookAuthError("missing x-signature header or webhook secret")
        signature = parse_signature_header(header)
        if not signature.get("ts") or not signature.get("v1"):
            raise WebhookAuthError("x-signature lacks ts or v1")

        try:
            body = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise WebhookAuthError(f"invalid payload: {exc}") from exc
        if not isinstance(body, dict):
            raise WebhookAuthError("invalid payload: not an object")

        # data.id from the query string is the signed value; the body copy is a fallback.
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        resource_id = (query or {}).get("data.id") or data.get("id")
        resource_id = str(resource_id) if resource_id is not None else None

        manifest = signature_manifest(resource_id, headers.get("x-request-id"), signature["ts"])
        expected = signature_digest(manifest, self.webhook_secret)
        if not hmac.compare_digest(expected.encode("ascii"), signature["v1"].encode("utf-8")):
            raise WebhookAuthError("x-signature mismatch")

        return WebhookNotification(
            kind=body.get("type") or body.get("topic") or "unknown",
            resource_id=resource_id,
            raw=body,
        )

    def fetch_payment(self, resource_id: str) -> ProviderPayment:
        payment = self._request("GET", f"/v1/payments/{resource_id}")
        logger.debug("mercadopago.fetch_payment id=%s status=%s", resource_id, payment.get("status"))
        return ProviderPayment(
            payment_id=str(payment.get("id") or resource_id),
            status=map_status(payment.get("status")),
            external_reference=payment.get("external_reference"),
            amount=to_minor_units(payment.get("transaction_amount")),
            currency=payment.get("currency_id"),
            status_detail=payment.get("status_detail"),
            payment_method=payment.get("payment_method_id"),
            metadata=payment.get("metadata") or {},
        )
