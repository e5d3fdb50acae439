"""Payment use cases: preference creation, webhook reconciliation, status.

The service holds no mutable state of its own. The provider, the settings and
the dispatcher are built once at startup and injected; the database session
is passed per call.
"""
import logging
import time
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from payflow import repository
from payflow.config import Settings
from payflow.dispatcher import PostPaymentDispatcher
from payflow.errors import AuthorizationError, NotFoundError, ProviderError, ValidationError, WebhookAuthError
from payflow.fees import calculate_split, max_installments
from payflow.models import APPROVED, Transaction
from payflow.providers import PaymentProvider, PreferencePayload
from payflow.schemas import PaymentRequest, SanitizedPayment
from payflow.validation import sanitize_payment_request, validate_payment_request

logger = logging.getLogger(__name__)


def make_external_reference(payment_type: str, user_id: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{payment_type}_{user_id}_{timestamp_ms}"


def _isoformat(value):
    return value.isoformat() if value is not None else None


class PaymentService:
    def __init__(self, provider: PaymentProvider, settings: Settings,
                 dispatcher: Optional[PostPaymentDispatcher] = None):
        self.provider = provider
        self.settings = settings
        self.dispatcher = dispatcher or PostPaymentDispatcher()

    # -- preference creation ------------------------------------------------

    def _transaction_metadata(self, payment: SanitizedPayment, external_reference: str) -> Dict[str, Any]:
        meta = {
            **payment.metadata,
            **payment.details.model_dump(),
            "user_id": payment.user_id,
            "description": payment.description,
            "external_reference": external_reference,
        }
        if payment.payment_type == "collaboration":
            split = calculate_split(payment.amount, self.settings.platform_fee_percentage)
            meta["creator_amount"] = split.creator_amount
            meta["platform_fee"] = split.platform_fee
        return meta

    def build_payload(self, payment: SanitizedPayment, external_reference: str) -> PreferencePayload:
        return PreferencePayload(
            external_reference=external_reference,
            title=payment.description,
            amount=payment.amount,
            currency=self.settings.currency,
            payer_name=payment.user_name or payment.user_email,
            payer_email=payment.user_email,
            success_url=payment.success_url or self.settings.redirect_url("success"),
            failure_url=payment.failure_url or self.settings.redirect_url("failure"),
            pending_url=payment.pending_url or self.settings.redirect_url("pending"),
            notification_url=self.settings.webhook_url,
            max_installments=max_installments(payment.amount),
            metadata=self._transaction_metadata(payment, external_reference),
        )

    def create_preference(self, db: Session, request: PaymentRequest, caller_id: str) -> Dict[str, Any]:
        result = validate_payment_request(request, max_amount=self.settings.max_payment_amount)
        if not result.valid:
            raise ValidationError(result.errors)
        if request.user_id.strip() != caller_id:
            logger.warning("payments.preference caller mismatch caller_id=%s", caller_id)
            raise AuthorizationError()

        payment = sanitize_payment_request(request)
        external_reference = make_external_reference(payment.payment_type, payment.user_id)
        payload = self.build_payload(payment, external_reference)

        try:
            preference = self.provider.create_preference(payload)
        except ProviderError as exc:
            logger.error("payments.preference provider=%s failed ref=%s detail=%s",
                         self.provider.name, external_reference, exc.detail)
            raise ProviderError(exc.detail, "Payment preference creation failed") from exc

        details = payment.details
        try:
            repository.create_pending_transaction(
                db,
                collaboration_id=getattr(details, "collaboration_id", None),
                payer_id=payment.user_id,
                payee_id=payment.metadata.get("payee_id") or getattr(details, "creator_id", None),
                amount=payment.amount,
                currency=self.settings.currency,
                external_payment_id=preference.preference_id,
                external_reference=external_reference,
                description=payment.description,
                meta=payload.metadata,
            )
        except SQLAlchemyError:
            # The webhook path recreates the row; never block the checkout redirect.
            logger.exception("payments.preference persistence failed ref=%s preference_id=%s",
                             external_reference, preference.preference_id)

        logger.info("payments.preference created ref=%s preference_id=%s amount=%s",
                    external_reference, preference.preference_id, payment.amount)
        return {
            "success": True,
            "preferenceId": preference.preference_id,
            "redirectUrl": preference.redirect_url,
            "sandboxRedirectUrl": preference.sandbox_redirect_url,
        }

    # -- webhook reconciliation --------------------------------------------

    def handle_webhook(self, db: Session, raw_body: bytes, headers: Mapping[str, str],
                       query: Optional[Mapping[str, str]] = None) -> bool:
        """Reconcile one webhook delivery. Returns True when a transaction was touched."""
        try:
            notification = self.provider.verify_webhook(raw_body, headers, query)
        except WebhookAuthError as exc:
            logger.warning("payments.webhook rejected provider=%s reason=%s", self.provider.name, exc.reason)
            return False

        if not notification.is_payment:
            logger.info("payments.webhook ignored type=%s", notification.kind)
            return False

        try:
            payment = self.provider.fetch_payment(notification.resource_id)
        except ProviderError as exc:
            logger.error("payments.webhook fetch failed resource_id=%s detail=%s",
                         notification.resource_id, exc.detail)
            return False

        outcome = repository.reconcile(db, payment, self.settings.currency)
        if outcome is None:
            logger.warning("payments.webhook no transaction for payment_id=%s ref=%s",
                           payment.payment_id, payment.external_reference)
            return False

        transaction = outcome.transaction
        if outcome.changed:
            logger.info("payments.webhook transaction_id=%s %s -> %s",
                        transaction.id, outcome.previous_status, transaction.status)

        if transaction.status == APPROVED and repository.claim_dispatch(db, transaction.id):
            db.refresh(transaction)
            failures = self.dispatcher.dispatch(db, transaction)
            if failures:
                logger.error("payments.webhook dispatch had %s failure(s) transaction_id=%s",
                             failures, transaction.id)
        return True

    # -- status queries -----------------------------------------------------

    def _owned_transaction(self, db: Session, payment_id: str, requesting_user_id: str) -> Transaction:
        transaction = repository.find_transaction(db, payment_id)
        if transaction is None:
            raise NotFoundError()
        if transaction.payer_id != requesting_user_id:
            raise AuthorizationError()
        return transaction

    def get_status(self, db: Session, payment_id: str, requesting_user_id: str) -> Dict[str, Any]:
        transaction = self._owned_transaction(db, payment_id, requesting_user_id)
        return {"success": True, **serialize_transaction(transaction)}

    def history(self, db: Session, user_id: str, status: Optional[str] = None, limit: int = 50) -> Dict[str, Any]:
        rows = repository.list_for_payer(db, user_id, status=status, limit=limit)
        return {"success": True, "transactions": [serialize_transaction(t) for t in rows]}


def serialize_transaction(transaction: Transaction) -> Dict[str, Any]:
    meta = transaction.meta or {}
    return {
        "id": transaction.id,
        "status": transaction.status,
        "detail": meta.get("status_detail"),
        "amount": transaction.amount,
        "currency": transaction.currency,
        "paymentType": meta.get("payment_type"),
        "description": transaction.description,
        "externalReference": transaction.external_reference,
        "createdAt": _isoformat(transaction.created_at),
        "completedAt": _isoformat(transaction.completed_at),
    }
