"""Side effects of a confirmed payment, routed by payment type."""
import logging
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError as DetailsError
from sqlalchemy import update
from sqlalchemy.orm import Session

from payflow.fees import MEMBERSHIP_DAYS
from payflow.models import Collaboration, ExperienceBooking, Membership, Transaction, utcnow
from payflow.schemas import (
    PAYMENT_TYPES,
    CampaignDepositDetails,
    CollaborationDetails,
    ExperienceDetails,
    MembershipDetails,
    parse_payment_details,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Session, Transaction, object], None]


def activate_membership(db: Session, transaction: Transaction, details: MembershipDetails) -> None:
    start = utcnow()
    db.merge(Membership(
        user_id=transaction.payer_id,
        tier=details.membership_tier,
        status="active",
        price=transaction.amount,
        start_date=start,
        end_date=start + timedelta(days=MEMBERSHIP_DAYS[details.billing_period]),
        external_subscription_id=transaction.provider_payment_id or transaction.external_payment_id,
    ))
    db.commit()
    logger.info("payments.dispatch membership active user_id=%s tier=%s", transaction.payer_id, details.membership_tier)


def accept_collaboration(db: Session, transaction: Transaction, details: CollaborationDetails) -> None:
    result = db.execute(
        update(Collaboration)
        .where(Collaboration.id == details.collaboration_id)
        .values(status="accepted", accepted_at=utcnow())
    )
    db.commit()
    if result.rowcount == 0:
        logger.warning("payments.dispatch collaboration not found id=%s", details.collaboration_id)


def record_experience_booking(db: Session, transaction: Transaction, details: ExperienceDetails) -> None:
    db.add(ExperienceBooking(
        transaction_id=transaction.id,
        experience_id=details.experience_id,
        user_id=transaction.payer_id,
        participant_count=details.participant_count,
    ))
    db.commit()


def note_campaign_deposit(db: Session, transaction: Transaction, details: CampaignDepositDetails) -> None:
    # Deposits are read from the transaction ledger; nothing else to update.
    logger.info("payments.dispatch campaign deposit campaign_id=%s type=%s amount=%s",
                details.campaign_id, details.deposit_type, transaction.amount)


class PostPaymentDispatcher:
    """Runs the handler registered for a transaction's payment type.

    Handler failures are logged and contained; they never propagate to the
    webhook response.
    """

    def __init__(self, confirm_experience: Optional[Handler] = None):
        self.handlers: Dict[str, List[Handler]] = {
            "membership": [activate_membership],
            "collaboration": [accept_collaboration],
            "experience": [confirm_experience or record_experience_booking],
            "campaign_deposit": [note_campaign_deposit],
        }
        missing = set(PAYMENT_TYPES) - set(self.handlers)
        if missing:
            raise RuntimeError(f"No post-payment handler for {sorted(missing)}")

    def register(self, payment_type: str, handler: Handler) -> None:
        self.handlers[payment_type].append(handler)

    def dispatch(self, db: Session, transaction: Transaction) -> int:
        """Run the handlers for ``transaction``; returns how many failed."""
        meta = transaction.meta or {}
        try:
            details = parse_payment_details(meta.get("payment_type"), meta)
        except DetailsError:
            logger.error("payments.dispatch unreadable metadata transaction_id=%s type=%s",
                         transaction.id, meta.get("payment_type"))
            return 1

        failures = 0
        for handler in self.handlers[details.payment_type]:
            try:
                handler(db, transaction, details)
            except Exception:
                db.rollback()
                failures += 1
                logger.exception("payments.dispatch handler %s failed transaction_id=%s",
                                 getattr(handler, "__name__", handler), transaction.id)
        return failures
