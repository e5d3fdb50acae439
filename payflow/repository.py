"""Transaction persistence.

Writes that race with webhook deliveries go through single atomic statements:
an insert that ignores an existing ``external_reference`` and a
compare-and-set UPDATE guarded by the status that was read.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import insert as generic_insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.models import APPROVED, PENDING, STATUS_RANK, TERMINAL_STATUSES, Transaction, utcnow
from payflow.providers import ProviderPayment

logger = logging.getLogger(__name__)

transactions = Transaction.__table__

CAS_ATTEMPTS = 3


@dataclass
class ReconcileOutcome:
    transaction: Transaction
    changed: bool
    previous_status: Optional[str] = None


def create_pending_transaction(db: Session, **fields) -> Transaction:
    transaction = Transaction(status=PENDING, **fields)
    db.add(transaction)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(transaction)
    return transaction


def get_by_external_payment_id(db: Session, external_payment_id: str) -> Optional[Transaction]:
    return db.execute(
        select(Transaction).where(Transaction.external_payment_id == external_payment_id)
    ).scalar_one_or_none()


def get_by_external_reference(db: Session, external_reference: str) -> Optional[Transaction]:
    return db.execute(
        select(Transaction).where(Transaction.external_reference == external_reference)
    ).scalar_one_or_none()


def find_transaction(db: Session, payment_id: str) -> Optional[Transaction]:
    """Resolve a preference id, an external reference or a provider payment id."""
    return db.execute(
        select(Transaction).where(or_(
            Transaction.external_payment_id == payment_id,
            Transaction.external_reference == payment_id,
            Transaction.provider_payment_id == payment_id,
        ))
    ).scalars().first()


def list_for_payer(db: Session, payer_id: str, status: Optional[str] = None, limit: int = 50) -> List[Transaction]:
    query = select(Transaction).where(Transaction.payer_id == payer_id)
    if status:
        query = query.where(Transaction.status == status)
    query = query.order_by(Transaction.created_at.desc()).limit(limit)
    return list(db.execute(query).scalars())


def _insert_ignoring_existing(db: Session, values: Dict[str, Any]) -> None:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        try:
            db.execute(generic_insert(transactions).values(**values))
            db.commit()
        except IntegrityError:
            db.rollback()
        return

    db.execute(
        insert(transactions).values(**values).on_conflict_do_nothing(index_elements=["external_reference"])
    )
    db.commit()


def ensure_transaction(db: Session, payment: ProviderPayment, default_currency: str) -> bool:
    """Create the local row for ``payment`` unless it already exists.

    Returns False when the provider record lacks what a row needs (payer and
    amount), in which case nothing is written.
    """
    metadata = dict(payment.metadata or {})
    payer_id = metadata.get("user_id")
    if not payment.external_reference or not payer_id or payment.amount is None:
        return False

    values = {
        "collaboration_id": metadata.get("collaboration_id"),
        "payer_id": str(payer_id),
        "payee_id": metadata.get("payee_id") or metadata.get("creator_id"),
        "amount": payment.amount,
        "currency": payment.currency or default_currency,
        "status": PENDING,
        "external_payment_id": payment.preference_id or payment.payment_id,
        "external_reference": payment.external_reference,
        "description": metadata.get("description"),
        "metadata": metadata,
    }
    _insert_ignoring_existing(db, values)
    logger.info("payments.repository ensured transaction from provider ref=%s", payment.external_reference)
    return True


def _reconciled_values(transaction: Transaction, payment: ProviderPayment) -> Optional[Dict[str, Any]]:
    current, new = transaction.status, payment.status
    if current in TERMINAL_STATUSES:
        # Approved is final. A failed attempt only yields to a different,
        # approved attempt on the same preference.
        if current == APPROVED or new != APPROVED:
            return None
        if payment.payment_id == transaction.provider_payment_id:
            return None
    elif STATUS_RANK[new] < STATUS_RANK[current]:
        return None

    meta = dict(transaction.meta or {})
    meta.update({
        k: v for k, v in {
            "provider_payment_id": payment.payment_id,
            "payment_method": payment.payment_method,
            "status_detail": payment.status_detail,
        }.items() if v is not None
    })
    if new == current and meta == (transaction.meta or {}):
        return None

    values = {"status": new, "metadata": meta, "provider_payment_id": payment.payment_id}
    if transaction.external_payment_id is None:
        values["external_payment_id"] = payment.preference_id or payment.payment_id
    if new == APPROVED and transaction.completed_at is None:
        values["completed_at"] = utcnow()
    return values


def reconcile(db: Session, payment: ProviderPayment, default_currency: str) -> Optional[ReconcileOutcome]:
    """Bring the local transaction in line with the provider's record.

    A lower-ranked status never replaces a higher one and terminal states are
    kept, so replays and out-of-order deliveries are no-ops. The one exception
    is a rejected or cancelled transaction that a later, different provider
    payment approves.
    """
    if not payment.external_reference:
        return None

    transaction = None
    for _ in range(CAS_ATTEMPTS):
        transaction = get_by_external_reference(db, payment.external_reference)
        if transaction is None:
            if not ensure_transaction(db, payment, default_currency):
                return None
            continue

        values = _reconciled_values(transaction, payment)
        if values is None:
            return ReconcileOutcome(transaction=transaction, changed=False, previous_status=transaction.status)

        previous = transaction.status
        result = db.execute(
            update(transactions)
            .where(transactions.c.id == transaction.id, transactions.c.status == previous)
            .values(**values)
        )
        db.commit()
        if result.rowcount == 1:
            db.refresh(transaction)
            return ReconcileOutcome(transaction=transaction, changed=True, previous_status=previous)
        logger.info("payments.repository concurrent update ref=%s, retrying", payment.external_reference)

    logger.warning("payments.repository gave up reconciling ref=%s", payment.external_reference)
    if transaction is None:
        return None
    return ReconcileOutcome(transaction=transaction, changed=False, previous_status=transaction.status)


def claim_dispatch(db: Session, transaction_id: str) -> bool:
    """Mark an approved transaction as dispatched. True only for the first caller."""
    result = db.execute(
        update(transactions)
        .where(
            transactions.c.id == transaction_id,
            transactions.c.status == APPROVED,
            transactions.c.dispatched_at.is_(None),
        )
        .values(dispatched_at=utcnow())
    )
    db.commit()
    return result.rowcount == 1
