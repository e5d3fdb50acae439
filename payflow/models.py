import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from payflow.database import Base

PENDING = "pending"
IN_PROCESS = "in_process"
APPROVED = "approved"
REJECTED = "rejected"
CANCELLED = "cancelled"

TRANSACTION_STATUSES = (PENDING, IN_PROCESS, APPROVED, REJECTED, CANCELLED)
TERMINAL_STATUSES = frozenset({APPROVED, REJECTED, CANCELLED})

# Higher rank wins; equal-rank terminal states never replace each other.
STATUS_RANK = {PENDING: 0, IN_PROCESS: 1, APPROVED: 2, REJECTED: 2, CANCELLED: 2}


def _uuid():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=_uuid)
    collaboration_id = Column(String, nullable=True)
    payer_id = Column(String, nullable=False)
    payee_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)          # minor units
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PENDING)
    external_payment_id = Column(String, unique=True, nullable=True)   # provider preference id
    external_reference = Column(String, unique=True, nullable=False)
    provider_payment_id = Column(String, nullable=True)
    description = Column(String, nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_transactions_payer_status", "payer_id", "status"),
    )

    @property
    def payment_type(self):
        return (self.meta or {}).get("payment_type")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Membership(Base):
    __tablename__ = "memberships"

    user_id = Column(String, primary_key=True)
    tier = Column(String, nullable=False)
    status = Column(String, nullable=False)           # active | expired | cancelled
    price = Column(Integer, nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    external_subscription_id = Column(String, nullable=True)


class Collaboration(Base):
    __tablename__ = "collaborations"

    id = Column(String, primary_key=True)
    creator_id = Column(String, nullable=True)
    brand_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")   # pending | accepted | ...
    accepted_at = Column(DateTime(timezone=True), nullable=True)


class ExperienceBooking(Base):
    __tablename__ = "experience_bookings"

    id = Column(String, primary_key=True, default=_uuid)
    transaction_id = Column(String, unique=True, nullable=False)
    experience_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    participant_count = Column(Integer, nullable=False, default=1)
    status = Column(String, nullable=False, default="confirmed")
    confirmed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
