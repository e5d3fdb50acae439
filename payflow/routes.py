from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from payflow.auth import Caller, verify_token
from payflow.database import get_db
from payflow.errors import ValidationError
from payflow.fees import MEMBERSHIP_PRICES, installment_options, yearly_discount
from payflow.models import TRANSACTION_STATUSES
from payflow.schemas import PaymentRequest
from payflow.service import PaymentService

router = APIRouter(prefix="/payments", tags=["Payments"])


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


@router.post("/preference")
def create_preference(
    payment: PaymentRequest,
    caller: Caller = Depends(verify_token),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    return service.create_preference(db, payment, caller.id)


@router.get("/status")
def payment_status(
    payment_id: str = Query(..., min_length=1),
    caller: Caller = Depends(verify_token),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_status(db, payment_id, caller.id)


@router.get("/history")
def payment_history(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    caller: Caller = Depends(verify_token),
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    if status is not None and status not in TRANSACTION_STATUSES:
        raise ValidationError(["Invalid status filter"])
    return service.history(db, caller.id, status=status, limit=limit)


@router.get("/pricing/memberships")
def membership_pricing():
    return {
        "tiers": [
            {
                "tier": tier,
                "prices": prices,
                "yearlyDiscount": yearly_discount(tier),
                "installments": {period: installment_options(amount) for period, amount in prices.items()},
            }
            for tier, prices in MEMBERSHIP_PRICES.items()
        ]
    }
