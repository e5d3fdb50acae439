from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

PaymentType = Literal["membership", "collaboration", "experience", "campaign_deposit"]
PAYMENT_TYPES = ("membership", "collaboration", "experience", "campaign_deposit")

MembershipTier = Literal["basic", "premium", "vip"]
BillingPeriod = Literal["monthly", "yearly"]


class PaymentRequest(BaseModel):
    """Body of ``POST /payments/preference``.

    Field types are loose on purpose: semantic checks live in
    ``payflow.validation`` so every violation is reported at once.
    """

    amount: Optional[float] = None
    description: Optional[str] = None
    payment_type: Optional[str] = None
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    pending_url: Optional[str] = None


class MembershipDetails(BaseModel):
    payment_type: Literal["membership"] = "membership"
    membership_tier: MembershipTier
    billing_period: BillingPeriod = "monthly"


class CollaborationDetails(BaseModel):
    payment_type: Literal["collaboration"] = "collaboration"
    collaboration_id: str
    creator_id: Optional[str] = None
    brand_id: Optional[str] = None


class ExperienceDetails(BaseModel):
    payment_type: Literal["experience"] = "experience"
    experience_id: str
    creator_id: Optional[str] = None
    participant_count: int = Field(default=1, ge=1)


class CampaignDepositDetails(BaseModel):
    payment_type: Literal["campaign_deposit"] = "campaign_deposit"
    campaign_id: str
    brand_id: Optional[str] = None
    deposit_type: Literal["initial", "additional", "milestone"] = "initial"


PaymentDetails = Annotated[
    Union[MembershipDetails, CollaborationDetails, ExperienceDetails, CampaignDepositDetails],
    Field(discriminator="payment_type"),
]

payment_details_adapter = TypeAdapter(PaymentDetails)


def parse_payment_details(payment_type: str, metadata: Dict[str, Any]):
    """Build the typed details for ``payment_type`` out of a metadata mapping.

    Raises ``pydantic.ValidationError`` when required fields are missing.
    """
    return payment_details_adapter.validate_python({**(metadata or {}), "payment_type": payment_type})


class SanitizedPayment(BaseModel):
    """A validated, sanitized PaymentRequest ready for the provider."""

    amount: int
    description: str
    user_id: str
    user_email: str
    user_name: str
    details: PaymentDetails
    metadata: Dict[str, Any] = Field(default_factory=dict)
    success_url: Optional[str] = None
    failure_url: Optional[str] = None
    pending_url: Optional[str] = None

    @property
    def payment_type(self) -> str:
        return self.details.payment_type
