"""Pydantic schemas for the EscrowService facade.

Request shapes validate caller input before it reaches the services;
response shapes bundle documents into read models. They are separate from
the document models so the stored format can evolve independently.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from paypledge.domain.enums import FeesPaidBy, VerificationType
from paypledge.domain.models import (
    EscrowAccount,
    PaymentRecord,
    ProofMetadata,
    ProofSubmission,
    Transaction,
    TransactionTerms,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateTransactionRequest(BaseModel):
    """Input for opening a new transaction with its escrow account."""

    buyer_id: str = Field(..., min_length=1, description="User id of the paying party")
    seller_id: str = Field(..., min_length=1, description="User id of the delivering party")
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Principal to hold in escrow",
        examples=[Decimal("100.00")],
    )
    currency: str | None = Field(
        default=None,
        min_length=3,
        max_length=3,
        description="ISO 4217 code; the configured default when omitted",
    )
    terms: TransactionTerms = Field(default_factory=TransactionTerms)
    fees_paid_by: FeesPaidBy | None = Field(
        default=None,
        description="Who bears deposit fees; the configured default when omitted",
    )
    expected_delivery_date: datetime | None = None

    @model_validator(mode="after")
    def _distinct_parties(self) -> CreateTransactionRequest:
        if self.buyer_id == self.seller_id:
            raise ValueError("buyer_id and seller_id must differ")
        return self


class SubmitProofRequest(BaseModel):
    """Input for a seller uploading delivery proof."""

    transaction_id: str
    submitted_by: str
    verification_type: VerificationType
    title: str = Field(default="", max_length=200)
    description: str = Field(default="", max_length=5000)
    file_urls: list[str] = Field(default_factory=list)
    metadata: ProofMetadata = Field(default_factory=ProofMetadata)
    condition_id: str | None = Field(
        default=None,
        description="Release condition this proof targets; matched by type when omitted",
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class TransactionView(BaseModel):
    """Everything a party needs to render one transaction."""

    model_config = ConfigDict(frozen=True)

    transaction: Transaction
    escrow: EscrowAccount
    payments: list[PaymentRecord] = Field(default_factory=list)
    proofs: list[ProofSubmission] = Field(default_factory=list)
    can_release: bool = False
    unmet_conditions: list[str] = Field(default_factory=list)
    allowed_events: list[str] = Field(default_factory=list)


class PartySummary(BaseModel):
    """Dashboard counters for one user across all their transactions."""

    user_id: str
    total_transactions: int = 0
    as_buyer: int = 0
    as_seller: int = 0
    active: int = 0
    completed: int = 0
    disputed: int = 0
    refunded: int = 0
    volume_completed: Decimal = Decimal("0")
    amount_held: Decimal = Decimal("0")
