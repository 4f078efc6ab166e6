"""Document models for transactions, escrow accounts, payments and proofs.

Every entity is a pydantic model that round-trips through the document store
as plain JSON (``model_dump(mode="json")``). Money is always ``Decimal`` and is
serialised as a string so ledger sums stay exact.

The ``version`` field is the store's optimistic-concurrency token. It is
excluded from the JSON body and filled in by the repositories on read.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from paypledge.domain.enums import (
    EscrowStatus,
    FeesPaidBy,
    LedgerEntryType,
    PaymentMethodType,
    PaymentStatus,
    PaymentType,
    ProofStatus,
    TransactionStatus,
    VerificationType,
)

ZERO = Decimal("0")


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Document(BaseModel):
    """Base class for anything stored as a top-level document."""

    kind: str
    id: str = Field(default_factory=_new_id)
    version: int = Field(default=0, exclude=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------


class VerificationRequirement(BaseModel):
    """One kind of proof the buyer expects before releasing funds."""

    type: VerificationType
    description: str = ""
    is_required: bool = True
    prompt: str | None = None


class TransactionTerms(BaseModel):
    delivery_requirements: list[str] = Field(default_factory=list)
    quality_standards: list[str] = Field(default_factory=list)
    verification_requirements: list[VerificationRequirement] = Field(default_factory=list)
    timeout_hours: int = Field(default=72, gt=0)
    allow_partial_refund: bool = False
    requires_signature: bool = False
    custom_terms: str | None = None


class Transaction(Document):
    """A deal between a buyer and a seller, backed by one escrow account."""

    kind: Literal["transaction"] = "transaction"
    buyer_id: str
    seller_id: str
    title: str
    description: str = ""
    amount: Decimal
    currency: str = "USD"
    status: TransactionStatus = TransactionStatus.CREATED
    terms: TransactionTerms = Field(default_factory=TransactionTerms)
    escrow_account_id: str | None = None
    proof_submission_ids: list[str] = Field(default_factory=list)
    payment_ids: list[str] = Field(default_factory=list)
    dispute_reason: str | None = None
    cancellation_reason: str | None = None
    refund_amount: Decimal | None = None
    expected_delivery_date: datetime | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.buyer_id, self.seller_id)


# ---------------------------------------------------------------------------
# Escrow account
# ---------------------------------------------------------------------------


class ReleaseCondition(BaseModel):
    """A named predicate that must hold before funds can be released.

    Only the VerificationGate (or an explicit human review / dispute
    resolution) flips ``is_met``.
    """

    id: str = Field(default_factory=_new_id)
    description: str
    verification_type: VerificationType | None = None
    is_met: bool = False
    verified_at: datetime | None = None
    verification_method: str | None = None
    confidence: float | None = None
    proof_submission_id: str | None = None


class LedgerEntry(BaseModel):
    """Immutable record of one money movement inside an escrow account."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    type: LedgerEntryType
    amount: Decimal = Field(gt=0)
    description: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    external_reference: str | None = None


class EscrowFees(BaseModel):
    service_fee_percentage: Decimal = Decimal("2.5")
    service_fee_amount: Decimal = ZERO
    processing_fee: Decimal = ZERO
    total_fees: Decimal = ZERO
    fees_paid_by: FeesPaidBy = FeesPaidBy.BUYER


class EscrowAccount(Document):
    """Holding pool of funds for exactly one transaction.

    ``balance`` is always equal to the signed sum of ``ledger``; see
    domain/ledger.py for the arithmetic.
    """

    kind: Literal["escrow"] = "escrow"
    transaction_id: str
    balance: Decimal = ZERO
    currency: str = "USD"
    target_amount: Decimal
    funded_amount: Decimal = ZERO
    status: EscrowStatus = EscrowStatus.CREATED
    release_conditions: list[ReleaseCondition] = Field(default_factory=list)
    ledger: list[LedgerEntry] = Field(default_factory=list)
    fees: EscrowFees = Field(default_factory=EscrowFees)
    payment_method_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    funds_received_at: datetime | None = None
    funds_released_at: datetime | None = None

    @property
    def remaining_principal(self) -> Decimal:
        return max(self.target_amount - self.funded_amount, ZERO)

    def get_condition(self, condition_id: str) -> ReleaseCondition | None:
        for condition in self.release_conditions:
            if condition.id == condition_id:
                return condition
        return None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentFees(BaseModel):
    processing_fee: Decimal = ZERO
    platform_fee: Decimal = ZERO
    total_fees: Decimal = ZERO
    breakdown: dict[str, Decimal] = Field(default_factory=dict)
    buyer_share: Decimal = ZERO
    seller_share: Decimal = ZERO


class PaymentRecord(Document):
    """One settlement attempt. The id doubles as the gateway idempotency key.

    ``amount`` is what is sent to the gateway; ``principal`` is the part of
    it that counts towards the transaction amount (they differ only for
    deposits where the buyer carries some of the fees).
    """

    kind: Literal["payment"] = "payment"
    transaction_id: str
    escrow_account_id: str
    amount: Decimal = Field(gt=0)
    principal: Decimal = Field(gt=0)
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.PENDING
    payment_type: PaymentType
    payment_method_id: str | None = None
    gateway_reference: str | None = None
    failure_reason: str | None = None
    reason: str | None = None
    fees: PaymentFees | None = None
    attempts: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    processed_at: datetime | None = None


class CardDetails(BaseModel):
    kind: Literal["card"] = "card"
    last4: str = Field(min_length=4, max_length=4)
    brand: str
    expiry_month: int = Field(ge=1, le=12)
    expiry_year: int
    holder_name: str
    gateway_token_id: str | None = None


class BankDetails(BaseModel):
    kind: Literal["bank"] = "bank"
    account_number: str = Field(min_length=4)
    routing_number: str
    account_type: str = "checking"
    bank_name: str
    account_holder_name: str


class WalletDetails(BaseModel):
    kind: Literal["wallet"] = "wallet"
    wallet_type: str
    wallet_id: str
    email: str | None = None


PaymentMethodDetails = Annotated[
    CardDetails | BankDetails | WalletDetails,
    Field(discriminator="kind"),
]

_DETAIL_KIND_BY_METHOD: dict[PaymentMethodType, str] = {
    PaymentMethodType.CREDIT_CARD: "card",
    PaymentMethodType.DEBIT_CARD: "card",
    PaymentMethodType.BANK_TRANSFER: "bank",
}


class PaymentMethod(Document):
    """A stored funding instrument. Details are a tagged card/bank/wallet variant."""

    kind: Literal["paymentMethod"] = "paymentMethod"
    user_id: str
    method_type: PaymentMethodType
    details: PaymentMethodDetails
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    last_used_at: datetime | None = None

    @model_validator(mode="after")
    def _details_match_method_type(self) -> PaymentMethod:
        expected = _DETAIL_KIND_BY_METHOD.get(self.method_type, "wallet")
        if self.details.kind != expected:
            raise ValueError(
                f"{self.method_type} requires {expected} details, got {self.details.kind}"
            )
        return self

    @property
    def gateway_reference(self) -> str:
        """Opaque reference handed to the gateway when charging this method."""
        details = self.details
        if isinstance(details, CardDetails):
            return details.gateway_token_id or f"card_{details.brand.lower()}_{details.last4}"
        if isinstance(details, BankDetails):
            return f"bank_{details.account_number[-4:]}"
        if isinstance(details, WalletDetails):
            return f"wallet_{details.wallet_type.lower()}_{details.wallet_id}"
        raise ValueError(f"Unsupported payment method details: {self.details!r}")


# ---------------------------------------------------------------------------
# Proofs
# ---------------------------------------------------------------------------


class LocationData(BaseModel):
    latitude: float
    longitude: float
    accuracy: float | None = None
    address: str | None = None


class ProofMetadata(BaseModel):
    file_size: int = 0
    file_type: str = ""
    captured_at: datetime | None = None
    location: LocationData | None = None
    device_info: str | None = None
    checksum: str | None = None


class ProofSubmission(Document):
    """Delivery proof uploaded by the seller and judged by the external verifier."""

    kind: Literal["proof"] = "proof"
    transaction_id: str
    submitted_by: str
    verification_type: VerificationType
    title: str = ""
    description: str = ""
    file_urls: list[str] = Field(default_factory=list)
    metadata: ProofMetadata = Field(default_factory=ProofMetadata)
    status: ProofStatus = ProofStatus.SUBMITTED
    condition_id: str | None = None
    verification_result: dict | None = None
    submitted_at: datetime = Field(default_factory=_utcnow)
    verified_at: datetime | None = None
    rejection_reason: str | None = None
    requires_human_review: bool = False
