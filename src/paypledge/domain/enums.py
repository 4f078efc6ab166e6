"""Domain enumerations for the PayPledge settlement engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic and are stored verbatim in documents.
"""

import enum


class TransactionStatus(enum.StrEnum):
    """Lifecycle states of a buyer/seller transaction.

    Transitions are guarded by TransactionStateMachine.
    See domain/state_machine.py for the transition table.
    """

    CREATED = "CREATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_PROOF = "AWAITING_PROOF"
    UNDER_REVIEW = "UNDER_REVIEW"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of the escrow account backing a transaction."""

    CREATED = "CREATED"
    AWAITING_FUNDS = "AWAITING_FUNDS"
    FUNDS_HELD = "FUNDS_HELD"
    READY_FOR_RELEASE = "READY_FOR_RELEASE"
    RELEASED = "RELEASED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class LedgerEntryType(enum.StrEnum):
    """Kinds of money movement recorded in an escrow ledger."""

    DEPOSIT = "DEPOSIT"
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    FEE = "FEE"
    DISPUTE = "DISPUTE"
    PARTIAL_RELEASE = "PARTIAL_RELEASE"
    PARTIAL_REFUND = "PARTIAL_REFUND"


class PaymentStatus(enum.StrEnum):
    """Status of a single settlement attempt against the gateway."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    DISPUTED = "DISPUTED"
    CHARGED_BACK = "CHARGED_BACK"


class PaymentType(enum.StrEnum):
    DEPOSIT = "DEPOSIT"
    RELEASE = "RELEASE"
    REFUND = "REFUND"
    FEE = "FEE"
    CHARGEBACK = "CHARGEBACK"


class PaymentMethodType(enum.StrEnum):
    """Payment instruments a buyer can fund an escrow with.

    The processing fee rate is keyed by this value (see domain/fees.py).
    """

    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    PAYPAL = "PAYPAL"
    APPLE_PAY = "APPLE_PAY"
    GOOGLE_PAY = "GOOGLE_PAY"
    CRYPTOCURRENCY = "CRYPTOCURRENCY"
    DIGITAL_WALLET = "DIGITAL_WALLET"


class FeesPaidBy(enum.StrEnum):
    """Which party bears the deposit fees."""

    BUYER = "buyer"
    SELLER = "seller"
    SPLIT = "split"


class VerificationType(enum.StrEnum):
    """Kinds of delivery proof a release condition can require."""

    PHOTO = "PHOTO"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"
    RECEIPT = "RECEIPT"
    SIGNATURE = "SIGNATURE"
    LOCATION = "LOCATION"
    TIMESTAMP = "TIMESTAMP"


class ProofStatus(enum.StrEnum):
    """Review state of a proof submission.

    VERIFIED, REJECTED and REQUIRES_REVIEW are also the three outcomes
    the VerificationGate can signal for a judged proof.
    """

    SUBMITTED = "SUBMITTED"
    PROCESSING = "PROCESSING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"
    RESUBMITTED = "RESUBMITTED"


class DocumentKind(enum.StrEnum):
    """Document type tags used by the document store."""

    TRANSACTION = "transaction"
    ESCROW = "escrow"
    PAYMENT = "payment"
    PAYMENT_METHOD = "paymentMethod"
    PROOF = "proof"
