"""Domain layer — pure settlement rules with zero I/O."""

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
from paypledge.domain.exceptions import (
    ConcurrencyConflictError,
    EntityNotFoundError,
    GatewayFailureError,
    GatewayTimeoutError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    PayPledgeError,
    PersistenceError,
    ReleaseNotEligibleError,
    ValidationError,
)
from paypledge.domain.fees import FeeCalculator
from paypledge.domain.gateway_protocol import GatewayResult, PaymentGateway
from paypledge.domain.release_gate import GateDecision, VerificationGate
from paypledge.domain.state_machine import (
    EscrowStateMachine,
    TransactionStateMachine,
    fire_transition,
)
from paypledge.domain.verifier_protocol import ProofVerifier, VerificationResult

__all__ = [
    "EscrowStatus",
    "FeesPaidBy",
    "LedgerEntryType",
    "PaymentMethodType",
    "PaymentStatus",
    "PaymentType",
    "ProofStatus",
    "TransactionStatus",
    "VerificationType",
    "ConcurrencyConflictError",
    "EntityNotFoundError",
    "GatewayFailureError",
    "GatewayTimeoutError",
    "InsufficientFundsError",
    "InvalidStateTransitionError",
    "PayPledgeError",
    "PersistenceError",
    "ReleaseNotEligibleError",
    "ValidationError",
    "FeeCalculator",
    "GatewayResult",
    "PaymentGateway",
    "GateDecision",
    "VerificationGate",
    "EscrowStateMachine",
    "TransactionStateMachine",
    "fire_transition",
    "ProofVerifier",
    "VerificationResult",
]
