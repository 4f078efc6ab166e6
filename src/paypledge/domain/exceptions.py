"""Domain exceptions for the PayPledge settlement engine.

These exceptions are framework-agnostic and represent business rule violations.
Every operation either commits fully or raises one of these with no state
changed, except where noted on GatewayFailureError.
"""


class PayPledgeError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "PAYPLEDGE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Caller Errors ---


class ValidationError(PayPledgeError):
    """Raised for bad input: non-positive amounts, inactive payment methods, etc."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message=message, code="VALIDATION_ERROR")
        self.field = field


class EntityNotFoundError(ValidationError):
    """Raised when a referenced document does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(message=f"{kind} not found: {entity_id}")
        self.code = "ENTITY_NOT_FOUND"
        self.kind = kind
        self.entity_id = entity_id


# --- State Machine Errors ---


class InvalidStateTransitionError(PayPledgeError):
    """Raised when an operation is not legal from the current status.

    Example: refund on an escrow that has already been RELEASED.
    """

    def __init__(self, current_state: str, attempted: str) -> None:
        super().__init__(
            message=f"Invalid state transition: {attempted} is not allowed from {current_state}",
            code="INVALID_STATE_TRANSITION",
        )
        self.current_state = current_state
        self.attempted = attempted


# --- Ledger Errors ---


class InsufficientFundsError(PayPledgeError):
    """Raised when a release or refund exceeds the escrow balance."""

    def __init__(self, required: str, available: str) -> None:
        super().__init__(
            message=f"Insufficient funds: required {required}, available {available}",
            code="INSUFFICIENT_FUNDS",
        )
        self.required = required
        self.available = available


class ReleaseNotEligibleError(PayPledgeError):
    """Raised when funds are released before every release condition is met."""

    def __init__(self, escrow_account_id: str, unmet: list[str] | None = None) -> None:
        unmet = unmet or []
        detail = f" (unmet: {', '.join(unmet)})" if unmet else ""
        super().__init__(
            message=f"Escrow {escrow_account_id} is not eligible for release{detail}",
            code="RELEASE_NOT_ELIGIBLE",
        )
        self.escrow_account_id = escrow_account_id
        self.unmet = unmet


class LedgerIntegrityError(PayPledgeError):
    """Raised when a ledger no longer reconciles with its recorded balance."""

    def __init__(self, escrow_account_id: str, recorded: str, computed: str) -> None:
        super().__init__(
            message=(
                f"Ledger of escrow {escrow_account_id} does not reconcile: "
                f"recorded {recorded}, computed {computed}"
            ),
            code="LEDGER_INTEGRITY_ERROR",
        )


# --- Persistence Errors ---


class ConcurrencyConflictError(PayPledgeError):
    """Raised when a versioned write loses a race. Retry with a fresh read."""

    def __init__(self, document_id: str, expected_version: int | None) -> None:
        super().__init__(
            message=(
                f"Concurrent modification of document {document_id} "
                f"(expected version {expected_version})"
            ),
            code="CONCURRENCY_CONFLICT",
        )
        self.document_id = document_id
        self.expected_version = expected_version


class PersistenceError(PayPledgeError):
    """Raised when the document store is unavailable. Nothing was written."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="PERSISTENCE_ERROR")


# --- Gateway Errors ---


class GatewayFailureError(PayPledgeError):
    """Raised when the payment gateway declined an operation.

    The Failed PaymentRecord is kept; retrying with the same idempotency
    key is safe.
    """

    def __init__(self, payment_id: str, reason: str | None = None) -> None:
        super().__init__(
            message=f"Payment {payment_id} failed: {reason or 'unknown gateway error'}",
            code="GATEWAY_FAILURE",
        )
        self.payment_id = payment_id
        self.reason = reason


class GatewayTimeoutError(GatewayFailureError):
    """Raised when the gateway did not answer in time. The outcome is unknown."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(payment_id=payment_id, reason="gateway timed out")
        self.code = "GATEWAY_TIMEOUT"


class PaymentInProgressError(GatewayFailureError):
    """Raised when a previous attempt under the same key is still unresolved."""

    def __init__(self, payment_id: str) -> None:
        super().__init__(payment_id=payment_id, reason="previous attempt still processing")
        self.code = "PAYMENT_IN_PROGRESS"
