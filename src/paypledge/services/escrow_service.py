"""Escrow Service — the public facade of the settlement engine.

This is the application layer that coordinates between:
    - Domain state machines (transition guards)
    - SettlementOrchestrator (every money movement)
    - VerificationService (proofs and the release gate)
    - Repositories (document access)

Anything that sits in front of the engine (HTTP controllers, CLIs, the
simulation) calls into this service, ensuring a single source of truth for
all business rules.
"""

from __future__ import annotations

import random
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal

import pydantic

from paypledge.config import get_settings
from paypledge.domain import ledger
from paypledge.domain.enums import (
    EscrowStatus,
    LedgerEntryType,
    PaymentStatus,
    TransactionStatus,
)
from paypledge.domain.exceptions import (
    GatewayFailureError,
    InvalidStateTransitionError,
    ValidationError,
)
from paypledge.domain.models import (
    EscrowAccount,
    EscrowFees,
    PaymentMethod,
    Transaction,
)
from paypledge.domain.release_gate import conditions_from_terms, mark_condition_met
from paypledge.domain.state_machine import (
    EscrowStateMachine,
    TransactionStateMachine,
    fire_transition,
)
from paypledge.gateways import GatewayFactory
from paypledge.infrastructure.locks import LocalAccountLocks, RedisAccountLocks
from paypledge.infrastructure.repositories import (
    EscrowRepository,
    PaymentMethodRepository,
    PaymentRepository,
    ProofRepository,
    TransactionRepository,
    commit_entities,
)
from paypledge.logging_config import bind_settlement_context, get_logger
from paypledge.schemas.transaction import PartySummary, TransactionView
from paypledge.services.settlement_orchestrator import (
    SettlementOrchestrator,
    escrow_account_id_of,
)
from paypledge.services.verification_service import VerificationService
from paypledge.verifiers import VerifierFactory

if TYPE_CHECKING:
    from collections.abc import Callable

    from paypledge.config import Settings
    from paypledge.domain.enums import PaymentMethodType
    from paypledge.domain.fees import FeeCalculator
    from paypledge.domain.gateway_protocol import PaymentGateway
    from paypledge.domain.models import PaymentRecord, ProofSubmission
    from paypledge.domain.release_gate import GateDecision, VerificationGate
    from paypledge.domain.store_protocol import DocumentStore
    from paypledge.domain.verifier_protocol import ProofVerifier
    from paypledge.infrastructure.locks import AccountLocks
    from paypledge.schemas.transaction import CreateTransactionRequest, SubmitProofRequest

logger = get_logger(__name__)

_TERMINAL_TRANSACTION_STATES = frozenset(
    {TransactionStatus.COMPLETED, TransactionStatus.CANCELLED, TransactionStatus.REFUNDED}
)


class EscrowService:
    """Manages the transaction lifecycle end to end."""

    def __init__(
        self,
        store: DocumentStore,
        gateway: PaymentGateway,
        verifier: ProofVerifier,
        locks: AccountLocks | None = None,
        settings: Settings | None = None,
        fee_calculator: FeeCalculator | None = None,
        gate: VerificationGate | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))
        self._orchestrator = SettlementOrchestrator(
            store,
            gateway,
            locks=locks,
            fee_calculator=fee_calculator,
            settings=self._settings,
            clock=self._clock,
        )
        self._verification = VerificationService(
            store,
            verifier,
            self._orchestrator,
            gate=gate,
            settings=self._settings,
            clock=self._clock,
        )

        self._transactions = TransactionRepository(store)
        self._escrows = EscrowRepository(store)
        self._payments = PaymentRepository(store)
        self._methods = PaymentMethodRepository(store)
        self._proofs = ProofRepository(store)

    @classmethod
    def from_settings(
        cls,
        store: DocumentStore,
        settings: Settings | None = None,
        rng: random.Random | None = None,
        redis: Any = None,
    ) -> EscrowService:
        """Wire the configured gateway, verifier and lock backends.

        ``rng`` seeds the simulated gateway and verifier; ``redis`` is the
        client used when ``lock_backend`` is "redis".
        """
        settings = settings or get_settings()
        rng = rng or random.Random()

        verifier_config: dict[str, Any] = {"type": settings.verifier_backend}
        if settings.verifier_backend == "simulated":
            verifier_config["rng"] = random.Random(rng.getrandbits(64))

        locks: AccountLocks
        if settings.lock_backend == "redis":
            if redis is None:
                from paypledge.infrastructure.redis_client import get_redis

                redis = get_redis(settings)
            locks = RedisAccountLocks(
                redis,
                timeout=settings.lock_timeout_seconds,
                blocking_timeout=settings.lock_blocking_timeout_seconds,
            )
        else:
            locks = LocalAccountLocks()

        return cls(
            store,
            gateway=GatewayFactory.create(settings, rng=random.Random(rng.getrandbits(64))),
            verifier=VerifierFactory.create(verifier_config),
            locks=locks,
            settings=settings,
        )

    @property
    def orchestrator(self) -> SettlementOrchestrator:
        return self._orchestrator

    # ------------------------------------------------------------------
    # Transaction creation
    # ------------------------------------------------------------------

    async def create_transaction(self, request: CreateTransactionRequest) -> Transaction:
        """Create a Transaction and its zero-balance EscrowAccount together.

        Both leave CREATED immediately: the transaction is AWAITING_PAYMENT
        and the account AWAITING_FUNDS when this returns.
        """
        now = self._clock()
        currency = (request.currency or self._settings.default_currency).upper()
        fees_paid_by = request.fees_paid_by or self._settings.default_fees_paid_by

        transaction = Transaction(
            buyer_id=request.buyer_id,
            seller_id=request.seller_id,
            title=request.title,
            description=request.description,
            amount=request.amount,
            currency=currency,
            terms=request.terms,
            expected_delivery_date=request.expected_delivery_date,
            created_at=now,
            updated_at=now,
        )
        account = EscrowAccount(
            transaction_id=transaction.id,
            currency=currency,
            target_amount=request.amount,
            release_conditions=conditions_from_terms(request.terms),
            fees=EscrowFees(
                service_fee_percentage=self._orchestrator.fee_calculator.platform_fee_rate * 100,
                fees_paid_by=fees_paid_by,
            ),
            created_at=now,
            updated_at=now,
        )
        transaction.escrow_account_id = account.id
        transaction.status = fire_transition(
            TransactionStateMachine, transaction.status, "open_for_payment"
        )
        account.status = fire_transition(EscrowStateMachine, account.status, "open")

        await commit_entities(self._store, [transaction, account])
        logger.info(
            "transaction.created",
            transaction_id=transaction.id,
            escrow_account_id=account.id,
            amount=str(transaction.amount),
            currency=currency,
            conditions=len(account.release_conditions),
        )
        return transaction

    # ------------------------------------------------------------------
    # Payment methods
    # ------------------------------------------------------------------

    async def register_payment_method(
        self,
        user_id: str,
        method_type: PaymentMethodType,
        details: dict[str, Any],
        is_default: bool = False,
    ) -> PaymentMethod:
        """Store a card, bank account or wallet for ``user_id``.

        Registering a default method clears the flag on the user's others.
        """
        try:
            method = PaymentMethod(
                user_id=user_id,
                method_type=method_type,
                details=details,
                is_default=is_default,
                created_at=self._clock(),
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid payment method: {exc}", "details") from exc

        documents: list[PaymentMethod] = [method]
        if is_default:
            for other in await self._methods.list_for_user(user_id):
                if other.is_default:
                    other.is_default = False
                    documents.append(other)
        await commit_entities(self._store, documents)

        logger.info(
            "payment_method.registered",
            payment_method_id=method.id,
            user_id=user_id,
            method_type=method_type,
        )
        return method

    # ------------------------------------------------------------------
    # Money movements
    # ------------------------------------------------------------------

    async def deposit(
        self,
        transaction_id: str,
        payment_method_id: str,
        amount: Decimal,
        idempotency_key: str | None = None,
    ) -> PaymentRecord:
        """Fund the escrow. Raises GatewayFailureError if the charge was declined."""
        record = await self._orchestrator.deposit(
            transaction_id, payment_method_id, amount, idempotency_key
        )
        return _raise_if_failed(record)

    async def release(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentRecord:
        """Pay the seller; the whole balance when ``amount`` is omitted."""
        account = await self._account_for(transaction_id)
        record = await self._orchestrator.release(
            account.id, amount if amount is not None else account.balance, idempotency_key
        )
        return _raise_if_failed(record)

    async def refund(
        self,
        transaction_id: str,
        reason: str,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentRecord:
        """Return funds to the buyer; the whole balance when ``amount`` is omitted."""
        account = await self._account_for(transaction_id)
        record = await self._orchestrator.refund(
            account.id,
            amount if amount is not None else account.balance,
            reason,
            idempotency_key,
        )
        return _raise_if_failed(record)

    async def reconcile(self, payment_id: str) -> PaymentRecord:
        return await self._orchestrator.reconcile(payment_id)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def start_work(self, transaction_id: str, seller_id: str) -> Transaction:
        """Seller acknowledges payment and starts delivery."""
        transaction = await self._transactions.require(transaction_id)
        if seller_id != transaction.seller_id:
            raise ValidationError("Only the seller can start work", "seller_id")
        transaction.status = fire_transition(
            TransactionStateMachine, transaction.status, "start_work"
        )
        transaction.updated_at = self._clock()
        await self._transactions.save(transaction)
        logger.info("transaction.work_started", transaction_id=transaction_id)
        return transaction

    async def submit_proof(
        self, request: SubmitProofRequest
    ) -> tuple[ProofSubmission, GateDecision]:
        return await self._verification.submit_proof(request)

    async def review_proof(
        self,
        transaction_id: str,
        proof_id: str,
        approved: bool,
        reviewer_id: str,
        notes: str | None = None,
    ) -> tuple[ProofSubmission, GateDecision]:
        return await self._verification.review_proof(
            transaction_id, proof_id, approved, reviewer_id, notes
        )

    # ------------------------------------------------------------------
    # Disputes and cancellation
    # ------------------------------------------------------------------

    async def dispute(self, transaction_id: str, raised_by: str, reason: str) -> Transaction:
        """Freeze a funded transaction pending resolution.

        Records a DISPUTE ledger marker for the amount at stake; no money moves.
        """
        if not reason or not reason.strip():
            raise ValidationError("A dispute needs a reason", "reason")
        transaction = await self._transactions.require(transaction_id)
        if not transaction.is_party(raised_by):
            raise ValidationError("Only a party to the transaction can dispute it", "raised_by")

        def mutate(
            account: EscrowAccount, transaction: Transaction, now: datetime
        ) -> list[Any]:
            transaction.status = fire_transition(
                TransactionStateMachine, transaction.status, "dispute"
            )
            account.status = fire_transition(EscrowStateMachine, account.status, "dispute")
            transaction.dispute_reason = reason
            if account.balance > 0:
                ledger.append_entry(
                    account,
                    LedgerEntryType.DISPUTE,
                    account.balance,
                    description=f"Dispute raised by {raised_by}: {reason}",
                    now=now,
                )
            return []

        with bind_settlement_context(transaction_id=transaction_id):
            account, updated = await self._orchestrator.apply_locked(
                escrow_account_id_of(transaction), mutate
            )
            logger.warning(
                "transaction.disputed",
                raised_by=raised_by,
                amount_at_stake=str(account.balance),
            )
        return updated

    async def resolve_dispute(
        self,
        transaction_id: str,
        in_favor_of: Literal["seller", "buyer"],
        resolved_by: str,
        idempotency_key: str | None = None,
    ) -> PaymentRecord:
        """Settle a DISPUTED transaction one way or the other.

        In favour of the seller every open condition is marked met by
        "dispute_resolution" and the whole balance is released; in favour of
        the buyer the whole balance is refunded.
        """
        transaction = await self._transactions.require(transaction_id)
        if transaction.status != TransactionStatus.DISPUTED:
            raise InvalidStateTransitionError(transaction.status, "resolve_dispute")
        account_id = escrow_account_id_of(transaction)

        with bind_settlement_context(transaction_id=transaction_id, escrow_account_id=account_id):
            logger.info(
                "transaction.dispute_resolving",
                in_favor_of=in_favor_of,
                resolved_by=resolved_by,
            )
            if in_favor_of == "buyer":
                account = await self._escrows.require(account_id)
                record = await self._orchestrator.refund(
                    account_id,
                    account.balance,
                    f"Dispute resolved in favor of buyer by {resolved_by}",
                    idempotency_key,
                )
                return _raise_if_failed(record)

            if in_favor_of != "seller":
                raise ValidationError(
                    f"in_favor_of must be 'seller' or 'buyer', got {in_favor_of!r}",
                    "in_favor_of",
                )

            def mutate(
                account: EscrowAccount, transaction: Transaction, now: datetime
            ) -> list[Any]:
                for condition in account.release_conditions:
                    if not condition.is_met:
                        mark_condition_met(condition, method="dispute_resolution", now=now)
                if account.status == EscrowStatus.DISPUTED:
                    account.status = fire_transition(
                        EscrowStateMachine, account.status, "conditions_met"
                    )
                return []

            account, _ = await self._orchestrator.apply_locked(account_id, mutate)
            record = await self._orchestrator.release(
                account_id, account.balance, idempotency_key
            )
            return _raise_if_failed(record)

    async def cancel_transaction(
        self, transaction_id: str, reason: str, cancelled_by: str | None = None
    ) -> Transaction:
        """Cancel a transaction before any funds were captured."""
        transaction = await self._transactions.require(transaction_id)

        def mutate(
            account: EscrowAccount, transaction: Transaction, now: datetime
        ) -> list[Any]:
            if account.funded_amount > 0 or account.balance > 0:
                raise ValidationError(
                    "Cannot cancel a transaction that has captured funds; refund it instead",
                    "transaction_id",
                )
            transaction.status = fire_transition(
                TransactionStateMachine, transaction.status, "cancel"
            )
            account.status = fire_transition(EscrowStateMachine, account.status, "cancel")
            transaction.cancellation_reason = reason
            transaction.completed_at = now
            return []

        with bind_settlement_context(transaction_id=transaction_id):
            _, updated = await self._orchestrator.apply_locked(
                escrow_account_id_of(transaction), mutate
            )
            logger.info("transaction.cancelled", cancelled_by=cancelled_by, reason=reason)
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_transaction_view(self, transaction_id: str) -> TransactionView:
        transaction = await self._transactions.require(transaction_id)
        account = await self._escrows.require(escrow_account_id_of(transaction))
        payments = await self._payments.list_for_transaction(transaction_id)
        proofs = await self._proofs.list_for_transaction(transaction_id)
        return TransactionView(
            transaction=transaction,
            escrow=account,
            payments=payments,
            proofs=proofs,
            can_release=ledger.can_release(account),
            unmet_conditions=ledger.unmet_conditions(account),
            allowed_events=TransactionStateMachine(
                current_status=transaction.status
            ).get_allowed_events(),
        )

    async def list_payments(self, transaction_id: str) -> list[PaymentRecord]:
        await self._transactions.require(transaction_id)
        return await self._payments.list_for_transaction(transaction_id)

    async def list_transactions_for_party(self, user_id: str) -> list[Transaction]:
        return await self._transactions.list_for_party(user_id)

    async def get_party_summary(self, user_id: str) -> PartySummary:
        """Dashboard counters for ``user_id`` as buyer or seller."""
        transactions = await self._transactions.list_for_party(user_id)
        summary = PartySummary(user_id=user_id, total_transactions=len(transactions))
        for transaction in transactions:
            if transaction.buyer_id == user_id:
                summary.as_buyer += 1
            else:
                summary.as_seller += 1

            if transaction.status == TransactionStatus.COMPLETED:
                summary.completed += 1
                summary.volume_completed += transaction.amount
            elif transaction.status == TransactionStatus.REFUNDED:
                summary.refunded += 1
            elif transaction.status == TransactionStatus.DISPUTED:
                summary.disputed += 1

            if transaction.status not in _TERMINAL_TRANSACTION_STATES:
                summary.active += 1
                if transaction.escrow_account_id is not None:
                    account = await self._escrows.get(transaction.escrow_account_id)
                    if account is not None:
                        summary.amount_held += account.balance
        return summary

    async def _account_for(self, transaction_id: str) -> EscrowAccount:
        transaction = await self._transactions.require(transaction_id)
        return await self._escrows.require(escrow_account_id_of(transaction))


def _raise_if_failed(record: PaymentRecord) -> PaymentRecord:
    if record.status == PaymentStatus.FAILED:
        raise GatewayFailureError(record.id, record.failure_reason)
    return record
