"""Settlement Orchestrator — the only code that moves money.

Coordinates the FeeCalculator, the PaymentGateway, the ledger arithmetic and
the two state machines for deposit, release and refund. Every operation
follows the same shape:

    lock(account) -> validate -> PaymentRecord(PROCESSING) -> gateway call
        -> ledger + status + record committed together -> unlock

Failure handling:
    - Validation errors are raised before the gateway is called; nothing
      is written.
    - A gateway decline marks the PaymentRecord FAILED; ledger and account
      are untouched and the record is returned.
    - A gateway timeout leaves the record PROCESSING and raises
      GatewayTimeoutError. ``reconcile`` (or a retry with the same key)
      asks the gateway what happened before doing anything else.
    - Lost optimistic-concurrency races are retried with a fresh read.

The PaymentRecord id is the idempotency key sent to the gateway, and every
ledger entry it produces carries that id as ``external_reference``.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paypledge.config import get_settings
from paypledge.domain import ledger
from paypledge.domain.enums import (
    EscrowStatus,
    LedgerEntryType,
    PaymentStatus,
    PaymentType,
    TransactionStatus,
)
from paypledge.domain.exceptions import (
    ConcurrencyConflictError,
    GatewayFailureError,
    GatewayTimeoutError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    PaymentInProgressError,
    ReleaseNotEligibleError,
    ValidationError,
)
from paypledge.domain.fees import FeeCalculator
from paypledge.domain.models import PaymentRecord
from paypledge.domain.state_machine import (
    EscrowStateMachine,
    TransactionStateMachine,
    can_fire,
    fire_transition,
)
from paypledge.infrastructure.locks import LocalAccountLocks
from paypledge.infrastructure.repositories import (
    EscrowRepository,
    PaymentMethodRepository,
    PaymentRepository,
    TransactionRepository,
    commit_entities,
)
from paypledge.logging_config import bind_settlement_context, get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from paypledge.config import Settings
    from paypledge.domain.gateway_protocol import GatewayResult, PaymentGateway
    from paypledge.domain.models import (
        Document,
        EscrowAccount,
        PaymentMethod,
        Transaction,
    )
    from paypledge.domain.store_protocol import DocumentStore
    from paypledge.infrastructure.locks import AccountLocks

    AccountMutation = Callable[[EscrowAccount, Transaction, datetime], Sequence[Document]]

logger = get_logger(__name__)

_DEPOSIT_ACCOUNT_STATES = (EscrowStatus.CREATED, EscrowStatus.AWAITING_FUNDS)
_RELEASE_ACCOUNT_STATES = (EscrowStatus.FUNDS_HELD, EscrowStatus.READY_FOR_RELEASE)
_REFUND_ACCOUNT_STATES = (
    EscrowStatus.AWAITING_FUNDS,
    EscrowStatus.FUNDS_HELD,
    EscrowStatus.READY_FOR_RELEASE,
    EscrowStatus.DISPUTED,
)


class SettlementOrchestrator:
    """Deposit, release, refund and reconcile against escrow accounts."""

    def __init__(
        self,
        store: DocumentStore,
        gateway: PaymentGateway,
        locks: AccountLocks | None = None,
        fee_calculator: FeeCalculator | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._gateway = gateway
        self._locks = locks or LocalAccountLocks()
        self._fees = fee_calculator or FeeCalculator(settings.platform_fee_rate)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._gateway_timeout = settings.gateway_timeout_seconds
        self._allow_partial_release = settings.allow_partial_release_without_eligibility
        self._max_conflict_retries = settings.max_conflict_retries
        self._conflict_wait = settings.conflict_retry_wait_seconds

        self._transactions = TransactionRepository(store)
        self._escrows = EscrowRepository(store)
        self._payments = PaymentRepository(store)
        self._methods = PaymentMethodRepository(store)

    @property
    def fee_calculator(self) -> FeeCalculator:
        return self._fees

    # ------------------------------------------------------------------
    # Deposit
    # ------------------------------------------------------------------

    async def deposit(
        self,
        transaction_id: str,
        payment_method_id: str,
        amount: Decimal,
        idempotency_key: str | None = None,
    ) -> PaymentRecord:
        """Charge the buyer and credit the escrow account.

        Returns the PaymentRecord: COMPLETED on success, FAILED on a gateway
        decline (ledger untouched).

        Raises:
            ValidationError: Bad amount, unknown/inactive method, or amount
                above the remaining principal.
            InvalidStateTransitionError: Transaction is not awaiting payment.
            GatewayTimeoutError: The gateway did not answer; record stays PROCESSING.
        """
        _require_positive(amount)
        transaction = await self._transactions.require(transaction_id)
        account_id = escrow_account_id_of(transaction)

        with bind_settlement_context(
            transaction_id=transaction_id,
            escrow_account_id=account_id,
            operation_id=idempotency_key,
        ):
            async with self._locks.hold(account_id):
                record = await self._existing(
                    idempotency_key, PaymentType.DEPOSIT, account_id, amount
                )
                if record is not None and record.status != PaymentStatus.FAILED:
                    return await self._resume(record)

                transaction = await self._transactions.require(transaction_id)
                account = await self._escrows.require(account_id)
                method = await self._methods.require(payment_method_id)
                self._check_deposit(transaction, account, method, amount)
                await self._ensure_nothing_pending(account_id, idempotency_key)

                if record is None:
                    fees = self._fees.allocate(
                        self._fees.calculate(amount, method.method_type, account.currency),
                        account.fees.fees_paid_by,
                        account.currency,
                    )
                    record = PaymentRecord(
                        id=idempotency_key or str(uuid.uuid4()),
                        transaction_id=transaction.id,
                        escrow_account_id=account.id,
                        amount=amount + fees.buyer_share,
                        principal=amount,
                        currency=account.currency,
                        status=PaymentStatus.PROCESSING,
                        payment_type=PaymentType.DEPOSIT,
                        payment_method_id=method.id,
                        reason=f"Escrow deposit for transaction {transaction.id}",
                        fees=fees,
                        created_at=self._clock(),
                    )
                    await self._payments.save(record)
                else:
                    await self._restart(record)

                logger.info(
                    "settlement.deposit_started",
                    payment_id=record.id,
                    charge=str(record.amount),
                    principal=str(record.principal),
                    attempts=record.attempts,
                )
                result = await self._call_gateway(record, method.gateway_reference)
                return await self._finish(record, result)

    def _check_deposit(
        self,
        transaction: Transaction,
        account: EscrowAccount,
        method: PaymentMethod,
        amount: Decimal,
    ) -> None:
        if transaction.status != TransactionStatus.AWAITING_PAYMENT:
            raise InvalidStateTransitionError(transaction.status, "deposit")
        if account.status not in _DEPOSIT_ACCOUNT_STATES:
            raise InvalidStateTransitionError(account.status, "deposit")
        if not method.is_active:
            raise ValidationError(f"Payment method {method.id} is inactive", "payment_method_id")
        if method.user_id != transaction.buyer_id:
            raise ValidationError(
                f"Payment method {method.id} does not belong to the buyer", "payment_method_id"
            )
        if amount > account.remaining_principal:
            raise ValidationError(
                f"Deposit {amount} exceeds the remaining principal {account.remaining_principal}",
                "amount",
            )

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(
        self,
        escrow_account_id: str,
        amount: Decimal,
        idempotency_key: str | None = None,
    ) -> PaymentRecord:
        """Pay ``amount`` out of escrow to the seller.

        A release of the whole balance moves the account to RELEASED and the
        transaction to COMPLETED.

        Raises:
            InvalidStateTransitionError: Account is not holding funds, or the
                transaction cannot complete yet.
            InsufficientFundsError: ``amount`` exceeds the balance.
            ReleaseNotEligibleError: Release conditions are not all met.
        """
        _require_positive(amount)
        account = await self._escrows.require(escrow_account_id)

        with bind_settlement_context(
            transaction_id=account.transaction_id,
            escrow_account_id=escrow_account_id,
            operation_id=idempotency_key,
        ):
            async with self._locks.hold(escrow_account_id):
                record = await self._existing(
                    idempotency_key, PaymentType.RELEASE, escrow_account_id, amount
                )
                if record is not None and record.status != PaymentStatus.FAILED:
                    return await self._resume(record)

                account = await self._escrows.require(escrow_account_id)
                transaction = await self._transactions.require(account.transaction_id)
                self._check_release(transaction, account, amount)
                await self._ensure_nothing_pending(escrow_account_id, idempotency_key)

                record = await self._open_payout(
                    record,
                    idempotency_key,
                    account,
                    PaymentType.RELEASE,
                    amount,
                    reason=f"Release to seller {transaction.seller_id}",
                )
                result = await self._call_gateway(record)
                return await self._finish(record, result)

    def _check_release(
        self, transaction: Transaction, account: EscrowAccount, amount: Decimal
    ) -> None:
        if account.status not in _RELEASE_ACCOUNT_STATES:
            raise InvalidStateTransitionError(account.status, "release")
        if amount > account.balance:
            raise InsufficientFundsError(required=str(amount), available=str(account.balance))

        full_release = amount == account.balance
        if (full_release or not self._allow_partial_release) and not ledger.can_release(account):
            raise ReleaseNotEligibleError(account.id, ledger.unmet_conditions(account))
        if full_release and not can_fire(TransactionStateMachine, transaction.status, "complete"):
            raise InvalidStateTransitionError(transaction.status, "complete")

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    async def refund(
        self,
        escrow_account_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: str | None = None,
    ) -> PaymentRecord:
        """Return ``amount`` from escrow to the buyer.

        A refund of the whole balance moves the account and the transaction
        to REFUNDED; a partial refund keeps both statuses.

        Raises:
            ValidationError: Missing reason.
            InvalidStateTransitionError: Account already released or not funded.
            InsufficientFundsError: ``amount`` exceeds the balance.
        """
        _require_positive(amount)
        if not reason or not reason.strip():
            raise ValidationError("A refund needs a reason", "reason")
        account = await self._escrows.require(escrow_account_id)

        with bind_settlement_context(
            transaction_id=account.transaction_id,
            escrow_account_id=escrow_account_id,
            operation_id=idempotency_key,
        ):
            async with self._locks.hold(escrow_account_id):
                record = await self._existing(
                    idempotency_key, PaymentType.REFUND, escrow_account_id, amount
                )
                if record is not None and record.status != PaymentStatus.FAILED:
                    return await self._resume(record)

                account = await self._escrows.require(escrow_account_id)
                transaction = await self._transactions.require(account.transaction_id)
                self._check_refund(transaction, account, amount)
                await self._ensure_nothing_pending(escrow_account_id, idempotency_key)

                record = await self._open_payout(
                    record, idempotency_key, account, PaymentType.REFUND, amount, reason=reason
                )
                result = await self._call_gateway(record)
                return await self._finish(record, result)

    @staticmethod
    def _check_refund(transaction: Transaction, account: EscrowAccount, amount: Decimal) -> None:
        if account.status not in _REFUND_ACCOUNT_STATES or account.balance <= 0:
            raise InvalidStateTransitionError(account.status, "refund")
        if amount > account.balance:
            raise InsufficientFundsError(required=str(amount), available=str(account.balance))
        if amount == account.balance and not can_fire(
            TransactionStateMachine, transaction.status, "refund"
        ):
            raise InvalidStateTransitionError(transaction.status, "refund")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, payment_id: str) -> PaymentRecord:
        """Resolve a PaymentRecord left PROCESSING by a gateway timeout.

        Asks the gateway for the outcome under the record's idempotency key;
        if the gateway never saw the key, the call is re-issued with it.
        Records in any other status are returned unchanged.
        """
        record = await self._payments.require(payment_id)
        with bind_settlement_context(
            transaction_id=record.transaction_id,
            escrow_account_id=record.escrow_account_id,
            operation_id=payment_id,
        ):
            async with self._locks.hold(record.escrow_account_id):
                record = await self._payments.require(payment_id)
                if record.status != PaymentStatus.PROCESSING:
                    return record
                return await self._reconcile_locked(record)

    # ------------------------------------------------------------------
    # Locked account updates (disputes, gate decisions, cancellation)
    # ------------------------------------------------------------------

    async def apply_locked(
        self, escrow_account_id: str, mutate: AccountMutation
    ) -> tuple[EscrowAccount, Transaction]:
        """Run ``mutate`` on fresh copies of an account and its transaction.

        ``mutate`` may change both and return further documents to commit
        with them. It is re-run from a fresh read if the commit loses a race,
        so it must only assign, never accumulate outside the documents.

        Raises:
            PaymentInProgressError: A payment on the account is still
                PROCESSING; it must be reconciled first.
        """
        async with self._locks.hold(escrow_account_id):
            await self._ensure_nothing_pending(escrow_account_id, None)
            async for attempt in self._conflict_retrying():
                with attempt:
                    account = await self._escrows.require(escrow_account_id)
                    transaction = await self._transactions.require(account.transaction_id)
                    now = self._clock()
                    extra = list(mutate(account, transaction, now))
                    ledger.assert_balanced(account)
                    account.updated_at = now
                    transaction.updated_at = now
                    await commit_entities(self._store, [account, transaction, *extra])
                    return account, transaction
        raise AssertionError("unreachable")  # pragma: no cover

    async def ensure_settled(self, escrow_account_id: str) -> None:
        """Raise PaymentInProgressError while a payment on the account is unresolved."""
        await self._ensure_nothing_pending(escrow_account_id, None)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _existing(
        self,
        idempotency_key: str | None,
        payment_type: PaymentType,
        escrow_account_id: str,
        principal: Decimal,
    ) -> PaymentRecord | None:
        if idempotency_key is None:
            return None
        record = await self._payments.get(idempotency_key)
        if record is None:
            return None
        if (
            record.payment_type != payment_type
            or record.escrow_account_id != escrow_account_id
            or record.principal != principal
        ):
            raise ValidationError(
                f"Idempotency key {idempotency_key} was already used for a different operation",
                "idempotency_key",
            )
        return record

    async def _resume(self, record: PaymentRecord) -> PaymentRecord:
        if record.status == PaymentStatus.PROCESSING:
            return await self._reconcile_locked(record)
        logger.info("settlement.replayed", payment_id=record.id, status=record.status)
        return record

    async def _restart(self, record: PaymentRecord) -> None:
        """Re-open a FAILED record for another gateway attempt under the same key."""
        record.status = PaymentStatus.PROCESSING
        record.attempts += 1
        record.failure_reason = None
        record.processed_at = None
        await self._payments.save(record)

    async def _open_payout(
        self,
        record: PaymentRecord | None,
        idempotency_key: str | None,
        account: EscrowAccount,
        payment_type: PaymentType,
        amount: Decimal,
        reason: str,
    ) -> PaymentRecord:
        if record is not None:
            await self._restart(record)
        else:
            record = PaymentRecord(
                id=idempotency_key or str(uuid.uuid4()),
                transaction_id=account.transaction_id,
                escrow_account_id=account.id,
                amount=amount,
                principal=amount,
                currency=account.currency,
                status=PaymentStatus.PROCESSING,
                payment_type=payment_type,
                payment_method_id=account.payment_method_id,
                reason=reason,
                created_at=self._clock(),
            )
            await self._payments.save(record)
        logger.info(
            "settlement.payout_started",
            payment_id=record.id,
            payment_type=payment_type,
            amount=str(amount),
            attempts=record.attempts,
        )
        return record

    async def _ensure_nothing_pending(self, escrow_account_id: str, own_key: str | None) -> None:
        pending = await self._payments.find(
            lambda body: body.get("escrow_account_id") == escrow_account_id
            and body.get("status") == PaymentStatus.PROCESSING.value
            and body.get("id") != own_key
        )
        if pending:
            raise PaymentInProgressError(pending[0].id)

    async def _reconcile_locked(self, record: PaymentRecord) -> PaymentRecord:
        result = await self._gateway.lookup(record.id)
        if result is None:
            logger.info("settlement.reissuing", payment_id=record.id)
            method_ref = None
            if record.payment_type == PaymentType.DEPOSIT and record.payment_method_id:
                method = await self._methods.require(record.payment_method_id)
                method_ref = method.gateway_reference
            result = await self._call_gateway(record, method_ref)
        else:
            logger.info("settlement.reconciled", payment_id=record.id, success=result.success)
        return await self._finish(record, result)

    async def _call_gateway(
        self, record: PaymentRecord, method_ref: str | None = None
    ) -> GatewayResult:
        if record.payment_type == PaymentType.DEPOSIT:
            call = self._gateway.charge(record.amount, method_ref or "", record.id)
        else:
            call = self._gateway.payout(record.amount, record.id)
        try:
            return await asyncio.wait_for(call, timeout=self._gateway_timeout)
        except TimeoutError as exc:
            logger.warning("settlement.gateway_timeout", payment_id=record.id)
            raise GatewayTimeoutError(record.id) from exc
        except Exception as exc:
            logger.error("settlement.gateway_error", payment_id=record.id, error=str(exc))
            raise GatewayFailureError(record.id, str(exc)) from exc

    async def _finish(self, record: PaymentRecord, result: GatewayResult) -> PaymentRecord:
        if not result.success:
            record.status = PaymentStatus.FAILED
            record.failure_reason = result.failure_reason or "declined by gateway"
            record.processed_at = self._clock()
            await self._payments.save(record)
            logger.warning(
                "settlement.gateway_declined",
                payment_id=record.id,
                payment_type=record.payment_type,
                reason=record.failure_reason,
            )
            return record

        async for attempt in self._conflict_retrying():
            with attempt:
                return await self._commit_success(record.id, result)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _commit_success(self, payment_id: str, result: GatewayResult) -> PaymentRecord:
        record = await self._payments.require(payment_id)
        if record.status == PaymentStatus.COMPLETED:
            return record

        account = await self._escrows.require(record.escrow_account_id)
        transaction = await self._transactions.require(record.transaction_id)
        now = self._clock()
        documents: list[Document] = [account, transaction, record]

        if record.payment_type == PaymentType.DEPOSIT:
            method = await self._apply_deposit(record, account, transaction, now)
            if method is not None:
                documents.append(method)
        elif record.payment_type == PaymentType.RELEASE:
            self._apply_release(record, account, transaction, now)
        else:
            self._apply_refund(record, account, transaction, now)

        ledger.assert_balanced(account)
        record.status = PaymentStatus.COMPLETED
        record.gateway_reference = result.gateway_reference
        record.processed_at = now
        if record.id not in transaction.payment_ids:
            transaction.payment_ids.append(record.id)
        account.updated_at = now
        transaction.updated_at = now

        await commit_entities(self._store, documents)
        logger.info(
            "settlement.completed",
            payment_id=record.id,
            payment_type=record.payment_type,
            amount=str(record.amount),
            balance=str(account.balance),
            escrow_status=account.status,
            transaction_status=transaction.status,
        )
        return record

    async def _apply_deposit(
        self,
        record: PaymentRecord,
        account: EscrowAccount,
        transaction: Transaction,
        now: datetime,
    ) -> PaymentMethod | None:
        ledger.append_entry(
            account,
            LedgerEntryType.DEPOSIT,
            record.amount,
            description=f"Deposit of {record.principal} {record.currency}",
            external_reference=record.id,
            now=now,
        )
        fees = record.fees
        if fees is not None and fees.total_fees > 0:
            ledger.append_entry(
                account,
                LedgerEntryType.FEE,
                fees.total_fees,
                description="Processing and platform fees",
                external_reference=record.id,
                now=now,
            )
            account.fees.processing_fee += fees.processing_fee
            account.fees.service_fee_amount += fees.platform_fee
            account.fees.total_fees += fees.total_fees
            account.fees.service_fee_percentage = self._fees.platform_fee_rate * 100

        account.funded_amount += record.principal
        account.payment_method_id = record.payment_method_id
        if account.funds_received_at is None:
            account.funds_received_at = now
        if account.status == EscrowStatus.CREATED:
            account.status = fire_transition(EscrowStateMachine, account.status, "open")

        if account.funded_amount >= account.target_amount:
            account.status = fire_transition(EscrowStateMachine, account.status, "funds_secured")
            if ledger.can_release(account):
                account.status = fire_transition(
                    EscrowStateMachine, account.status, "conditions_met"
                )
            transaction.status = fire_transition(
                TransactionStateMachine, transaction.status, "payment_received"
            )

        if record.payment_method_id is None:
            return None
        method = await self._methods.get(record.payment_method_id)
        if method is not None:
            method.last_used_at = now
        return method

    @staticmethod
    def _apply_release(
        record: PaymentRecord,
        account: EscrowAccount,
        transaction: Transaction,
        now: datetime,
    ) -> None:
        ledger.append_entry(
            account,
            LedgerEntryType.RELEASE,
            record.amount,
            description=record.reason or "Release to seller",
            external_reference=record.id,
            now=now,
        )
        if account.balance == 0:
            account.status = fire_transition(EscrowStateMachine, account.status, "fully_released")
            account.funds_released_at = now
            transaction.status = fire_transition(
                TransactionStateMachine, transaction.status, "complete"
            )
            transaction.completed_at = now

    @staticmethod
    def _apply_refund(
        record: PaymentRecord,
        account: EscrowAccount,
        transaction: Transaction,
        now: datetime,
    ) -> None:
        ledger.append_entry(
            account,
            LedgerEntryType.REFUND,
            record.amount,
            description=record.reason or "Refund to buyer",
            external_reference=record.id,
            now=now,
        )
        transaction.refund_amount = (transaction.refund_amount or Decimal("0")) + record.amount
        if account.balance == 0:
            account.status = fire_transition(EscrowStateMachine, account.status, "fully_refunded")
            transaction.status = fire_transition(
                TransactionStateMachine, transaction.status, "refund"
            )
            transaction.completed_at = now

    def _conflict_retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(ConcurrencyConflictError),
            stop=stop_after_attempt(self._max_conflict_retries),
            wait=wait_exponential(multiplier=self._conflict_wait, max=1),
            reraise=True,
        )


def _require_positive(amount: Decimal) -> None:
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}", "amount")


def escrow_account_id_of(transaction: Transaction) -> str:
    if transaction.escrow_account_id is None:
        raise ValidationError(
            f"Transaction {transaction.id} has no escrow account", "escrow_account_id"
        )
    return transaction.escrow_account_id
