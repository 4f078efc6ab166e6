"""Tests for the SettlementOrchestrator.

Covers the four reference settlements (deposit with fees, gated release,
partial refund, declined deposit), idempotent retries, timeout
reconciliation and concurrent access to one escrow account.
"""

from __future__ import annotations

import asyncio
import random
from decimal import Decimal
from typing import TYPE_CHECKING

import pytest

from paypledge.domain import ledger
from paypledge.domain.enums import (
    EscrowStatus,
    FeesPaidBy,
    LedgerEntryType,
    PaymentMethodType,
    PaymentStatus,
    PaymentType,
    TransactionStatus,
    VerificationType,
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
from paypledge.domain.gateway_protocol import PaymentGateway
from paypledge.domain.verifier_protocol import ProofVerifier
from paypledge.infrastructure.memory_store import InMemoryDocumentStore
from paypledge.infrastructure.repositories import (
    EscrowRepository,
    PaymentMethodRepository,
    PaymentRepository,
    ProofRepository,
    TransactionRepository,
)
from paypledge.schemas.transaction import SubmitProofRequest
from paypledge.services.escrow_service import EscrowService

if TYPE_CHECKING:
    from collections.abc import Sequence

    from paypledge.domain.models import EscrowAccount, Transaction
    from paypledge.domain.store_protocol import DocumentWrite


async def _account(store: InMemoryDocumentStore, account_id: str) -> EscrowAccount:
    return await EscrowRepository(store).require(account_id)


async def _transaction(store: InMemoryDocumentStore, transaction_id: str) -> Transaction:
    return await TransactionRepository(store).require(transaction_id)


async def _prove_delivery(
    service: EscrowService, store: InMemoryDocumentStore, transaction_id: str
) -> None:
    """Seller starts work and submits a photo the default verifier accepts."""
    seller_id = (await _transaction(store, transaction_id)).seller_id
    await service.start_work(transaction_id, seller_id)
    await service.submit_proof(
        SubmitProofRequest(
            transaction_id=transaction_id,
            submitted_by=seller_id,
            verification_type=VerificationType.PHOTO,
            file_urls=["https://cdn.example/parcel.jpg"],
        )
    )


class TestDeposit:
    @pytest.mark.asyncio
    async def test_card_deposit_with_buyer_paid_fees(
        self, service, store, gateway, open_transaction
    ) -> None:
        transaction, method = await open_transaction(Decimal("100.00"))

        record = await service.orchestrator.deposit(transaction.id, method.id, Decimal("100.00"))

        assert record.status == PaymentStatus.COMPLETED
        assert record.fees is not None
        assert record.fees.processing_fee == Decimal("2.90")
        assert record.fees.platform_fee == Decimal("2.50")
        assert record.amount == Decimal("105.40")
        assert record.principal == Decimal("100.00")
        assert gateway.calls == [("charge", record.id, Decimal("105.40"))]

        account = await _account(store, transaction.escrow_account_id)
        assert account.status == EscrowStatus.FUNDS_HELD
        assert account.balance == Decimal("100.00")
        assert account.funded_amount == Decimal("100.00")
        assert [(e.type, e.amount) for e in account.ledger] == [
            (LedgerEntryType.DEPOSIT, Decimal("105.40")),
            (LedgerEntryType.FEE, Decimal("5.40")),
        ]
        assert all(e.external_reference == record.id for e in account.ledger)
        assert account.fees.total_fees == Decimal("5.40")
        assert account.payment_method_id == method.id
        assert account.funds_received_at is not None

        updated = await _transaction(store, transaction.id)
        assert updated.status == TransactionStatus.PAYMENT_RECEIVED
        assert updated.payment_ids == [record.id]

        used = await PaymentMethodRepository(store).require(method.id)
        assert used.last_used_at is not None

    @pytest.mark.asyncio
    async def test_seller_paid_fees_come_out_of_the_balance(
        self, service, store, open_transaction
    ) -> None:
        transaction, method = await open_transaction(fees_paid_by=FeesPaidBy.SELLER)
        record = await service.deposit(transaction.id, method.id, Decimal("100.00"))

        assert record.amount == Decimal("100.00")
        account = await _account(store, transaction.escrow_account_id)
        assert account.balance == Decimal("94.60")
        assert account.status == EscrowStatus.FUNDS_HELD

    @pytest.mark.asyncio
    async def test_split_fees(self, service, store, open_transaction) -> None:
        transaction, method = await open_transaction(fees_paid_by=FeesPaidBy.SPLIT)
        record = await service.deposit(transaction.id, method.id, Decimal("100.00"))

        assert record.amount == Decimal("102.70")
        account = await _account(store, transaction.escrow_account_id)
        assert account.balance == Decimal("97.30")

    @pytest.mark.asyncio
    async def test_bank_transfer_rate(self, service, store, open_transaction) -> None:
        transaction, method = await open_transaction(method_type=PaymentMethodType.BANK_TRANSFER)
        record = await service.deposit(transaction.id, method.id, Decimal("100.00"))
        assert record.fees is not None
        assert record.fees.processing_fee == Decimal("1.00")
        assert record.amount == Decimal("103.50")

    @pytest.mark.asyncio
    async def test_declined_deposit_leaves_account_untouched(
        self, service, store, gateway, open_transaction
    ) -> None:
        transaction, method = await open_transaction(Decimal("50.00"))
        gateway.script = ["decline"]

        record = await service.orchestrator.deposit(transaction.id, method.id, Decimal("50.00"))

        assert record.status == PaymentStatus.FAILED
        assert record.failure_reason == "card_declined"
        account = await _account(store, transaction.escrow_account_id)
        assert account.balance == Decimal("0")
        assert account.ledger == []
        assert account.status == EscrowStatus.AWAITING_FUNDS
        assert (await _transaction(store, transaction.id)).status == (
            TransactionStatus.AWAITING_PAYMENT
        )

    @pytest.mark.asyncio
    async def test_facade_raises_on_decline(self, service, gateway, open_transaction) -> None:
        transaction, method = await open_transaction()
        gateway.script = ["decline"]
        with pytest.raises(GatewayFailureError) as exc_info:
            await service.deposit(transaction.id, method.id, Decimal("100.00"))
        assert exc_info.value.reason == "card_declined"

    @pytest.mark.asyncio
    async def test_instalments_fund_the_account(self, service, store, open_transaction) -> None:
        transaction, method = await open_transaction()

        await service.deposit(transaction.id, method.id, Decimal("60.00"))
        account = await _account(store, transaction.escrow_account_id)
        assert account.status == EscrowStatus.AWAITING_FUNDS
        assert account.remaining_principal == Decimal("40.00")

        await service.deposit(transaction.id, method.id, Decimal("40.00"))
        account = await _account(store, transaction.escrow_account_id)
        assert account.status == EscrowStatus.FUNDS_HELD
        assert account.balance == Decimal("100.00")
        assert (await _transaction(store, transaction.id)).status == (
            TransactionStatus.PAYMENT_RECEIVED
        )

    @pytest.mark.asyncio
    async def test_over_deposit_rejected(self, service, gateway, open_transaction) -> None:
        transaction, method = await open_transaction()
        with pytest.raises(ValidationError, match="remaining principal"):
            await service.deposit(transaction.id, method.id, Decimal("100.01"))
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_method_must_belong_to_buyer(self, service, open_transaction) -> None:
        transaction, _ = await open_transaction()
        stranger = await service.register_payment_method(
            transaction.seller_id,
            PaymentMethodType.PAYPAL,
            {"kind": "wallet", "wallet_type": "PayPal", "wallet_id": "bob"},
        )
        with pytest.raises(ValidationError, match="does not belong"):
            await service.deposit(transaction.id, stranger.id, Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_inactive_method_rejected(self, service, store, open_transaction) -> None:
        transaction, method = await open_transaction()
        methods = PaymentMethodRepository(store)
        stored = await methods.require(method.id)
        stored.is_active = False
        await methods.save(stored)
        with pytest.raises(ValidationError, match="inactive"):
            await service.deposit(transaction.id, method.id, Decimal("100.00"))

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, service, open_transaction) -> None:
        transaction, method = await open_transaction()
        with pytest.raises(ValidationError):
            await service.deposit(transaction.id, method.id, Decimal("0"))

    @pytest.mark.asyncio
    async def test_cannot_deposit_once_funded(self, service, store, funded_transaction) -> None:
        transaction_id, _ = await funded_transaction()
        transaction = await _transaction(store, transaction_id)
        methods = await PaymentMethodRepository(store).list_for_user(transaction.buyer_id)
        with pytest.raises(InvalidStateTransitionError):
            await service.deposit(transaction_id, methods[0].id, Decimal("1.00"))


class TestRelease:
    @pytest.mark.asyncio
    async def test_release_is_gated_on_conditions(
        self, service, store, gateway, funded_transaction
    ) -> None:
        transaction_id, account_id = await funded_transaction()
        calls_before = len(gateway.calls)

        with pytest.raises(ReleaseNotEligibleError) as exc_info:
            await service.orchestrator.release(account_id, Decimal("100.00"))
        assert exc_info.value.unmet == ["Delivery proof verified"]
        assert len(gateway.calls) == calls_before

        await _prove_delivery(service, store, transaction_id)
        assert (await _account(store, account_id)).status == EscrowStatus.READY_FOR_RELEASE

        record = await service.orchestrator.release(account_id, Decimal("100.00"))

        assert record.status == PaymentStatus.COMPLETED
        assert record.payment_type == PaymentType.RELEASE
        account = await _account(store, account_id)
        assert account.status == EscrowStatus.RELEASED
        assert account.balance == Decimal("0")
        assert account.funds_released_at is not None
        transaction = await _transaction(store, transaction_id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.completed_at is not None

    @pytest.mark.asyncio
    async def test_release_more_than_balance(self, service, funded_transaction) -> None:
        _, account_id = await funded_transaction()
        with pytest.raises(InsufficientFundsError):
            await service.orchestrator.release(account_id, Decimal("100.01"))

    @pytest.mark.asyncio
    async def test_partial_release_requires_eligibility_by_default(
        self, service, funded_transaction
    ) -> None:
        _, account_id = await funded_transaction()
        with pytest.raises(ReleaseNotEligibleError):
            await service.orchestrator.release(account_id, Decimal("30.00"))

    @pytest.mark.asyncio
    async def test_partial_release_when_configured(
        self, store, gateway, verifier, settings, funded_transaction
    ) -> None:
        permissive = EscrowService(
            store,
            gateway,
            verifier,
            settings=settings.model_copy(
                update={"allow_partial_release_without_eligibility": True}
            ),
        )
        _, account_id = await funded_transaction()

        await permissive.orchestrator.release(account_id, Decimal("30.00"))

        account = await _account(store, account_id)
        assert account.balance == Decimal("70.00")
        assert account.status == EscrowStatus.FUNDS_HELD
        with pytest.raises(ReleaseNotEligibleError):
            await permissive.orchestrator.release(account_id, Decimal("70.00"))

    @pytest.mark.asyncio
    async def test_released_account_is_immutable(
        self, service, store, funded_transaction
    ) -> None:
        transaction_id, account_id = await funded_transaction()
        await _prove_delivery(service, store, transaction_id)
        await service.release(transaction_id)

        with pytest.raises(InvalidStateTransitionError):
            await service.orchestrator.release(account_id, Decimal("1.00"))
        with pytest.raises(InvalidStateTransitionError):
            await service.orchestrator.refund(account_id, Decimal("1.00"), "too late")
        assert (await _account(store, account_id)).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_release_before_funding(self, service, open_transaction) -> None:
        transaction, _ = await open_transaction()
        with pytest.raises(InvalidStateTransitionError):
            await service.orchestrator.release(transaction.escrow_account_id, Decimal("1.00"))


class TestRefund:
    @pytest.mark.asyncio
    async def test_partial_refund_keeps_status(self, service, store, funded_transaction) -> None:
        transaction_id, account_id = await funded_transaction()

        record = await service.orchestrator.refund(
            account_id, Decimal("40.00"), "item not delivered"
        )

        assert record.status == PaymentStatus.COMPLETED
        assert record.reason == "item not delivered"
        account = await _account(store, account_id)
        assert account.balance == Decimal("60.00")
        refunds = [e for e in account.ledger if e.type == LedgerEntryType.REFUND]
        assert len(refunds) == 1
        assert refunds[0].amount == Decimal("40.00")
        assert account.status == EscrowStatus.FUNDS_HELD
        transaction = await _transaction(store, transaction_id)
        assert transaction.status == TransactionStatus.PAYMENT_RECEIVED
        assert transaction.refund_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_full_refund_closes_both(self, service, store, funded_transaction) -> None:
        transaction_id, account_id = await funded_transaction()
        await service.refund(transaction_id, "seller cancelled")

        account = await _account(store, account_id)
        assert account.status == EscrowStatus.REFUNDED
        assert account.balance == Decimal("0")
        transaction = await _transaction(store, transaction_id)
        assert transaction.status == TransactionStatus.REFUNDED
        assert transaction.refund_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_reason_required(self, service, funded_transaction) -> None:
        _, account_id = await funded_transaction()
        with pytest.raises(ValidationError, match="reason"):
            await service.orchestrator.refund(account_id, Decimal("10.00"), "  ")

    @pytest.mark.asyncio
    async def test_refund_more_than_balance(self, service, funded_transaction) -> None:
        _, account_id = await funded_transaction()
        with pytest.raises(InsufficientFundsError):
            await service.orchestrator.refund(account_id, Decimal("150.00"), "too much")

    @pytest.mark.asyncio
    async def test_nothing_to_refund_before_funding(self, service, open_transaction) -> None:
        transaction, _ = await open_transaction()
        with pytest.raises(InvalidStateTransitionError):
            await service.orchestrator.refund(
                transaction.escrow_account_id, Decimal("1.00"), "changed my mind"
            )

    @pytest.mark.asyncio
    async def test_declined_payout_keeps_balance(
        self, service, store, gateway, funded_transaction
    ) -> None:
        _, account_id = await funded_transaction()
        gateway.script = ["decline"]
        record = await service.orchestrator.refund(account_id, Decimal("25.00"), "damaged")
        assert record.status == PaymentStatus.FAILED
        assert (await _account(store, account_id)).balance == Decimal("100.00")


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_same_key_is_replayed(self, service, store, gateway, open_transaction) -> None:
        transaction, method = await open_transaction()
        first = await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")
        second = await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")

        assert first.id == second.id == "dep-1"
        assert len(gateway.calls) == 1
        account = await _account(store, transaction.escrow_account_id)
        assert account.balance == Decimal("100.00")
        assert len(account.ledger) == 2

    @pytest.mark.asyncio
    async def test_failed_attempt_can_be_retried_with_same_key(
        self, service, store, gateway, open_transaction
    ) -> None:
        transaction, method = await open_transaction()
        gateway.script = ["decline", "ok"]

        with pytest.raises(GatewayFailureError):
            await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")
        record = await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")

        assert record.status == PaymentStatus.COMPLETED
        assert record.attempts == 2
        assert record.failure_reason is None
        assert len(await PaymentRepository(store).list_for_transaction(transaction.id)) == 1

    @pytest.mark.asyncio
    async def test_key_reused_for_other_operation(self, service, funded_transaction) -> None:
        transaction_id, account_id = await funded_transaction()
        await service.refund(transaction_id, "partial", Decimal("10.00"), idempotency_key="op-1")
        with pytest.raises(ValidationError, match="already used"):
            await service.orchestrator.release(account_id, Decimal("10.00"), "op-1")
        with pytest.raises(ValidationError, match="already used"):
            await service.orchestrator.refund(account_id, Decimal("11.00"), "partial", "op-1")

    @pytest.mark.asyncio
    async def test_refund_replay_does_not_double_debit(
        self, service, store, funded_transaction
    ) -> None:
        _, account_id = await funded_transaction()
        for _ in range(3):
            await service.orchestrator.refund(account_id, Decimal("10.00"), "partial", "ref-1")
        assert (await _account(store, account_id)).balance == Decimal("90.00")


class TestGatewayTimeouts:
    @pytest.mark.asyncio
    async def test_lost_answer_is_reconciled_from_the_gateway(
        self, service, store, gateway, open_transaction
    ) -> None:
        transaction, method = await open_transaction()
        gateway.script = ["lost"]

        with pytest.raises(GatewayTimeoutError):
            await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")

        pending = await PaymentRepository(store).require("dep-1")
        assert pending.status == PaymentStatus.PROCESSING
        assert (await _account(store, transaction.escrow_account_id)).balance == Decimal("0")

        record = await service.reconcile("dep-1")

        assert record.status == PaymentStatus.COMPLETED
        assert len(gateway.calls) == 1
        assert (await _account(store, transaction.escrow_account_id)).balance == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_unseen_call_is_reissued_with_the_same_key(
        self, service, store, gateway, open_transaction
    ) -> None:
        transaction, method = await open_transaction()
        gateway.script = ["hang", "ok"]

        with pytest.raises(GatewayTimeoutError):
            await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")
        record = await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")

        assert record.status == PaymentStatus.COMPLETED
        assert [call[1] for call in gateway.calls] == ["dep-1", "dep-1"]
        assert (await _account(store, transaction.escrow_account_id)).balance == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_new_operation_blocked_while_one_is_unresolved(
        self, service, gateway, funded_transaction
    ) -> None:
        _, account_id = await funded_transaction()
        gateway.script = ["hang"]
        with pytest.raises(GatewayTimeoutError):
            await service.orchestrator.refund(account_id, Decimal("10.00"), "r", "ref-1")

        with pytest.raises(PaymentInProgressError) as exc_info:
            await service.orchestrator.refund(account_id, Decimal("20.00"), "r", "ref-2")
        assert exc_info.value.payment_id == "ref-1"

        record = await service.reconcile("ref-1")
        assert record.status == PaymentStatus.COMPLETED
        await service.orchestrator.refund(account_id, Decimal("20.00"), "r", "ref-2")

    @pytest.mark.asyncio
    async def test_reconcile_of_settled_record_is_a_no_op(
        self, service, gateway, funded_transaction
    ) -> None:
        transaction_id, _ = await funded_transaction()
        payments = await service.list_payments(transaction_id)
        calls_before = len(gateway.calls)
        record = await service.reconcile(payments[0].id)
        assert record.status == PaymentStatus.COMPLETED
        assert len(gateway.calls) == calls_before

    @pytest.mark.asyncio
    async def test_cancel_waits_for_an_unresolved_deposit(
        self, service, store, gateway, open_transaction
    ) -> None:
        transaction, method = await open_transaction()
        status_before = (await _transaction(store, transaction.id)).status
        gateway.script = ["lost"]
        with pytest.raises(GatewayTimeoutError):
            await service.deposit(transaction.id, method.id, Decimal("100.00"), "dep-1")

        with pytest.raises(PaymentInProgressError) as exc_info:
            await service.cancel_transaction(transaction.id, "changed my mind")
        assert exc_info.value.payment_id == "dep-1"
        assert (await _transaction(store, transaction.id)).status == status_before

        record = await service.reconcile("dep-1")

        assert record.status == PaymentStatus.COMPLETED
        account = await _account(store, transaction.escrow_account_id)
        assert account.status == EscrowStatus.FUNDS_HELD
        assert account.balance == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_dispute_waits_for_an_unresolved_release(
        self, service, store, gateway, funded_transaction
    ) -> None:
        transaction_id, account_id = await funded_transaction()
        buyer_id = (await _transaction(store, transaction_id)).buyer_id
        await _prove_delivery(service, store, transaction_id)
        gateway.script = ["lost"]
        with pytest.raises(GatewayTimeoutError):
            await service.release(transaction_id, idempotency_key="rel-1")

        with pytest.raises(PaymentInProgressError):
            await service.dispute(transaction_id, buyer_id, "Parcel never arrived")
        account = await _account(store, account_id)
        assert account.status == EscrowStatus.READY_FOR_RELEASE
        assert account.balance == Decimal("100.00")

        record = await service.reconcile("rel-1")

        assert record.status == PaymentStatus.COMPLETED
        account = await _account(store, account_id)
        assert account.status == EscrowStatus.RELEASED
        assert account.balance == Decimal("0")
        assert (await _transaction(store, transaction_id)).status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_proof_refused_while_a_payment_is_unresolved(
        self, service, store, gateway, funded_transaction
    ) -> None:
        transaction_id, account_id = await funded_transaction()
        seller_id = (await _transaction(store, transaction_id)).seller_id
        await service.start_work(transaction_id, seller_id)
        gateway.script = ["lost"]
        with pytest.raises(GatewayTimeoutError):
            await service.orchestrator.refund(account_id, Decimal("10.00"), "r", "ref-1")

        with pytest.raises(PaymentInProgressError):
            await service.submit_proof(
                SubmitProofRequest(
                    transaction_id=transaction_id,
                    submitted_by=seller_id,
                    verification_type=VerificationType.PHOTO,
                    file_urls=["https://cdn.example/parcel.jpg"],
                )
            )
        assert await ProofRepository(store).list_for_transaction(transaction_id) == []

        await service.reconcile("ref-1")
        assert (await _account(store, account_id)).balance == Decimal("90.00")


class ConflictingStore(InMemoryDocumentStore):
    """Loses the next ``failures`` multi-document commits to a simulated racer."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    async def commit(self, writes: Sequence[DocumentWrite]) -> list[int]:
        if self.failures and len(writes) > 1:
            self.failures -= 1
            raise ConcurrencyConflictError(writes[0].id, writes[0].expected_version)
        return await super().commit(writes)


class TestConcurrency:
    @pytest.fixture
    def store(self) -> ConflictingStore:
        return ConflictingStore()

    @pytest.mark.asyncio
    async def test_racing_refunds_never_overdraw(
        self, service, store, gateway, funded_transaction
    ) -> None:
        _, account_id = await funded_transaction()
        gateway.delay = 0.02

        results = await asyncio.gather(
            service.orchestrator.refund(account_id, Decimal("60.00"), "a"),
            service.orchestrator.refund(account_id, Decimal("60.00"), "b"),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InsufficientFundsError)) == 1
        account = await _account(store, account_id)
        assert account.balance == Decimal("40.00")
        ledger.assert_balanced(account)

    @pytest.mark.asyncio
    async def test_lost_commit_race_is_retried(
        self, service, store, funded_transaction
    ) -> None:
        _, account_id = await funded_transaction()

        store.failures = 2
        record = await service.orchestrator.refund(account_id, Decimal("10.00"), "retry me")

        assert store.failures == 0
        assert record.status == PaymentStatus.COMPLETED
        assert (await _account(store, account_id)).balance == Decimal("90.00")

    @pytest.mark.asyncio
    async def test_locked_update_is_retried(self, service, store, funded_transaction) -> None:
        transaction_id, account_id = await funded_transaction()
        transaction = await _transaction(store, transaction_id)

        store.failures = 1
        await service.dispute(transaction_id, transaction.buyer_id, "never arrived")

        assert store.failures == 0
        account = await _account(store, account_id)
        disputes = [e for e in account.ledger if e.type == LedgerEntryType.DISPUTE]
        assert len(disputes) == 1

    @pytest.mark.asyncio
    async def test_random_operations_keep_the_ledger_balanced(
        self, service, store, gateway, funded_transaction
    ) -> None:
        rng = random.Random(7)

        for _ in range(10):
            _, account_id = await funded_transaction(Decimal(rng.randint(20, 500)))
            for _ in range(5):
                account = await _account(store, account_id)
                if account.balance <= 0:
                    break
                gateway.script = [rng.choice(["ok", "ok", "decline"])]
                amount = min(Decimal(rng.randint(1, 200)), account.balance)
                await service.orchestrator.refund(account_id, amount, "random")
                account = await _account(store, account_id)
                ledger.assert_balanced(account)
                assert account.balance >= 0
                assert (account.status == EscrowStatus.REFUNDED) == (account.balance == 0)


def test_test_doubles_satisfy_protocols(gateway, verifier) -> None:
    assert isinstance(gateway, PaymentGateway)
    assert isinstance(verifier, ProofVerifier)
