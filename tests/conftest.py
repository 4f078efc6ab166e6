"""Shared test fixtures for the PayPledge test suite.

Provides:
    - Deterministic gateway and verifier doubles
    - An in-memory store and a fully wired EscrowService
    - Factory fixtures for opening and funding transactions
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest

from paypledge.config import Settings
from paypledge.domain.enums import PaymentMethodType
from paypledge.domain.gateway_protocol import GatewayResult
from paypledge.domain.models import TransactionTerms
from paypledge.domain.verifier_protocol import VerificationResult
from paypledge.infrastructure.memory_store import InMemoryDocumentStore
from paypledge.schemas.transaction import CreateTransactionRequest
from paypledge.services.escrow_service import EscrowService

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from paypledge.domain.models import PaymentMethod, ProofSubmission, Transaction

BUYER = "buyer-alice"
SELLER = "seller-bob"

CARD_DETAILS = {
    "kind": "card",
    "last4": "4242",
    "brand": "Visa",
    "expiry_month": 12,
    "expiry_year": 2030,
    "holder_name": "Alice Buyer",
}
BANK_DETAILS = {
    "kind": "bank",
    "account_number": "000123456789",
    "routing_number": "110000000",
    "bank_name": "First Test Bank",
    "account_holder_name": "Alice Buyer",
}


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class ScriptedGateway:
    """PaymentGateway double driven by a script of outcomes.

    Script steps, consumed one per gateway call (default "ok"):
        - "ok":      succeed
        - "decline": fail with "card_declined"
        - "lost":    succeed on the gateway side, then never answer
        - "hang":    never answer and never record anything
    """

    def __init__(self, script: Iterable[str] = (), delay: float = 0.0) -> None:
        self.script = list(script)
        self.delay = delay
        self.outcomes: dict[str, GatewayResult] = {}
        self.calls: list[tuple[str, str, Decimal]] = []

    async def charge(
        self, amount: Decimal, method_ref: str, idempotency_key: str
    ) -> GatewayResult:
        return await self._run("charge", amount, idempotency_key)

    async def payout(self, amount: Decimal, idempotency_key: str) -> GatewayResult:
        return await self._run("payout", amount, idempotency_key)

    async def lookup(self, idempotency_key: str) -> GatewayResult | None:
        return self.outcomes.get(idempotency_key)

    async def _run(self, operation: str, amount: Decimal, key: str) -> GatewayResult:
        previous = self.outcomes.get(key)
        if previous is not None and previous.success:
            return previous

        self.calls.append((operation, key, amount))
        step = self.script.pop(0) if self.script else "ok"
        if self.delay:
            await asyncio.sleep(self.delay)

        if step == "decline":
            result = GatewayResult(success=False, failure_reason="card_declined")
        else:
            result = GatewayResult(success=True, gateway_reference=f"gw_{len(self.calls)}")

        if step == "lost":
            self.outcomes[key] = result
        if step in ("lost", "hang"):
            await asyncio.sleep(3600)
        self.outcomes[key] = result
        return result


class ScriptedVerifier:
    """ProofVerifier double returning queued results, then a default verdict."""

    def __init__(
        self,
        results: Iterable[VerificationResult] = (),
        default: VerificationResult | None = None,
    ) -> None:
        self.results = list(results)
        self.default = default or VerificationResult(score=0.9, is_authentic=True)
        self.judged: list[str] = []

    async def judge(self, proof: ProofSubmission, requirement: Any) -> VerificationResult:
        self.judged.append(proof.id)
        return self.results.pop(0) if self.results else self.default


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any .env file, with short timeouts for tests."""
    return Settings(
        _env_file=None,
        gateway_timeout_seconds=0.2,
        verifier_timeout_seconds=0.2,
        verifier_max_attempts=1,
        max_conflict_retries=5,
        conflict_retry_wait_seconds=0.0,
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def verifier() -> ScriptedVerifier:
    return ScriptedVerifier()


@pytest.fixture
def service(
    store: InMemoryDocumentStore,
    gateway: ScriptedGateway,
    verifier: ScriptedVerifier,
    settings: Settings,
) -> EscrowService:
    return EscrowService(store, gateway, verifier, settings=settings)


# ---------------------------------------------------------------------------
# Factory fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def open_transaction(
    service: EscrowService,
) -> Callable[..., Awaitable[tuple[Transaction, PaymentMethod]]]:
    """Return a coroutine factory creating a transaction plus a buyer payment method."""

    async def _open(
        amount: Decimal = Decimal("100.00"),
        terms: TransactionTerms | None = None,
        fees_paid_by: str | None = None,
        method_type: PaymentMethodType = PaymentMethodType.CREDIT_CARD,
    ) -> tuple[Transaction, PaymentMethod]:
        transaction = await service.create_transaction(
            CreateTransactionRequest(
                buyer_id=BUYER,
                seller_id=SELLER,
                title="Vintage film camera",
                amount=amount,
                terms=terms or TransactionTerms(),
                fees_paid_by=fees_paid_by,
            )
        )
        details = BANK_DETAILS if method_type == PaymentMethodType.BANK_TRANSFER else CARD_DETAILS
        method = await service.register_payment_method(BUYER, method_type, details)
        return transaction, method

    return _open


@pytest.fixture
def funded_transaction(
    service: EscrowService,
    open_transaction: Callable[..., Awaitable[tuple[Transaction, PaymentMethod]]],
) -> Callable[..., Awaitable[tuple[str, str]]]:
    """Return a coroutine factory producing a fully funded transaction.

    The factory returns ``(transaction_id, escrow_account_id)``.
    """

    async def _funded(amount: Decimal = Decimal("100.00"), **kwargs: Any) -> tuple[str, str]:
        transaction, method = await open_transaction(amount, **kwargs)
        await service.deposit(transaction.id, method.id, amount)
        assert transaction.escrow_account_id is not None
        return transaction.id, transaction.escrow_account_id

    return _funded
