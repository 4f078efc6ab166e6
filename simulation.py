#!/usr/bin/env python3
"""PayPledge: End-to-End Simulation.

Drives the settlement engine through three scenarios between a buyer and a
seller, against the simulated gateway and verifier:

    Scenario 1: Happy Path
        - Buyer opens a $100 transaction that needs photo proof
        - Buyer funds the escrow by card (fees on top)
        - Seller starts work and uploads proof -> gate opens -> RELEASED

    Scenario 2: Partial Refund
        - Buyer funds a $200 transaction
        - Part of the order is cancelled: $50 goes back to the buyer
        - Remaining $150 is refunded later -> REFUNDED

    Scenario 3: Dispute
        - Buyer funds, seller starts work
        - Buyer disputes the delivery -> funds frozen
        - Arbiter resolves in favour of the buyer -> REFUNDED

Usage:
    # In-memory document store (default):
    uv run python simulation.py

    # SQLite in-memory through the SQL document store:
    uv run python simulation.py --sqlite

    # Mock verifier that accepts every proof (deterministic gate):
    uv run python simulation.py --dry-run

    # Run a specific scenario with a fixed seed:
    uv run python simulation.py --scenario 1 --seed 7
"""

from __future__ import annotations

import argparse
import asyncio
import random
from decimal import Decimal
from typing import Any

from paypledge.config import Settings
from paypledge.domain import ledger
from paypledge.domain.enums import (
    PaymentMethodType,
    ProofStatus,
    VerificationType,
)
from paypledge.domain.exceptions import PayPledgeError
from paypledge.domain.models import (
    LocationData,
    ProofMetadata,
    TransactionTerms,
    VerificationRequirement,
)
from paypledge.infrastructure.memory_store import InMemoryDocumentStore
from paypledge.logging_config import get_logger, setup_logging
from paypledge.schemas.transaction import (
    CreateTransactionRequest,
    SubmitProofRequest,
)
from paypledge.services.escrow_service import EscrowService

logger = get_logger("simulation")

BUYER = "buyer-alice"
SELLER = "seller-bob"
ARBITER = "arbiter-carol"
CARD = {
    "kind": "card",
    "last4": "4242",
    "brand": "Visa",
    "expiry_month": 12,
    "expiry_year": 2030,
    "holder_name": "Alice Buyer",
}
MAX_PROOF_ATTEMPTS = 3


class Simulation:
    """Holds the wired service and the backing resources for one run."""

    def __init__(self, settings: Settings, seed: int) -> None:
        self.settings = settings
        self.seed = seed
        self.service: EscrowService | None = None
        self._engine: Any = None

    async def start(self, use_sqlite: bool) -> EscrowService:
        if use_sqlite:
            from paypledge.infrastructure.database.document_store import SqlDocumentStore
            from paypledge.infrastructure.database.engine import (
                create_engine_from_settings,
                create_schema,
                make_session_factory,
            )

            self._engine = create_engine_from_settings(self.settings)
            await create_schema(self._engine)
            store: Any = SqlDocumentStore(make_session_factory(self._engine))
        else:
            store = InMemoryDocumentStore()

        self.service = EscrowService.from_settings(
            store, self.settings, rng=random.Random(self.seed)
        )
        logger.info("simulation.started", sqlite=use_sqlite, seed=self.seed)
        return self.service

    async def stop(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_account(service: EscrowService, transaction_id: str) -> None:
    """Pretty-print the transaction, its escrow balance and the ledger."""
    view = await service.get_transaction_view(transaction_id)
    escrow = view.escrow
    print(f"  Transaction: {view.transaction.status}")
    print(f"  Escrow:      {escrow.status}")
    print(f"  Balance:     {escrow.balance} {escrow.currency}")
    sums = ledger.totals(escrow.ledger)
    print(f"  Funded:      {escrow.funded_amount} / released {sums.releases}"
          f" / refunded {sums.refunds}")
    if view.unmet_conditions:
        print(f"  Unmet:       {', '.join(view.unmet_conditions)}")
    print("\n  Ledger:")
    running = Decimal("0")
    for i, entry in enumerate(escrow.ledger, 1):
        running += ledger.signed_amount(entry)
        print(f"    {i}. [{entry.type}] {entry.amount} (balance {running}) {entry.description}")
    print()


# ---------------------------------------------------------------------------
# Shared steps
# ---------------------------------------------------------------------------
async def open_and_fund(
    service: EscrowService,
    title: str,
    amount: Decimal,
    terms: TransactionTerms | None = None,
) -> str:
    transaction = await service.create_transaction(
        CreateTransactionRequest(
            buyer_id=BUYER,
            seller_id=SELLER,
            title=title,
            amount=amount,
            terms=terms or TransactionTerms(),
        )
    )
    print(f"  Opened transaction {transaction.id[:8]} for {amount} {transaction.currency}")

    method = await service.register_payment_method(
        BUYER, PaymentMethodType.CREDIT_CARD, CARD, is_default=True
    )
    record = await service.deposit(transaction.id, method.id, amount)
    print(f"  Deposit charged {record.amount} via {record.gateway_reference}")
    return transaction.id


async def deliver_with_proof(service: EscrowService, transaction_id: str) -> bool:
    """Upload photo proof until the gate opens. Returns release eligibility."""
    for attempt in range(1, MAX_PROOF_ATTEMPTS + 1):
        proof, decision = await service.submit_proof(
            SubmitProofRequest(
                transaction_id=transaction_id,
                submitted_by=SELLER,
                verification_type=VerificationType.PHOTO,
                title=f"Delivery photo #{attempt}",
                file_urls=["https://cdn.example/box.jpg", "https://cdn.example/door.jpg"],
                metadata=ProofMetadata(
                    file_size=1_800_000,
                    file_type="image/jpeg",
                    location=LocationData(latitude=40.7128, longitude=-74.0060),
                ),
            )
        )
        print(f"  Proof #{attempt}: {decision.outcome} ({decision.reason})")

        if decision.outcome == ProofStatus.REQUIRES_REVIEW:
            proof, decision = await service.review_proof(
                transaction_id, proof.id, approved=True, reviewer_id=ARBITER,
                notes="Checked photos against the order",
            )
            print(f"  Arbiter review: {decision.outcome}")

        if decision.release_eligible:
            return True
    return False


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path(service: EscrowService) -> None:
    banner("SCENARIO 1: Happy Path: fund, prove delivery, release")

    section("Buyer opens and funds the escrow")
    terms = TransactionTerms(
        delivery_requirements=["Ship within 3 days"],
        verification_requirements=[
            VerificationRequirement(
                type=VerificationType.PHOTO, description="Photo of the delivered parcel"
            )
        ],
    )
    transaction_id = await open_and_fund(
        service, "Refurbished laptop", Decimal("100.00"), terms
    )

    section("Seller delivers")
    await service.start_work(transaction_id, SELLER)
    eligible = await deliver_with_proof(service, transaction_id)

    section("Settlement")
    if eligible:
        record = await service.release(transaction_id)
        print(f"  Released {record.amount} to the seller via {record.gateway_reference}")
    else:
        record = await service.refund(transaction_id, "Delivery could not be verified")
        print(f"  Proof never verified; refunded {record.amount} to the buyer")
    await print_account(service, transaction_id)


# ===========================================================================
# Scenario 2: Partial Refund
# ===========================================================================
async def scenario_2_partial_refund(service: EscrowService) -> None:
    banner("SCENARIO 2: Partial Refund: refund part, then the rest")

    section("Buyer opens and funds the escrow")
    transaction_id = await open_and_fund(service, "Office chairs x4", Decimal("200.00"))

    section("One chair is out of stock")
    record = await service.refund(
        transaction_id, "One item out of stock", amount=Decimal("50.00")
    )
    print(f"  Refunded {record.amount}")
    await print_account(service, transaction_id)

    section("Order cancelled by the seller")
    record = await service.refund(transaction_id, "Seller cancelled the remaining order")
    print(f"  Refunded remaining {record.amount}")
    await print_account(service, transaction_id)


# ===========================================================================
# Scenario 3: Dispute
# ===========================================================================
async def scenario_3_dispute(service: EscrowService) -> None:
    banner("SCENARIO 3: Dispute: freeze funds, arbiter refunds the buyer")

    section("Buyer opens and funds the escrow")
    transaction_id = await open_and_fund(service, "Vintage camera", Decimal("300.00"))
    await service.start_work(transaction_id, SELLER)

    section("Buyer disputes")
    await service.dispute(transaction_id, BUYER, "Item arrived with a cracked lens")
    await print_account(service, transaction_id)

    section("Arbiter resolves")
    record = await service.resolve_dispute(transaction_id, "buyer", resolved_by=ARBITER)
    print(f"  Refunded {record.amount} to the buyer")
    await print_account(service, transaction_id)

    summary = await service.get_party_summary(BUYER)
    print(f"  Buyer summary: {summary.total_transactions} transactions,"
          f" {summary.completed} completed, {summary.refunded} refunded,"
          f" {summary.amount_held} held")


SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_partial_refund,
    3: scenario_3_dispute,
}


# ===========================================================================
# Main
# ===========================================================================
def build_settings(dry_run: bool, success_rate: float) -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        verifier_backend="mock" if dry_run else "simulated",
        simulated_gateway_success_rate=success_rate,
    )


async def run(
    scenarios: list[int],
    use_sqlite: bool = False,
    dry_run: bool = False,
    seed: int = 42,
    success_rate: float = 1.0,
) -> None:
    """Run the given scenarios sequentially against one service."""
    settings = build_settings(dry_run, success_rate)
    setup_logging(log_level="INFO", json_logs=not settings.is_development)
    simulation = Simulation(settings, seed)
    service = await simulation.start(use_sqlite)

    try:
        print("\n" + "=" * 70)
        print("  PAYPLEDGE: ESCROW SETTLEMENT SIMULATION")
        print(f"  Store: {'SQLite (in-memory)' if use_sqlite else 'in-memory dict'}")
        print(f"  Verifier: {'mock' if dry_run else 'simulated'}   Seed: {seed}")
        print("=" * 70 + "\n")

        for num in scenarios:
            try:
                await SCENARIOS[num](service)
            except PayPledgeError as exc:
                logger.error("simulation.scenario_failed", scenario=num, error=str(exc))
                print(f"  Scenario {num} stopped: {exc}")
    finally:
        await simulation.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="PayPledge Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use the SQL document store on SQLite in-memory.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the mock verifier, which accepts every proof.",
    )
    parser.add_argument("--seed", type=int, default=42, help="Seed for gateway and verifier.")
    parser.add_argument(
        "--success-rate",
        type=float,
        default=1.0,
        help="Probability that a simulated gateway call succeeds.",
    )
    args = parser.parse_args()

    if args.scenario and args.scenario not in SCENARIOS:
        parser.error(f"Unknown scenario {args.scenario}. Available: 1, 2, 3")
    selected = [args.scenario] if args.scenario else sorted(SCENARIOS)
    asyncio.run(
        run(
            selected,
            use_sqlite=args.sqlite,
            dry_run=args.dry_run,
            seed=args.seed,
            success_rate=args.success_rate,
        )
    )
