"""Verification Service — runs delivery proofs through the verifier and gate.

Flow for one proof:
    1. Validate the transaction and pick the release condition it targets.
    2. Store the ProofSubmission as PROCESSING.
    3. Ask the external verifier for a VerificationResult (retried with
       tenacity; an unreachable verifier yields a REQUIRES_REVIEW verdict).
    4. Under the account lock, let the VerificationGate flip the condition,
       advance Transaction/EscrowAccount and commit proof + transaction +
       account together.

Human review of REQUIRES_REVIEW proofs goes through ``review_proof``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from tenacity import retry, stop_after_attempt, wait_exponential

from paypledge.config import get_settings
from paypledge.domain.enums import EscrowStatus, ProofStatus, TransactionStatus
from paypledge.domain.exceptions import (
    InvalidStateTransitionError,
    ValidationError,
)
from paypledge.domain.models import ProofSubmission
from paypledge.domain.release_gate import VerificationGate, mark_condition_met
from paypledge.domain.state_machine import (
    EscrowStateMachine,
    TransactionStateMachine,
    fire_transition,
)
from paypledge.domain.verifier_protocol import VerificationResult
from paypledge.infrastructure.repositories import (
    EscrowRepository,
    ProofRepository,
    TransactionRepository,
)
from paypledge.logging_config import bind_settlement_context, get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from paypledge.config import Settings
    from paypledge.domain.models import (
        EscrowAccount,
        Transaction,
        VerificationRequirement,
    )
    from paypledge.domain.release_gate import GateDecision
    from paypledge.domain.store_protocol import DocumentStore
    from paypledge.domain.verifier_protocol import ProofVerifier
    from paypledge.schemas.transaction import SubmitProofRequest
    from paypledge.services.settlement_orchestrator import SettlementOrchestrator

logger = get_logger(__name__)

_PROOF_TRANSACTION_STATES = (
    TransactionStatus.IN_PROGRESS,
    TransactionStatus.AWAITING_PROOF,
    TransactionStatus.UNDER_REVIEW,
)
_PROOF_ACCOUNT_STATES = (EscrowStatus.FUNDS_HELD, EscrowStatus.READY_FOR_RELEASE)


class VerificationService:
    """Judges proofs and records the gate's decision."""

    def __init__(
        self,
        store: DocumentStore,
        verifier: ProofVerifier,
        orchestrator: SettlementOrchestrator,
        gate: VerificationGate | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._verifier = verifier
        self._orchestrator = orchestrator
        self._gate = gate or VerificationGate(
            threshold=settings.verification_score_threshold,
            blocking_flags=settings.blocking_flag_list,
        )
        self._verifier_timeout = settings.verifier_timeout_seconds
        self._verifier_attempts = settings.verifier_max_attempts
        self._clock = clock or (lambda: datetime.now(UTC))

        self._transactions = TransactionRepository(store)
        self._escrows = EscrowRepository(store)
        self._proofs = ProofRepository(store)

    @property
    def gate(self) -> VerificationGate:
        return self._gate

    # ------------------------------------------------------------------
    # Proof submission
    # ------------------------------------------------------------------

    async def submit_proof(
        self, request: SubmitProofRequest
    ) -> tuple[ProofSubmission, GateDecision]:
        """Store, judge and gate one proof submission.

        Raises:
            ValidationError: Submitter is not the seller, or no open release
                condition accepts this proof.
            InvalidStateTransitionError: The transaction is not expecting proof.
            PaymentInProgressError: A payment on the escrow is unresolved.
        """
        transaction = await self._transactions.require(request.transaction_id)
        if request.submitted_by != transaction.seller_id:
            raise ValidationError("Only the seller can submit delivery proof", "submitted_by")
        if transaction.status not in _PROOF_TRANSACTION_STATES:
            raise InvalidStateTransitionError(transaction.status, "submit_proof")
        account = await self._escrows.require(transaction.escrow_account_id or "")
        if account.status not in _PROOF_ACCOUNT_STATES:
            raise InvalidStateTransitionError(account.status, "submit_proof")
        await self._orchestrator.ensure_settled(account.id)

        proof = ProofSubmission(
            transaction_id=transaction.id,
            submitted_by=request.submitted_by,
            verification_type=request.verification_type,
            title=request.title,
            description=request.description,
            file_urls=list(request.file_urls),
            metadata=request.metadata,
            condition_id=request.condition_id,
            status=ProofStatus.PROCESSING,
            submitted_at=self._clock(),
        )
        proof.condition_id = self._gate.select_condition(account, proof).id

        with bind_settlement_context(
            transaction_id=transaction.id,
            escrow_account_id=account.id,
            proof_id=proof.id,
        ):
            await self._proofs.save(proof)
            logger.info(
                "verification.proof_submitted",
                verification_type=proof.verification_type,
                condition_id=proof.condition_id,
            )

            requirement = _requirement_for(transaction, proof)
            result = await self._judge_safely(proof, requirement)

            decisions: list[GateDecision] = []

            def mutate(
                account: EscrowAccount, transaction: Transaction, now: datetime
            ) -> list[ProofSubmission]:
                decision = self._gate.apply(account, proof, result, now)
                proof.status = decision.outcome
                proof.verification_result = result.to_dict()
                proof.verified_at = now
                proof.requires_human_review = decision.outcome == ProofStatus.REQUIRES_REVIEW
                proof.rejection_reason = None if decision.accepted else decision.reason
                if proof.id not in transaction.proof_submission_ids:
                    transaction.proof_submission_ids.append(proof.id)
                _advance(account, transaction, decision)
                decisions[:] = [decision]
                return [proof]

            await self._orchestrator.apply_locked(account.id, mutate)
            decision = decisions[0]
            logger.info(
                "gate.decided",
                outcome=decision.outcome,
                score=result.score,
                flags=sorted(result.flags),
                reason=decision.reason,
                release_eligible=decision.release_eligible,
            )
            return proof, decision

    async def _judge_safely(
        self, proof: ProofSubmission, requirement: VerificationRequirement | None
    ) -> VerificationResult:
        try:
            return await self._judge(proof, requirement)
        except Exception as exc:
            logger.error("verification.verifier_failed", proof_id=proof.id, error=str(exc))
            return VerificationResult(
                score=0.0,
                is_authentic=False,
                requires_human_review=True,
                summary=f"Verifier unavailable: {exc}",
            )

    async def _judge(
        self, proof: ProofSubmission, requirement: VerificationRequirement | None
    ) -> VerificationResult:
        """Call the verifier with a timeout, retrying transient failures."""

        @retry(
            stop=stop_after_attempt(self._verifier_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            reraise=True,
        )
        async def attempt() -> VerificationResult:
            return await asyncio.wait_for(
                self._verifier.judge(proof, requirement), timeout=self._verifier_timeout
            )

        return await attempt()

    # ------------------------------------------------------------------
    # Human review
    # ------------------------------------------------------------------

    async def review_proof(
        self,
        transaction_id: str,
        proof_id: str,
        approved: bool,
        reviewer_id: str,
        notes: str | None = None,
    ) -> tuple[ProofSubmission, GateDecision]:
        """Record a human verdict on a REQUIRES_REVIEW proof.

        Approval marks the proof's release condition met with verification
        method "human_review"; rejection sends the transaction back to
        AWAITING_PROOF.
        """
        transaction = await self._transactions.require(transaction_id)
        proof = await self._proofs.require(proof_id)
        if proof.transaction_id != transaction.id:
            raise ValidationError(
                f"Proof {proof_id} does not belong to transaction {transaction_id}", "proof_id"
            )
        if reviewer_id == transaction.seller_id:
            raise ValidationError("The seller cannot review their own proof", "reviewer_id")
        if proof.status != ProofStatus.REQUIRES_REVIEW:
            raise InvalidStateTransitionError(proof.status, "review_proof")
        if transaction.status not in _PROOF_TRANSACTION_STATES:
            raise InvalidStateTransitionError(transaction.status, "review_proof")

        decisions: list[GateDecision] = []

        def mutate(
            account: EscrowAccount, transaction: Transaction, now: datetime
        ) -> list[ProofSubmission]:
            condition = account.get_condition(proof.condition_id or "")
            if condition is None:
                raise ValidationError(
                    f"Proof {proof.id} is not linked to a release condition", "condition_id"
                )
            if approved:
                if not condition.is_met:
                    mark_condition_met(
                        condition,
                        method="human_review",
                        proof_submission_id=proof.id,
                        now=now,
                    )
                outcome, reason = ProofStatus.VERIFIED, f"approved by {reviewer_id}"
                proof.rejection_reason = None
            else:
                outcome, reason = ProofStatus.REJECTED, notes or f"rejected by {reviewer_id}"
                proof.rejection_reason = reason
            proof.status = outcome
            proof.requires_human_review = False
            proof.verified_at = now
            proof.verification_result = {
                **(proof.verification_result or {}),
                "review": {"reviewer_id": reviewer_id, "approved": approved, "notes": notes},
            }
            decision = self._gate.decision(account, condition.id, outcome, reason)
            _advance(account, transaction, decision)
            decisions[:] = [decision]
            return [proof]

        with bind_settlement_context(transaction_id=transaction_id, proof_id=proof_id):
            await self._orchestrator.apply_locked(transaction.escrow_account_id or "", mutate)
            logger.info("verification.proof_reviewed", approved=approved, reviewer_id=reviewer_id)
        return proof, decisions[0]


def _requirement_for(
    transaction: Transaction, proof: ProofSubmission
) -> VerificationRequirement | None:
    for requirement in transaction.terms.verification_requirements:
        if requirement.type == proof.verification_type:
            return requirement
    return None


def _advance(account: EscrowAccount, transaction: Transaction, decision: GateDecision) -> None:
    """Move transaction and account to where the gate decision points."""
    needs_review = decision.all_conditions_met or decision.outcome == ProofStatus.REQUIRES_REVIEW
    target = TransactionStatus.UNDER_REVIEW if needs_review else TransactionStatus.AWAITING_PROOF
    if transaction.status != target:
        event = "begin_review" if needs_review else "await_proof"
        transaction.status = fire_transition(TransactionStateMachine, transaction.status, event)

    if decision.release_eligible and account.status == EscrowStatus.FUNDS_HELD:
        account.status = fire_transition(EscrowStateMachine, account.status, "conditions_met")
