"""Verification gate: turns verifier output into release-condition flags.

A proof satisfies its release condition when

    score >= threshold  AND  no flag matches a blocking marker

Blocking markers are matched case-insensitively as substrings, so the default
marker "HIGH_RISK" blocks "HIGH_RISK_LOCATION" as well as "high_risk_payment".
A rejected proof leaves the condition unmet and yields REJECTED, or
REQUIRES_REVIEW when the verifier asked for a human to look at it.

The gate keeps no state of its own; the only thing it ever mutates is the
matched ReleaseCondition on the EscrowAccount passed to ``apply``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from paypledge.domain.enums import ProofStatus, VerificationType
from paypledge.domain.exceptions import ValidationError
from paypledge.domain.ledger import can_release
from paypledge.domain.models import ReleaseCondition

if TYPE_CHECKING:
    from collections.abc import Iterable

    from paypledge.domain.models import (
        EscrowAccount,
        ProofSubmission,
        TransactionTerms,
    )
    from paypledge.domain.verifier_protocol import VerificationResult

DEFAULT_SCORE_THRESHOLD = 0.7
DEFAULT_BLOCKING_FLAGS = ("HIGH_RISK",)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of judging one proof against one release condition."""

    outcome: ProofStatus
    condition_id: str
    reason: str
    all_conditions_met: bool = False
    release_eligible: bool = False

    @property
    def accepted(self) -> bool:
        return self.outcome == ProofStatus.VERIFIED


class VerificationGate:
    """Deterministic evaluator over verifier results and release conditions."""

    def __init__(
        self,
        threshold: float = DEFAULT_SCORE_THRESHOLD,
        blocking_flags: Iterable[str] = DEFAULT_BLOCKING_FLAGS,
    ) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")
        self._threshold = threshold
        self._blocking = tuple(f.upper() for f in blocking_flags if f)

    @property
    def threshold(self) -> float:
        return self._threshold

    def blocking_flags_in(self, flags: Iterable[str]) -> list[str]:
        return sorted(
            flag for flag in flags if any(marker in flag.upper() for marker in self._blocking)
        )

    def evaluate(self, result: VerificationResult) -> tuple[ProofStatus, str]:
        """Classify a verifier result without touching any condition."""
        blocking = self.blocking_flags_in(result.flags)
        if result.score >= self._threshold and not blocking:
            reason = f"score {result.score:.2f} meets threshold {self._threshold:.2f}"
            return ProofStatus.VERIFIED, reason

        if blocking:
            reason = f"blocking flags present: {', '.join(blocking)}"
        else:
            reason = f"score {result.score:.2f} below threshold {self._threshold:.2f}"
        if result.requires_human_review:
            return ProofStatus.REQUIRES_REVIEW, reason
        return ProofStatus.REJECTED, reason

    def select_condition(
        self, account: EscrowAccount, proof: ProofSubmission
    ) -> ReleaseCondition:
        """Pick the release condition a proof is judged against.

        An explicit ``proof.condition_id`` wins. Otherwise the first unmet
        condition of the proof's verification type is used, falling back to
        the first unmet untyped condition.

        Raises:
            ValidationError: If no open condition accepts this proof.
        """
        if proof.condition_id is not None:
            condition = account.get_condition(proof.condition_id)
            if condition is None:
                raise ValidationError(
                    f"Release condition {proof.condition_id} does not exist", "condition_id"
                )
            if condition.is_met:
                raise ValidationError(
                    f"Release condition {proof.condition_id} is already met", "condition_id"
                )
            return condition

        open_conditions = [c for c in account.release_conditions if not c.is_met]
        for condition in open_conditions:
            if condition.verification_type == proof.verification_type:
                return condition
        for condition in open_conditions:
            if condition.verification_type is None:
                return condition
        raise ValidationError(
            f"No open release condition accepts {proof.verification_type} proof",
            "verification_type",
        )

    def apply(
        self,
        account: EscrowAccount,
        proof: ProofSubmission,
        result: VerificationResult,
        now: datetime | None = None,
    ) -> GateDecision:
        """Judge ``proof`` and, if accepted, mark its condition met on ``account``."""
        condition = self.select_condition(account, proof)
        outcome, reason = self.evaluate(result)
        if outcome == ProofStatus.VERIFIED:
            mark_condition_met(
                condition,
                method="automated_verification",
                confidence=result.score,
                proof_submission_id=proof.id,
                now=now,
            )
        return self.decision(account, condition.id, outcome, reason)

    @staticmethod
    def decision(
        account: EscrowAccount, condition_id: str, outcome: ProofStatus, reason: str
    ) -> GateDecision:
        return GateDecision(
            outcome=outcome,
            condition_id=condition_id,
            reason=reason,
            all_conditions_met=all(c.is_met for c in account.release_conditions),
            release_eligible=can_release(account),
        )


def mark_condition_met(
    condition: ReleaseCondition,
    method: str,
    confidence: float | None = None,
    proof_submission_id: str | None = None,
    now: datetime | None = None,
) -> None:
    condition.is_met = True
    condition.verified_at = now or datetime.now(UTC)
    condition.verification_method = method
    condition.confidence = confidence
    if proof_submission_id is not None:
        condition.proof_submission_id = proof_submission_id


def conditions_from_terms(terms: TransactionTerms) -> list[ReleaseCondition]:
    """Derive the release conditions of a new escrow account from deal terms.

    One condition per required verification requirement, a signature
    condition when the terms require one and none is listed, and a single
    generic delivery condition when the terms name nothing at all.
    """
    conditions = [
        ReleaseCondition(
            description=req.description or f"{req.type.value.title()} proof verified",
            verification_type=req.type,
        )
        for req in terms.verification_requirements
        if req.is_required
    ]
    if terms.requires_signature and not any(
        c.verification_type == VerificationType.SIGNATURE for c in conditions
    ):
        conditions.append(
            ReleaseCondition(
                description="Recipient signature verified",
                verification_type=VerificationType.SIGNATURE,
            )
        )
    if not conditions:
        conditions.append(ReleaseCondition(description="Delivery proof verified"))
    return conditions
