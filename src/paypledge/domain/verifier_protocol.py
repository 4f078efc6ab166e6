"""Proof Verifier Protocol.

Defines the interface of the external judge that scores delivery proofs.
This is a Protocol (structural subtyping) so concrete verifiers don't need
to inherit from a base class; matching the method signatures is enough.

How a verifier arrives at its score is outside the settlement engine; the
VerificationGate only consumes the VerificationResult.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from paypledge.domain.models import ProofSubmission, VerificationRequirement


@dataclass(frozen=True)
class VerificationResult:
    """Output from a verifier.

    Attributes:
        score: Confidence that the proof is genuine and satisfies the requirement (0.0 - 1.0).
        is_authentic: The verifier's own authenticity verdict.
        flags: Risk signals raised while judging (e.g. "HIGH_RISK_LOCATION").
        requires_human_review: Whether the verifier wants a person to look at it.
        summary: Human-readable explanation.
    """

    score: float
    is_authentic: bool
    flags: frozenset[str] = field(default_factory=frozenset)
    requires_human_review: bool = False
    summary: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be within [0, 1], got {self.score}")
        object.__setattr__(self, "flags", frozenset(self.flags))

    def to_dict(self) -> dict:
        """Serialize for storage on the ProofSubmission document."""
        return {
            "score": self.score,
            "is_authentic": self.is_authentic,
            "flags": sorted(self.flags),
            "requires_human_review": self.requires_human_review,
            "summary": self.summary,
        }


@runtime_checkable
class ProofVerifier(Protocol):
    """Protocol that all verifier implementations must satisfy.

    Concrete implementations:
        - verifiers.MockVerifier              (fixed, configurable verdict)
        - verifiers/simulated.py              (randomised metadata heuristic)
    """

    async def judge(
        self,
        proof: ProofSubmission,
        requirement: VerificationRequirement | None,
    ) -> VerificationResult:
        """Score a proof submission against the requirement it targets."""
        ...
