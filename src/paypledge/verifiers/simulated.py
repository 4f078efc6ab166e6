"""Simulated proof verifier.

Produces plausible verdicts from proof metadata plus seeded noise. It is a
stand-in for the external scoring service; nothing here models real image
forensics.

Scoring:
    authenticity = 0.5
                 + 0.1 if the largest file is over 100 kB
                 + 0.1 if a capture timestamp is present
                 + 0.1 if a location is attached
                 + 0.1 if more than one file was uploaded
                 +/- up to 0.15 of noise, clamped to [0, 1]

    requirement  = uniform in [0.6, 1.0] when the proof targets a requirement

    score        = mean of the two (or authenticity alone), rounded to 2 places

Risk flags are raised at fixed low probabilities, plus deterministic flags
for missing metadata.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from paypledge.domain.enums import VerificationType
from paypledge.domain.verifier_protocol import VerificationResult
from paypledge.logging_config import get_logger

if TYPE_CHECKING:
    from paypledge.domain.models import ProofSubmission, VerificationRequirement

logger = get_logger(__name__)

LARGE_FILE_BYTES = 100_000
AUTHENTIC_SCORE = 0.7

RANDOM_FLAG_RATES: tuple[tuple[str, float], ...] = (
    ("SUSPICIOUS_METADATA", 0.10),
    ("POTENTIAL_DEEPFAKE", 0.05),
    ("IMAGE_MANIPULATION_DETECTED", 0.08),
    ("HIGH_RISK_LOCATION", 0.03),
    ("DUPLICATE_IMAGE_FOUND", 0.02),
)
MISSING_DATA_FLAGS = frozenset({"MISSING_TIMESTAMP", "MISSING_LOCATION_DATA"})


class SimulatedVerifier:
    """Metadata heuristic with injectable randomness."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    async def judge(
        self,
        proof: ProofSubmission,
        requirement: VerificationRequirement | None,
    ) -> VerificationResult:
        authenticity = self.authenticity_score(proof)
        if requirement is not None:
            requirement_score = self._rng.random() * 0.4 + 0.6
            score = (authenticity + requirement_score) / 2
        else:
            score = authenticity
        score = round(score, 2)

        flags = self.fraud_signals(proof)
        risk_flags = flags - MISSING_DATA_FLAGS
        is_authentic = score >= AUTHENTIC_SCORE and not any("HIGH_RISK" in f for f in flags)
        requires_review = bool(risk_flags) or 0.5 <= score < AUTHENTIC_SCORE

        logger.info(
            "verifier.simulated",
            proof_id=proof.id,
            score=score,
            flags=sorted(flags),
            requires_human_review=requires_review,
        )
        return VerificationResult(
            score=score,
            is_authentic=is_authentic,
            flags=flags,
            requires_human_review=requires_review,
            summary=self._summary(is_authentic, score, flags),
        )

    def authenticity_score(self, proof: ProofSubmission) -> float:
        metadata = proof.metadata
        score = 0.5
        if metadata.file_size > LARGE_FILE_BYTES:
            score += 0.1
        if metadata.captured_at is not None:
            score += 0.1
        if metadata.location is not None:
            score += 0.1
        if len(proof.file_urls) > 1:
            score += 0.1
        score += (self._rng.random() - 0.5) * 0.3
        return max(0.0, min(1.0, score))

    def fraud_signals(self, proof: ProofSubmission) -> frozenset[str]:
        signals = {flag for flag, rate in RANDOM_FLAG_RATES if self._rng.random() < rate}
        if proof.metadata.captured_at is None:
            signals.add("MISSING_TIMESTAMP")
        wants_location = proof.verification_type == VerificationType.LOCATION
        if wants_location and proof.metadata.location is None:
            signals.add("MISSING_LOCATION_DATA")
        return frozenset(signals)

    @staticmethod
    def _summary(is_authentic: bool, score: float, flags: frozenset[str]) -> str:
        verdict = "appears authentic" if is_authentic else "could not be confirmed"
        summary = f"Proof {verdict} (score {score:.2f})"
        if flags:
            summary += f"; flags: {', '.join(sorted(flags))}"
        return summary
