"""Proof verifier implementations and factory.

Two verifiers:
    - MockVerifier:       Instant, configurable verdict for tests and dry runs
    - SimulatedVerifier:  Metadata heuristic with seeded randomness

The VerifierFactory creates the correct verifier from a config dict whose
"type" key names the backend (see Settings.verifier_backend).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from paypledge.domain.verifier_protocol import ProofVerifier, VerificationResult
from paypledge.verifiers.simulated import SimulatedVerifier

if TYPE_CHECKING:
    from collections.abc import Iterable

    from paypledge.domain.models import ProofSubmission, VerificationRequirement


class MockVerifier:
    """Instant mock verifier returning the same configured verdict every time.

    Config keys (all optional):
        - score (float): Score to return. Default 1.0.
        - flags (list[str]): Risk flags to attach. Default none.
        - requires_human_review (bool): Default False.
        - summary (str): Custom summary message.
    """

    def __init__(
        self,
        score: float = 1.0,
        flags: Iterable[str] = (),
        requires_human_review: bool = False,
        summary: str | None = None,
    ) -> None:
        self._result = VerificationResult(
            score=score,
            is_authentic=score >= 0.7,
            flags=frozenset(flags),
            requires_human_review=requires_human_review,
            summary=summary or f"Mock verification (score {score:.2f})",
        )
        self.judged: list[str] = []

    async def judge(
        self,
        proof: ProofSubmission,
        requirement: VerificationRequirement | None,
    ) -> VerificationResult:
        self.judged.append(proof.id)
        return self._result


class VerifierFactory:
    """Factory that creates the correct verifier from a config dict.

    Usage:
        verifier = VerifierFactory.create({"type": "simulated", "rng": random.Random(7)})
        verifier = VerifierFactory.create({"type": "mock", "score": 0.4})
    """

    _registry: dict[str, type] = {
        "mock": MockVerifier,
        "simulated": SimulatedVerifier,
    }

    @classmethod
    def create(cls, config: dict[str, Any]) -> ProofVerifier:
        """Create a verifier instance.

        Raises:
            ValueError: If the type is unknown or missing.
        """
        v_type = config.get("type")
        if not v_type:
            raise ValueError(
                "verifier config must contain a 'type' key. "
                f"Valid types: {list(cls._registry.keys())}"
            )

        verifier_class = cls._registry.get(v_type)
        if verifier_class is None:
            raise ValueError(
                f"Unknown verifier type: '{v_type}'. "
                f"Valid types: {list(cls._registry.keys())}"
            )

        options = {k: v for k, v in config.items() if k != "type"}
        return verifier_class(**options)

    @classmethod
    def get_supported_types(cls) -> list[str]:
        """Return the list of supported verifier type strings."""
        return list(cls._registry.keys())


__all__ = [
    "MockVerifier",
    "SimulatedVerifier",
    "VerifierFactory",
]
