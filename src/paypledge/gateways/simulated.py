"""Simulated payment gateway.

Stands in for a real card/bank processor in demos and tests. Each call
succeeds with probability ``success_rate`` drawn from an injectable
``random.Random``, so a seeded instance is fully deterministic.

The gateway honours the at-most-once contract: the first *successful*
outcome for an idempotency key is remembered and replayed for every later
call with that key. Declines are remembered too, but a later call under the
same key is treated as a fresh attempt, like a processor would for a
declined authorisation.
"""

from __future__ import annotations

import asyncio
import random
import uuid
from decimal import Decimal

from paypledge.domain.gateway_protocol import GatewayResult
from paypledge.logging_config import get_logger

logger = get_logger(__name__)

DECLINE_REASONS = (
    "card_declined",
    "insufficient_funds",
    "processing_error",
)


class SimulatedGateway:
    """In-process PaymentGateway double with a configurable success rate."""

    def __init__(
        self,
        success_rate: float = 0.95,
        rng: random.Random | None = None,
        latency_seconds: float = 0.0,
    ) -> None:
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError(f"success_rate must be within [0, 1], got {success_rate}")
        self._success_rate = success_rate
        self._rng = rng or random.Random()
        self._latency = latency_seconds
        self._outcomes: dict[str, GatewayResult] = {}
        self.calls: list[tuple[str, str, Decimal]] = []

    async def charge(
        self, amount: Decimal, method_ref: str, idempotency_key: str
    ) -> GatewayResult:
        return await self._execute("charge", amount, idempotency_key, prefix="ch")

    async def payout(self, amount: Decimal, idempotency_key: str) -> GatewayResult:
        return await self._execute("payout", amount, idempotency_key, prefix="po")

    async def lookup(self, idempotency_key: str) -> GatewayResult | None:
        return self._outcomes.get(idempotency_key)

    async def _execute(
        self, operation: str, amount: Decimal, idempotency_key: str, prefix: str
    ) -> GatewayResult:
        previous = self._outcomes.get(idempotency_key)
        if previous is not None and previous.success:
            logger.debug("gateway.replayed", operation=operation, idempotency_key=idempotency_key)
            return previous

        if self._latency:
            await asyncio.sleep(self._latency)

        self.calls.append((operation, idempotency_key, amount))
        if self._rng.random() < self._success_rate:
            result = GatewayResult(
                success=True,
                gateway_reference=f"{prefix}_{uuid.UUID(int=self._rng.getrandbits(128)).hex}",
            )
        else:
            result = GatewayResult(
                success=False,
                failure_reason=self._rng.choice(DECLINE_REASONS),
            )

        self._outcomes[idempotency_key] = result
        logger.info(
            "gateway.simulated",
            operation=operation,
            amount=str(amount),
            success=result.success,
            failure_reason=result.failure_reason,
        )
        return result
