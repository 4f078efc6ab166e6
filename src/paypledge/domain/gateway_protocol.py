"""Payment Gateway Protocol.

Defines the interface the settlement orchestrator uses to move real money.
The gateway is at-most-once per idempotency key: repeating a call with a key
it has already completed returns the original result instead of charging
twice. The orchestrator always passes the PaymentRecord id as that key.

The domain layer has ZERO imports from any payment provider SDK.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class GatewayResult:
    """Closed result of one gateway call.

    Attributes:
        success: Whether the money moved.
        gateway_reference: Provider-side transaction id, when it has one.
        failure_reason: Human-readable decline reason when ``success`` is False.
    """

    success: bool
    gateway_reference: str | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "gateway_reference": self.gateway_reference,
            "failure_reason": self.failure_reason,
        }


@runtime_checkable
class PaymentGateway(Protocol):
    """Protocol that all gateway implementations must satisfy.

    Concrete implementations:
        - gateways/simulated.py (randomised success rate, for demos and tests)
    """

    async def charge(
        self, amount: Decimal, method_ref: str, idempotency_key: str
    ) -> GatewayResult:
        """Collect ``amount`` from the buyer's payment method into escrow."""
        ...

    async def payout(self, amount: Decimal, idempotency_key: str) -> GatewayResult:
        """Send ``amount`` out of escrow (to the seller or back to the buyer)."""
        ...

    async def lookup(self, idempotency_key: str) -> GatewayResult | None:
        """Return the recorded outcome for a key, or None if the gateway never saw it."""
        ...
