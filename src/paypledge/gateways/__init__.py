"""Payment gateway implementations and factory.

One implementation ships with the engine:
    - SimulatedGateway: randomised success rate, at-most-once per key.

Real processors plug in by satisfying the PaymentGateway protocol.
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from paypledge.gateways.simulated import SimulatedGateway

if TYPE_CHECKING:
    from paypledge.config import Settings
    from paypledge.domain.gateway_protocol import PaymentGateway


class GatewayFactory:
    """Creates the configured gateway backend.

    Usage:
        gateway = GatewayFactory.create(settings)
        gateway = GatewayFactory.create(settings, rng=random.Random(42))
    """

    _registry: dict[str, type] = {
        "simulated": SimulatedGateway,
    }

    @classmethod
    def create(cls, settings: Settings, rng: random.Random | None = None) -> PaymentGateway:
        backend = settings.gateway_backend
        gateway_class = cls._registry.get(backend)
        if gateway_class is None:
            raise ValueError(
                f"Unknown gateway backend: '{backend}'. "
                f"Valid backends: {list(cls._registry.keys())}"
            )
        return gateway_class(
            success_rate=settings.simulated_gateway_success_rate,
            rng=rng or random.Random(),
        )

    @classmethod
    def get_supported_backends(cls) -> list[str]:
        return list(cls._registry.keys())


__all__ = ["GatewayFactory", "SimulatedGateway"]
