"""Application services — orchestration over domain rules and the document store."""

from paypledge.services.escrow_service import EscrowService
from paypledge.services.settlement_orchestrator import SettlementOrchestrator
from paypledge.services.verification_service import VerificationService

__all__ = ["EscrowService", "SettlementOrchestrator", "VerificationService"]
