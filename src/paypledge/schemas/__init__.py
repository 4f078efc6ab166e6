from paypledge.schemas.transaction import (
    CreateTransactionRequest,
    PartySummary,
    SubmitProofRequest,
    TransactionView,
)

__all__ = [
    "CreateTransactionRequest",
    "PartySummary",
    "SubmitProofRequest",
    "TransactionView",
]
