"""Repository classes for document access.

Repositories translate between pydantic domain models and the raw JSON
documents of a DocumentStore. They never decide *when* to write: services
either save one document or collect ``to_write`` results into a single
atomic ``commit``.

Every model carries the version it was read at; ``to_write`` turns that into
the expected version of the next write (0 means "create").
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Generic, TypeVar

from paypledge.domain.enums import DocumentKind
from paypledge.domain.exceptions import EntityNotFoundError
from paypledge.domain.models import (
    Document,
    EscrowAccount,
    PaymentMethod,
    PaymentRecord,
    ProofSubmission,
    Transaction,
)
from paypledge.domain.store_protocol import DocumentWrite

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from paypledge.domain.store_protocol import DocumentStore, StoredDocument

DocT = TypeVar("DocT", bound=Document)


def to_write(entity: Document) -> DocumentWrite:
    """Build the versioned write that replaces (or creates) ``entity``."""
    return DocumentWrite(
        id=entity.id,
        body=entity.to_document(),
        expected_version=entity.version or None,
    )


async def commit_entities(store: DocumentStore, entities: Sequence[Document]) -> None:
    """Atomically write ``entities`` and refresh their versions in place."""
    versions = await store.commit([to_write(e) for e in entities])
    for entity, version in zip(entities, versions, strict=True):
        entity.version = version


class DocumentRepository(Generic[DocT]):
    """Typed access to one kind of document."""

    model: ClassVar[type[Document]]
    kind: ClassVar[str]
    label: ClassVar[str]

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, doc_id: str) -> DocT | None:
        stored = await self._store.get(doc_id)
        if stored is None or stored.kind != self.kind:
            return None
        return self._load(stored)

    async def require(self, doc_id: str) -> DocT:
        entity = await self.get(doc_id)
        if entity is None:
            raise EntityNotFoundError(self.label, doc_id)
        return entity

    async def save(self, entity: DocT) -> DocT:
        """Create or replace one document, version-checked."""
        write = to_write(entity)
        entity.version = await self._store.put(write.id, write.body, write.expected_version)
        return entity

    async def find(self, predicate: Callable[[dict], bool]) -> list[DocT]:
        docs = await self._store.query(predicate, kind=self.kind)
        return [self._load(doc) for doc in docs]

    def _load(self, stored: StoredDocument) -> DocT:
        entity = self.model.model_validate(stored.body)
        entity.version = stored.version
        return entity  # type: ignore[return-value]


class TransactionRepository(DocumentRepository[Transaction]):
    model = Transaction
    kind = DocumentKind.TRANSACTION.value
    label = "Transaction"

    async def list_for_party(self, user_id: str) -> list[Transaction]:
        """All transactions where ``user_id`` is buyer or seller, newest first."""
        found = await self.find(
            lambda body: user_id in (body.get("buyer_id"), body.get("seller_id"))
        )
        return sorted(found, key=lambda t: t.created_at, reverse=True)


class EscrowRepository(DocumentRepository[EscrowAccount]):
    model = EscrowAccount
    kind = DocumentKind.ESCROW.value
    label = "EscrowAccount"

    async def get_for_transaction(self, transaction_id: str) -> EscrowAccount | None:
        found = await self.find(lambda body: body.get("transaction_id") == transaction_id)
        return found[0] if found else None


class PaymentRepository(DocumentRepository[PaymentRecord]):
    model = PaymentRecord
    kind = DocumentKind.PAYMENT.value
    label = "PaymentRecord"

    async def list_for_transaction(self, transaction_id: str) -> list[PaymentRecord]:
        """Payment records for a transaction, oldest first."""
        found = await self.find(lambda body: body.get("transaction_id") == transaction_id)
        return sorted(found, key=lambda p: p.created_at)


class PaymentMethodRepository(DocumentRepository[PaymentMethod]):
    model = PaymentMethod
    kind = DocumentKind.PAYMENT_METHOD.value
    label = "PaymentMethod"

    async def list_for_user(self, user_id: str) -> list[PaymentMethod]:
        return await self.find(lambda body: body.get("user_id") == user_id)


class ProofRepository(DocumentRepository[ProofSubmission]):
    model = ProofSubmission
    kind = DocumentKind.PROOF.value
    label = "ProofSubmission"

    async def list_for_transaction(self, transaction_id: str) -> list[ProofSubmission]:
        found = await self.find(lambda body: body.get("transaction_id") == transaction_id)
        return sorted(found, key=lambda p: p.submitted_at)
