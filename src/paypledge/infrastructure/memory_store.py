"""In-memory DocumentStore.

Used by the simulation, the test-suite and single-process deployments. A
single asyncio.Lock serialises writes so ``commit`` is all-or-nothing: every
expected version is checked before anything is applied.
"""

from __future__ import annotations

import asyncio
import copy
from typing import TYPE_CHECKING, Any

from paypledge.domain.exceptions import ConcurrencyConflictError, ValidationError
from paypledge.domain.store_protocol import DocumentWrite, StoredDocument
from paypledge.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from paypledge.domain.store_protocol import DocumentPredicate

logger = get_logger(__name__)


class InMemoryDocumentStore:
    """Dict-backed document store with optimistic versioning."""

    def __init__(self) -> None:
        self._docs: dict[str, StoredDocument] = {}
        self._lock = asyncio.Lock()

    async def get(self, doc_id: str) -> StoredDocument | None:
        doc = self._docs.get(doc_id)
        if doc is None:
            return None
        return StoredDocument(doc.id, doc.kind, doc.version, copy.deepcopy(doc.body))

    async def put(
        self, doc_id: str, body: dict[str, Any], expected_version: int | None = None
    ) -> int:
        versions = await self.commit([DocumentWrite(doc_id, body, expected_version)])
        return versions[0]

    async def commit(self, writes: Sequence[DocumentWrite]) -> list[int]:
        ids = [w.id for w in writes]
        if len(set(ids)) != len(ids):
            raise ValidationError("A commit may write each document only once", "writes")

        async with self._lock:
            for write in writes:
                self._check_version(write)

            versions: list[int] = []
            for write in writes:
                current = self._docs.get(write.id)
                version = 1 if current is None else current.version + 1
                self._docs[write.id] = StoredDocument(
                    write.id, write.kind, version, copy.deepcopy(write.body)
                )
                versions.append(version)

        logger.debug("store.committed", documents=len(writes))
        return versions

    async def query(
        self, predicate: DocumentPredicate, kind: str | None = None
    ) -> list[StoredDocument]:
        matches = []
        for doc in list(self._docs.values()):
            if kind is not None and doc.kind != kind:
                continue
            body = copy.deepcopy(doc.body)
            if predicate(body):
                matches.append(StoredDocument(doc.id, doc.kind, doc.version, body))
        return matches

    def _check_version(self, write: DocumentWrite) -> None:
        current = self._docs.get(write.id)
        if write.expected_version is None:
            if current is not None:
                raise ConcurrencyConflictError(write.id, None)
        elif current is None or current.version != write.expected_version:
            raise ConcurrencyConflictError(write.id, write.expected_version)
