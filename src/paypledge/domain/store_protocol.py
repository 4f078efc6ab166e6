"""Document Store Protocol.

Every entity read and write goes through this interface. Writes are always
version-checked:

    * ``expected_version=None`` creates a document and fails if the id exists.
    * ``expected_version=n`` replaces version ``n`` and fails if the stored
      version differs.

Both failures raise ConcurrencyConflictError; the caller re-reads and retries.
``commit`` applies several writes as one all-or-nothing unit.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

DocumentPredicate = Callable[[dict[str, Any]], bool]


@dataclass(frozen=True)
class StoredDocument:
    id: str
    kind: str
    version: int
    body: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DocumentWrite:
    """One pending write inside an atomic commit."""

    id: str
    body: dict[str, Any]
    expected_version: int | None = None

    @property
    def kind(self) -> str:
        return str(self.body.get("kind", "document"))


@runtime_checkable
class DocumentStore(Protocol):
    async def get(self, doc_id: str) -> StoredDocument | None:
        """Fetch a document, or None if it does not exist."""
        ...

    async def put(
        self, doc_id: str, body: dict[str, Any], expected_version: int | None = None
    ) -> int:
        """Write one document and return its new version."""
        ...

    async def commit(self, writes: Sequence[DocumentWrite]) -> list[int]:
        """Apply all writes atomically and return the new versions in order."""
        ...

    async def query(
        self, predicate: DocumentPredicate, kind: str | None = None
    ) -> list[StoredDocument]:
        """Return every document (optionally of one kind) matching ``predicate``."""
        ...
