"""SQL DocumentStore over the ``documents`` table.

Writes are version-checked in SQL:

    create  ->  INSERT                       (duplicate id  -> conflict)
    replace ->  UPDATE ... WHERE version = n (0 rows matched -> conflict)

``commit`` runs every write inside one database transaction, so a conflict
on the last document rolls back the first. Any other SQLAlchemy failure is
surfaced as PersistenceError with nothing written.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from paypledge.domain.exceptions import (
    ConcurrencyConflictError,
    PersistenceError,
    ValidationError,
)
from paypledge.domain.store_protocol import DocumentWrite, StoredDocument
from paypledge.infrastructure.database.orm_models import DocumentRow
from paypledge.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from paypledge.domain.store_protocol import DocumentPredicate

logger = get_logger(__name__)


class SqlDocumentStore:
    """DocumentStore backed by PostgreSQL (JSONB) or SQLite (JSON)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, doc_id: str) -> StoredDocument | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(DocumentRow, doc_id)
                if row is None:
                    return None
                return _to_stored(row)
        except SQLAlchemyError as exc:
            logger.error("store.read_failed", document_id=doc_id, error=str(exc))
            raise PersistenceError(f"Could not read document {doc_id}: {exc}") from exc

    async def put(
        self, doc_id: str, body: dict[str, Any], expected_version: int | None = None
    ) -> int:
        versions = await self.commit([DocumentWrite(doc_id, body, expected_version)])
        return versions[0]

    async def commit(self, writes: Sequence[DocumentWrite]) -> list[int]:
        ids = [w.id for w in writes]
        if len(set(ids)) != len(ids):
            raise ValidationError("A commit may write each document only once", "writes")

        now = datetime.now(UTC)
        try:
            async with self._session_factory() as session, session.begin():
                versions = [await self._apply(session, write, now) for write in writes]
        except SQLAlchemyError as exc:
            logger.error("store.commit_failed", documents=ids, error=str(exc))
            raise PersistenceError(f"Could not commit documents {ids}: {exc}") from exc

        logger.debug("store.committed", documents=len(writes))
        return versions

    async def query(
        self, predicate: DocumentPredicate, kind: str | None = None
    ) -> list[StoredDocument]:
        stmt = select(DocumentRow).order_by(DocumentRow.created_at, DocumentRow.id)
        if kind is not None:
            stmt = stmt.where(DocumentRow.kind == kind)
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = list(result.scalars().all())
        except SQLAlchemyError as exc:
            logger.error("store.query_failed", kind=kind, error=str(exc))
            raise PersistenceError(f"Could not query documents: {exc}") from exc

        return [doc for doc in map(_to_stored, rows) if predicate(doc.body)]

    async def _apply(self, session: AsyncSession, write: DocumentWrite, now: datetime) -> int:
        if write.expected_version is None:
            try:
                await session.execute(
                    insert(DocumentRow).values(
                        id=write.id,
                        kind=write.kind,
                        version=1,
                        body=write.body,
                        created_at=now,
                        updated_at=now,
                    )
                )
            except IntegrityError as exc:
                raise ConcurrencyConflictError(write.id, None) from exc
            return 1

        new_version = write.expected_version + 1
        result = await session.execute(
            update(DocumentRow)
            .where(
                DocumentRow.id == write.id,
                DocumentRow.version == write.expected_version,
            )
            .values(kind=write.kind, version=new_version, body=write.body, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(write.id, write.expected_version)
        return new_version


def _to_stored(row: DocumentRow) -> StoredDocument:
    return StoredDocument(id=row.id, kind=row.kind, version=row.version, body=dict(row.body))
