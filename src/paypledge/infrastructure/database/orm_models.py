"""SQLAlchemy 2.0 ORM model for the document store.

One table:
    documents — every Transaction, EscrowAccount, PaymentRecord,
                PaymentMethod and ProofSubmission, as a JSON body.

Design decisions:
    - String primary keys (the domain generates UUID strings).
    - JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
    - ``version`` is the optimistic-concurrency token; it starts at 1 and
      only ever grows by one per write.
    - ``kind`` is indexed because every listing query filters on it.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DocumentRow(Base):
    """A versioned JSON document."""

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Document type tag: transaction, escrow, payment, paymentMethod, proof",
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    body: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("version >= 1", name="ck_documents_version_positive"),
        Index("ix_documents_kind", "kind"),
    )

    def __repr__(self) -> str:
        return f"<DocumentRow id={self.id} kind={self.kind} version={self.version}>"
