"""
SQLAlchemy ORM Models — Document Metadata

One row per uploaded file. The row is created by the ingestion coordinator
before any processing starts and is updated by the ingestion job once text
extraction and indexing are done. The full-text index never writes here;
it only receives id, file name and type when a document is (re)indexed.

Identity: `id` is a UUID4 rendered as a string. The same value is the
`document_id` key inside the full-text index.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_document_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# DocumentMetadata model: document_metadata
# ---------------------------------------------------------------------------

class DocumentMetadata(Base):
    """
    Tracks a single uploaded file from upload → extraction → indexing.

    State machine (status column):
        pending   : original stored, processing not started (queued)
        processing: a job is extracting / indexing the document
        indexed   : searchable; extracted_text_length is set
        failed    : extraction or indexing raised (see error_message)

    extracted_text_length stays NULL until extraction finishes. A value of 0
    means extraction degraded (corrupt file, empty document) and the document
    is only findable by type.
    """

    __tablename__ = "document_metadata"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'indexed', 'failed')",
            name="document_metadata_status_check",
        ),
        CheckConstraint(
            "document_type IN ('PDF', 'DOCX')",
            name="document_metadata_type_check",
        ),
        Index("idx_document_metadata_uploaded", "upload_timestamp"),
        Index("idx_document_metadata_status",   "status"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_document_id,
    )

    original_file_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="File name exactly as supplied by the uploader",
    )
    stored_file_name: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        unique=True,
        comment="Name of the original inside the file store: <id>.<ext>",
    )
    document_type: Mapped[str] = mapped_column(String(8), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    upload_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    # Pipeline outcome
    extracted_text_length: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
    )
    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentMetadata id={self.id} type={self.document_type} "
            f"status={self.status} file={self.original_file_name!r}>"
        )
