"""
Ingestion Jobs — deferred document processing

Job: ProcessDocumentJob
  1. Load the metadata record, status → processing (committed)
  2. Reopen the stored original from the file store
  3. Extract text (PDF/DOCX) via the shared TextExtractor
  4. Upsert {id, file name, type, text} into the full-text index
  5. Record extracted_text_length, status → indexed (or failed)

A job carries identifiers only (document id, names, type). The session,
extractor, index and file store it uses come from the ServiceScope the
worker acquires for it, so nothing request-scoped outlives the upload
request that created the job.

process_document() is shared with synchronous mode, where the coordinator
runs the same steps inline and hands over the uploaded bytes directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, BinaryIO, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from portal.models.documents import DocumentMetadata
from portal.processing.extractor import TextExtractor
from portal.schemas.documents import DocumentType, ProcessingStatus
from portal.search.index import IndexEngine, IndexEngineError
from portal.storage.files import LocalFileStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Per-item scope
# ---------------------------------------------------------------------------

@dataclass
class ServiceScope:
    """
    Resources one work item may use.

    `db` is a fresh session owned by this item only; the other members are
    process-wide singletons. Work items commit `db` themselves.
    """
    db:        AsyncSession
    extractor: TextExtractor
    index:     IndexEngine
    files:     LocalFileStore


WorkItem = Callable[[ServiceScope, asyncio.Event], Awaitable[None]]


@dataclass(frozen=True)
class ProcessingOutcome:
    status:                ProcessingStatus
    extracted_text_length: int | None = None
    error_message:         str | None = None


# ---------------------------------------------------------------------------
# Work item
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessDocumentJob:
    document_id:        str
    original_file_name: str
    document_type:      DocumentType
    stored_file_name:   str

    @property
    def description(self) -> str:
        return f"process_document(doc={self.document_id})"

    async def __call__(self, scope: ServiceScope, stop_event: asyncio.Event) -> None:
        if stop_event.is_set():
            logger.info("Shutdown requested, leaving document pending | doc=%s", self.document_id)
            return
        await process_document(
            scope,
            document_id=self.document_id,
            file_name=self.original_file_name,
            doc_type=self.document_type,
            stored_file_name=self.stored_file_name,
        )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

async def process_document(
    scope:            ServiceScope,
    *,
    document_id:      str,
    file_name:        str,
    doc_type:         DocumentType,
    stored_file_name: str | None = None,
    content:          BinaryIO | None = None,
) -> ProcessingOutcome:
    """
    Extract, index and record the outcome for one document.

    Reads `content` when given, otherwise reopens `stored_file_name` from the
    file store. Failures are recorded on the metadata row and returned; only
    database errors propagate.
    """
    db = scope.db
    logger.info("Processing | doc=%s type=%s file=%s", document_id, doc_type.value, file_name)

    # --- Phase 1: status → processing -----------------------------------
    record = await db.get(DocumentMetadata, document_id)
    if record is None:
        logger.warning("Metadata record missing, indexing anyway | doc=%s", document_id)
    else:
        record.status = ProcessingStatus.PROCESSING.value
        record.error_message = None
        await db.commit()

    # --- Phase 2 + 3: read original, extract text -----------------------
    try:
        if content is not None:
            text = await scope.extractor.extract_async(content, doc_type, file_name)
        else:
            if stored_file_name is None:
                raise FileNotFoundError(f"No stored original for document {document_id}")
            with scope.files.open(stored_file_name) as fh:
                text = await scope.extractor.extract_async(fh, doc_type, file_name)
    except OSError as exc:
        logger.exception("Reading original failed | doc=%s file=%s", document_id, stored_file_name)
        return await _finish(db, record, ProcessingOutcome(
            ProcessingStatus.FAILED, error_message=f"Could not read stored file: {exc}",
        ))

    # --- Phase 4: index --------------------------------------------------
    try:
        await scope.index.upsert_async(document_id, file_name, doc_type.value, text)
    except IndexEngineError as exc:
        logger.error("Indexing failed | doc=%s error=%s", document_id, exc)
        return await _finish(db, record, ProcessingOutcome(
            ProcessingStatus.FAILED, len(text), f"Indexing error: {exc}",
        ))

    # --- Phase 5: outcome -------------------------------------------------
    outcome = await _finish(db, record, ProcessingOutcome(ProcessingStatus.INDEXED, len(text)))
    logger.info("Processing complete | doc=%s chars=%d", document_id, len(text))
    return outcome


async def _finish(
    db:      AsyncSession,
    record:  DocumentMetadata | None,
    outcome: ProcessingOutcome,
) -> ProcessingOutcome:
    if record is not None:
        record.status = outcome.status.value
        record.extracted_text_length = outcome.extracted_text_length
        record.error_message = outcome.error_message
        record.processed_at = datetime.now(timezone.utc)
        await db.commit()
    return outcome
