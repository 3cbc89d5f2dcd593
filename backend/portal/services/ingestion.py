"""
Document Ingestion Coordinator

Orchestrates the upload pipeline for each file of a batch:
  1. Read the part with a hard size ceiling; skip empty parts
  2. Derive the type from the extension (.pdf / .docx, case-insensitive)
  3. Confirm it with the file's magic bytes (never the client Content-Type)
  4. Store the original under <upload_dir>/<document_id><ext>
  5. Insert the metadata record (status=pending) and commit
  6. Submit the document:
       queued       → a ProcessDocumentJob is put on the WorkQueue
       synchronous  → extraction + indexing run inline before returning
  7. Return the per-file outcome

Guarantees:
  - document_id is server-generated and is the same key in the metadata
    store, the file store and the full-text index.
  - The metadata record is committed before the job is enqueued, so the
    worker can never pick up a document whose record is not visible yet.
  - A rejected file never fails the batch; it becomes an entry in `errors`.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncContextManager, BinaryIO, Callable

from fastapi import UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.core.config import settings
from portal.db.session import session_scope
from portal.models.documents import DocumentMetadata, new_document_id
from portal.processing.extractor import TextExtractor
from portal.schemas.documents import (
    ALLOWED_EXTENSIONS,
    MAGIC_BYTES,
    MAX_FILE_SIZE_BYTES,
    DocumentType,
    DocumentUploadResult,
    ErrorDetail,
    ProcessingStatus,
    UploadErrors,
)
from portal.storage.files import LocalFileStore
from portal.workers.jobs import (
    ProcessDocumentJob,
    ProcessingOutcome,
    ServiceScope,
    WorkItem,
    process_document,
)
from portal.workers.queue import WorkQueue

logger = logging.getLogger(__name__)


class SubmissionOutcome(str, Enum):
    ENQUEUED                = "enqueued"
    PROCESSED_SYNCHRONOUSLY = "processed_synchronously"
    REJECTED                = "rejected"      # queue closed (shutdown)


@dataclass
class IngestResult:
    """Per-file result of ingest(): exactly one of document / error is set."""
    document: DocumentUploadResult | None = None
    error:    ErrorDetail | None = None
    outcome:  SubmissionOutcome | None = None


# ---------------------------------------------------------------------------
# File type validation helpers
# ---------------------------------------------------------------------------

def _get_extension(filename: str) -> str:
    """Return lowercased file extension including the dot."""
    parts = filename.rsplit(".", 1)
    return f".{parts[-1].lower()}" if len(parts) == 2 else ""


def _display_name(filename: str) -> str:
    """Strip any directory component a client may have sent."""
    return filename.replace("\\", "/").rsplit("/", 1)[-1].strip()[:255]


def validate_upload(filename: str, data: bytes) -> tuple[DocumentType | None, ErrorDetail | None]:
    """Type of an accepted upload, or the reason it is rejected."""
    if not data:
        return None, UploadErrors.empty_file(filename or None)

    ext = _get_extension(filename)
    if ext not in ALLOWED_EXTENSIONS:
        return None, UploadErrors.unsupported_file_type(filename, ext)
    doc_type = DocumentType.parse(ext)

    if len(data) > MAX_FILE_SIZE_BYTES:
        return None, UploadErrors.file_too_large(filename, len(data))

    if not data.startswith(MAGIC_BYTES[doc_type]):
        return None, UploadErrors.content_mismatch(filename, doc_type)

    return doc_type, None


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class IngestionCoordinator:
    """
    Long-lived service object owned by the Runtime.
    All collaborators are injected (testable, no hidden globals).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        scope_factory:   Callable[[], AsyncContextManager[ServiceScope]],
        queue:           WorkQueue[WorkItem],
        files:           LocalFileStore,
        extractor:       TextExtractor,
        processing_mode: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._scope_factory   = scope_factory
        self._queue           = queue
        self._files           = files
        self._extractor       = extractor
        self.processing_mode  = processing_mode or settings.processing_mode

    @property
    def synchronous(self) -> bool:
        return self.processing_mode == "synchronous"

    # ------------------------------------------------------------------
    # Boundary entry point
    # ------------------------------------------------------------------

    async def ingest(self, upload: UploadFile) -> IngestResult:
        """Validate, persist and submit one uploaded file."""
        filename = _display_name(upload.filename or "")

        # ---- Step 1: read with size guard ------------------------------
        data = await upload.read(MAX_FILE_SIZE_BYTES + 1)

        # ---- Step 2 + 3: extension and magic bytes --------------------
        doc_type, error = validate_upload(filename, data)
        if error is not None:
            logger.info("Upload rejected | file=%s code=%s", filename, error.code)
            return IngestResult(error=error)

        document_id = new_document_id()
        logger.info(
            "Ingest start | doc=%s file=%s type=%s size=%d",
            document_id, filename, doc_type.value, len(data),
        )

        # ---- Step 4: store the original -------------------------------
        try:
            stored = await self._files.save(document_id, doc_type, data)
        except OSError as exc:
            return IngestResult(error=UploadErrors.processing_error(filename, f"storage failed: {exc}"))

        # ---- Step 5: metadata record ----------------------------------
        try:
            await self._create_record(document_id, filename, doc_type, stored.stored_file_name, len(data))
        except Exception:
            self._files.delete(stored.stored_file_name)
            raise

        # ---- Step 6: submit -------------------------------------------
        outcome, processed = await self._submit(
            document_id, filename, doc_type, io.BytesIO(data), stored.stored_file_name,
        )
        if outcome is SubmissionOutcome.REJECTED:
            return IngestResult(error=UploadErrors.queue_closed(filename), outcome=outcome)

        result = DocumentUploadResult(
            document_id=document_id,
            file_name=filename,
            document_type=doc_type,
            size_bytes=len(data),
            processing_status=processed.status if processed else ProcessingStatus.PENDING,
            extracted_text_length=processed.extracted_text_length if processed else None,
        )
        return IngestResult(document=result, outcome=outcome)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def submit_document(
        self,
        document_id:      str,
        filename:         str,
        doc_type:         DocumentType | str,
        content:          BinaryIO | bytes,
        stored_file_name: str | None = None,
    ) -> SubmissionOutcome:
        """
        Hand a document whose metadata record already exists to the pipeline.

        Queued mode needs the original in the file store; it is written from
        `content` when no stored_file_name is given.
        """
        doc_type = DocumentType.parse(doc_type)
        if doc_type is None:
            raise ValueError("doc_type must be PDF or DOCX")
        if isinstance(content, (bytes, bytearray)):
            content = io.BytesIO(content)

        if stored_file_name is None and not self.synchronous:
            if content.seekable():
                content.seek(0)
            stored = await self._files.save(document_id, doc_type, content.read())
            stored_file_name = stored.stored_file_name

        outcome, _ = await self._submit(document_id, filename, doc_type, content, stored_file_name)
        return outcome

    def extract_text(self, content: BinaryIO, doc_type: DocumentType | str, label: str) -> str:
        """Synchronous extraction through the shared extractor."""
        return self._extractor.extract(content, doc_type, label)

    async def requeue_unfinished(self, limit: int = 500) -> int:
        """
        Re-submit documents left pending/processing by a previous run.
        Returns the number of jobs enqueued.
        """
        if self.synchronous:
            return 0

        async with session_scope(self._session_factory) as db:
            result = await db.execute(
                select(DocumentMetadata)
                .where(DocumentMetadata.status.in_((
                    ProcessingStatus.PENDING.value,
                    ProcessingStatus.PROCESSING.value,
                )))
                .order_by(DocumentMetadata.upload_timestamp)
                .limit(limit)
            )
            stale = result.scalars().all()

        queued = 0
        for doc in stale:
            job = ProcessDocumentJob(
                document_id=doc.id,
                original_file_name=doc.original_file_name,
                document_type=DocumentType(doc.document_type),
                stored_file_name=doc.stored_file_name,
            )
            if not await self._queue.enqueue(job):
                break
            queued += 1

        if queued:
            logger.info("Re-queued unfinished documents | count=%d", queued)
        return queued

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _create_record(
        self,
        document_id:      str,
        filename:         str,
        doc_type:         DocumentType,
        stored_file_name: str,
        size_bytes:       int,
    ) -> None:
        async with session_scope(self._session_factory) as db:
            db.add(DocumentMetadata(
                id=document_id,
                original_file_name=filename,
                stored_file_name=stored_file_name,
                document_type=doc_type.value,
                size_bytes=size_bytes,
                status=ProcessingStatus.PENDING.value,
            ))

    async def _submit(
        self,
        document_id:      str,
        filename:         str,
        doc_type:         DocumentType,
        content:          BinaryIO,
        stored_file_name: str | None,
    ) -> tuple[SubmissionOutcome, ProcessingOutcome | None]:
        if self.synchronous:
            async with self._scope_factory() as scope:
                processed = await process_document(
                    scope,
                    document_id=document_id,
                    file_name=filename,
                    doc_type=doc_type,
                    stored_file_name=stored_file_name,
                    content=content,
                )
            logger.info(
                "Processed synchronously | doc=%s status=%s", document_id, processed.status.value,
            )
            return SubmissionOutcome.PROCESSED_SYNCHRONOUSLY, processed

        job = ProcessDocumentJob(
            document_id=document_id,
            original_file_name=filename,
            document_type=doc_type,
            stored_file_name=stored_file_name,
        )
        if not await self._queue.enqueue(job):
            logger.warning("Queue closed, document left pending | doc=%s", document_id)
            return SubmissionOutcome.REJECTED, None

        logger.info("Enqueued | doc=%s depth=%d", document_id, self._queue.qsize())
        return SubmissionOutcome.ENQUEUED, None
