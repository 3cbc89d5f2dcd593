"""
Unit Tests — IngestionCoordinator
══════════════════════════════════
Runs against a real per-test Runtime (SQLite metadata DB under tmp_path,
in-memory index, local file store) with the worker task running.

Coverage targets:
  ✅ Valid PDF / DOCX  → stored, record committed, job enqueued, indexed
  ✅ Upper-case extension accepted
  ✅ Empty part        → EMPTY_FILE
  ✅ Bad extension     → UNSUPPORTED_FILE_TYPE (nothing stored)
  ✅ Magic mismatch    → CONTENT_TYPE_MISMATCH
  ✅ Oversized         → FILE_TOO_LARGE
  ✅ Synchronous mode  → processed before returning
  ✅ Closed queue      → rejected outcome
  ✅ Corrupt document  → indexed with text length 0 (degraded, not failed)
  ✅ Missing original / index write failure → record marked failed
  ✅ Unfinished records from a previous run are re-queued
"""

from __future__ import annotations

import io
from unittest.mock import patch

import pytest
from fastapi import UploadFile

from portal.models.documents import DocumentMetadata, new_document_id
from portal.schemas.documents import DocumentType, ProcessingStatus
from portal.search.index import IndexWriteError
from portal.services.ingestion import SubmissionOutcome, validate_upload
from tests.conftest import make_pdf, wait_until


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_upload_file(filename: str, content: bytes) -> UploadFile:
    """Build a FastAPI UploadFile backed by an in-memory BytesIO buffer."""
    return UploadFile(filename=filename, file=io.BytesIO(content))


async def _record(runtime, document_id: str) -> DocumentMetadata | None:
    async with runtime.session_factory() as session:
        return await session.get(DocumentMetadata, document_id)


def _status_is(runtime, document_id: str, *statuses: ProcessingStatus):
    async def _check() -> bool:
        record = await _record(runtime, document_id)
        return record is not None and record.status in {s.value for s in statuses}
    return _check


async def _create_record(runtime, doc_type: DocumentType, data: bytes | None, name: str) -> str:
    """Insert a pending record (and optionally the stored original) directly."""
    document_id = new_document_id()
    stored_name = runtime.files.stored_name(document_id, doc_type)
    if data is not None:
        await runtime.files.save(document_id, doc_type, data)
    async with runtime.session_factory() as session:
        async with session.begin():
            session.add(DocumentMetadata(
                id=document_id,
                original_file_name=name,
                stored_file_name=stored_name,
                document_type=doc_type.value,
                size_bytes=len(data or b""),
            ))
    return document_id


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestValidateUpload:

    def test_pdf_accepted(self, sample_pdf_bytes):
        assert validate_upload("report.pdf", sample_pdf_bytes) == (DocumentType.PDF, None)

    def test_extension_is_case_insensitive(self, sample_docx_bytes):
        doc_type, error = validate_upload("PLAN.DOCX", sample_docx_bytes)
        assert doc_type is DocumentType.DOCX and error is None

    def test_empty_part(self):
        _, error = validate_upload("", b"")
        assert error.code == "EMPTY_FILE"

    def test_unsupported_extension(self, exe_bytes):
        _, error = validate_upload("setup.exe", exe_bytes)
        assert error.code == "UNSUPPORTED_FILE_TYPE"
        assert error.field == "setup.exe"

    def test_missing_extension(self, sample_pdf_bytes):
        _, error = validate_upload("report", sample_pdf_bytes)
        assert error.code == "UNSUPPORTED_FILE_TYPE"

    def test_magic_bytes_must_match_extension(self, sample_docx_bytes):
        _, error = validate_upload("renamed.pdf", sample_docx_bytes)
        assert error.code == "CONTENT_TYPE_MISMATCH"

    def test_oversized(self, oversized_file_bytes):
        _, error = validate_upload("huge.pdf", oversized_file_bytes)
        assert error.code == "FILE_TOO_LARGE"


# ─────────────────────────────────────────────────────────────────────────────
# Queued pipeline
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestQueuedIngestion:

    async def test_pdf_is_enqueued_then_indexed(self, runtime, sample_pdf_bytes):
        result = await runtime.coordinator.ingest(_make_upload_file("budget.pdf", sample_pdf_bytes))

        assert result.error is None
        assert result.outcome is SubmissionOutcome.ENQUEUED
        assert result.document.processing_status is ProcessingStatus.PENDING
        doc_id = result.document.document_id

        await wait_until(_status_is(runtime, doc_id, ProcessingStatus.INDEXED))
        record = await _record(runtime, doc_id)
        assert record.extracted_text_length > 0
        assert record.processed_at is not None
        assert record.stored_file_name == f"{doc_id}.pdf"
        assert runtime.files.exists(record.stored_file_name)

        hits = runtime.index.search("budget")
        assert [h.document_id for h in hits] == [doc_id]
        assert hits[0].file_name == "budget.pdf"
        assert hits[0].doc_type == "PDF"

    async def test_docx_with_uppercase_extension(self, runtime, sample_docx_bytes):
        result = await runtime.coordinator.ingest(_make_upload_file("ROTA.DOCX", sample_docx_bytes))
        doc_id = result.document.document_id

        await wait_until(_status_is(runtime, doc_id, ProcessingStatus.INDEXED))
        assert [h.document_id for h in runtime.index.search("rota", "DOCX")] == [doc_id]

    async def test_rejected_file_stores_nothing(self, runtime, exe_bytes):
        result = await runtime.coordinator.ingest(_make_upload_file("virus.exe", exe_bytes))

        assert result.document is None
        assert result.error.code == "UNSUPPORTED_FILE_TYPE"
        assert list(runtime.files.root.iterdir()) == []

    async def test_client_path_components_are_stripped(self, runtime, sample_pdf_bytes):
        result = await runtime.coordinator.ingest(
            _make_upload_file("../../etc/budget.pdf", sample_pdf_bytes)
        )
        assert result.document.file_name == "budget.pdf"

    async def test_corrupt_document_indexed_with_zero_length(self, runtime):
        result = await runtime.coordinator.ingest(
            _make_upload_file("broken.pdf", b"%PDF-1.4 this is not a pdf")
        )
        doc_id = result.document.document_id

        await wait_until(_status_is(runtime, doc_id, ProcessingStatus.INDEXED, ProcessingStatus.FAILED))
        record = await _record(runtime, doc_id)
        assert record.status == ProcessingStatus.INDEXED.value
        assert record.extracted_text_length == 0
        assert [h.document_id for h in runtime.index.search(None, "PDF")] == [doc_id]

    async def test_closed_queue_rejects_submission(self, runtime, sample_pdf_bytes):
        runtime.queue.close()

        result = await runtime.coordinator.ingest(_make_upload_file("late.pdf", sample_pdf_bytes))

        assert result.outcome is SubmissionOutcome.REJECTED
        assert result.error.code == "QUEUE_CLOSED"

    async def test_missing_original_marks_record_failed(self, runtime):
        doc_id = await _create_record(runtime, DocumentType.PDF, None, "gone.pdf")

        outcome = await runtime.coordinator.submit_document(
            doc_id, "gone.pdf", "PDF", b"", stored_file_name=f"{doc_id}.pdf",
        )

        assert outcome is SubmissionOutcome.ENQUEUED
        await wait_until(_status_is(runtime, doc_id, ProcessingStatus.FAILED))
        record = await _record(runtime, doc_id)
        assert "Could not read stored file" in record.error_message
        assert runtime.worker.failed == 0          # handled inside the job

    async def test_index_write_failure_marks_record_failed(self, runtime, sample_pdf_bytes):
        with patch.object(runtime.index, "upsert", side_effect=IndexWriteError("disk full")):
            result = await runtime.coordinator.ingest(_make_upload_file("a.pdf", sample_pdf_bytes))
            doc_id = result.document.document_id
            await wait_until(_status_is(runtime, doc_id, ProcessingStatus.FAILED))

        record = await _record(runtime, doc_id)
        assert "disk full" in record.error_message
        assert record.extracted_text_length > 0

    async def test_submit_document_saves_content_when_not_stored(self, runtime):
        data = make_pdf(["solvency statement"])
        doc_id = await _create_record(runtime, DocumentType.PDF, None, "s.pdf")

        outcome = await runtime.coordinator.submit_document(doc_id, "s.pdf", DocumentType.PDF, data)

        assert outcome is SubmissionOutcome.ENQUEUED
        await wait_until(_status_is(runtime, doc_id, ProcessingStatus.INDEXED))
        assert [h.document_id for h in runtime.index.search("solvency")] == [doc_id]

    async def test_submit_document_rejects_unknown_type(self, runtime):
        with pytest.raises(ValueError):
            await runtime.coordinator.submit_document("x", "x.txt", "TXT", b"hello")

    async def test_unfinished_records_are_requeued(self, runtime):
        data = make_pdf(["leftover intake form"])
        doc_id = await _create_record(runtime, DocumentType.PDF, data, "leftover.pdf")

        assert await runtime.coordinator.requeue_unfinished() == 1
        await wait_until(_status_is(runtime, doc_id, ProcessingStatus.INDEXED))
        assert [h.document_id for h in runtime.index.search("intake")] == [doc_id]


# ─────────────────────────────────────────────────────────────────────────────
# Synchronous mode and extraction passthrough
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestSynchronousIngestion:

    async def test_processed_before_returning(self, sync_runtime, sample_pdf_bytes):
        result = await sync_runtime.coordinator.ingest(_make_upload_file("budget.pdf", sample_pdf_bytes))

        assert result.outcome is SubmissionOutcome.PROCESSED_SYNCHRONOUSLY
        assert result.document.processing_status is ProcessingStatus.INDEXED
        assert result.document.extracted_text_length > 0

        record = await _record(sync_runtime, result.document.document_id)
        assert record.status == ProcessingStatus.INDEXED.value
        assert sync_runtime.queue.qsize() == 0
        assert sync_runtime.index.search("quarterly")[0].document_id == result.document.document_id

    async def test_requeue_is_noop(self, sync_runtime):
        assert await sync_runtime.coordinator.requeue_unfinished() == 0

    def test_extract_text_delegates_to_extractor(self, test_settings, sample_docx_bytes):
        from portal.core.runtime import Runtime

        rt = Runtime(test_settings)
        text = rt.coordinator.extract_text(io.BytesIO(sample_docx_bytes), "docx", "plan.docx")
        assert "Staffing plan" in text
