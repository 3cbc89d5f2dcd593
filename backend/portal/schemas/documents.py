"""
Document Portal — Pydantic Request/Response Schemas

Covers:
  - Accepted document types and upload limits
  - Upload batch response (per-file outcome + per-file errors)
  - Document metadata / status response
  - Search results
  - Structured error bodies (400, 404, 413, 422, 500)

Design decisions:
  - document_id is always server-generated (UUID4 string); never client-supplied.
  - The document type is derived from the file extension and confirmed by the
    file's magic bytes before anything is stored.
  - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Accepted document types
# ---------------------------------------------------------------------------

class DocumentType(str, Enum):
    """The only two formats the pipeline understands."""
    PDF  = "PDF"
    DOCX = "DOCX"

    @classmethod
    def parse(cls, value: "str | DocumentType | None") -> "DocumentType | None":
        """Case-insensitive lookup; returns None for anything unsupported."""
        if isinstance(value, cls):
            return value
        if not value:
            return None
        return cls._value2member_map_.get(value.strip().lstrip(".").upper())

    @property
    def extension(self) -> str:
        return f".{self.value.lower()}"


ALLOWED_EXTENSIONS: frozenset[str] = frozenset(t.extension for t in DocumentType)

# Magic byte signatures, checked against the first bytes of the upload
MAGIC_BYTES: dict[DocumentType, bytes] = {
    DocumentType.PDF:  b"%PDF",
    DocumentType.DOCX: b"PK\x03\x04",   # DOCX is a ZIP container
}

# 50 MB hard ceiling per file
MAX_FILE_SIZE_BYTES: int = 50 * 1024 * 1024


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class ProcessingStatus(str, Enum):
    """
    Maps to document_metadata.status.
    Transitions: pending → processing → indexed | failed
    """
    PENDING     = "pending"      # stored and queued, worker has not picked it up
    PROCESSING  = "processing"   # extraction / indexing in progress
    INDEXED     = "indexed"      # searchable
    FAILED      = "failed"       # extraction or indexing raised


# ---------------------------------------------------------------------------
# Upload responses
# ---------------------------------------------------------------------------

class DocumentUploadResult(BaseModel):
    """Outcome for one accepted file of an upload batch."""
    document_id:           str              = Field(..., description="Server-generated document id")
    file_name:             str              = Field(..., description="Original file name")
    document_type:         DocumentType
    size_bytes:            int
    processing_status:     ProcessingStatus = Field(
        ProcessingStatus.PENDING,
        description="pending when queued; indexed/failed when processed inline",
    )
    extracted_text_length: int | None       = None


class BatchUploadResponse(BaseModel):
    """
    Returned by POST /documents/upload.
    202 when at least one file was queued, 200 when everything was processed
    inline. Rejected files are listed in `errors` and do not fail the batch.
    """
    message:   str
    documents: list[DocumentUploadResult] = Field(default_factory=list)
    errors:    list["ErrorDetail"]        = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Metadata response: GET /documents/{id}
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    document_id:           str = Field(..., validation_alias="id")
    original_file_name:    str
    document_type:         DocumentType
    size_bytes:            int
    upload_timestamp:      datetime
    processing_status:     ProcessingStatus = Field(..., validation_alias="status")
    extracted_text_length: int | None = None
    error_message:         str | None = None
    processed_at:          datetime | None = None


class DocumentListResponse(BaseModel):
    page:      int
    limit:     int
    documents: list[DocumentStatusResponse]


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchResultItem(BaseModel):
    """One ranked hit."""
    document_id: str
    file_name:   str
    doc_type:    str
    score:       float


class SearchResponse(BaseModel):
    keywords: str | None
    doc_type: str | None
    total:    int
    results:  list[SearchResultItem]


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error: may appear in a list."""
    field:   str | None = Field(None, description="Request field or file name that caused the error")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


BatchUploadResponse.model_rebuild()


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps route handlers thin)
# ---------------------------------------------------------------------------

class UploadErrors:
    """Factories for every documented error case."""

    @staticmethod
    def unsupported_file_type(filename: str, detected_type: str) -> ErrorDetail:
        return ErrorDetail(
            field=filename,
            message=(
                f"'{filename}' has an unsupported type '{detected_type or 'none'}'. "
                "Only PDF or DOCX are allowed."
            ),
            code="UNSUPPORTED_FILE_TYPE",
        )

    @staticmethod
    def content_mismatch(filename: str, declared: DocumentType) -> ErrorDetail:
        return ErrorDetail(
            field=filename,
            message=f"'{filename}' does not contain valid {declared.value} content.",
            code="CONTENT_TYPE_MISMATCH",
        )

    @staticmethod
    def empty_file(filename: str | None) -> ErrorDetail:
        return ErrorDetail(
            field=filename,
            message="An empty file part was skipped.",
            code="EMPTY_FILE",
        )

    @staticmethod
    def file_too_large(filename: str, size_bytes: int) -> ErrorDetail:
        return ErrorDetail(
            field=filename,
            message=f"Received {size_bytes:,} bytes; limit is {MAX_FILE_SIZE_BYTES:,} bytes.",
            code="FILE_TOO_LARGE",
        )

    @staticmethod
    def processing_error(filename: str, detail: str) -> ErrorDetail:
        return ErrorDetail(
            field=filename,
            message=f"Error processing {filename}: {detail}",
            code="PROCESSING_ERROR",
        )

    @staticmethod
    def queue_closed(filename: str) -> ErrorDetail:
        return ErrorDetail(
            field=filename,
            message="The ingestion queue is shutting down; the document was stored but not queued.",
            code="QUEUE_CLOSED",
        )

    @staticmethod
    def missing_files() -> ErrorResponse:
        return ErrorResponse(
            error_code="MISSING_FILE",
            message="No files uploaded.",
            details=[
                ErrorDetail(
                    field="files",
                    message="The 'files' multipart field is required.",
                    code="MISSING_FILE",
                )
            ],
        )

    @staticmethod
    def nothing_accepted(details: list[ErrorDetail]) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_REQUEST",
            message="None of the uploaded files could be accepted.",
            details=details,
        )

    @staticmethod
    def unsupported_search_type(value: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="UNSUPPORTED_DOCUMENT_TYPE",
            message=f"Document type '{value}' is not supported. Use PDF or DOCX.",
            details=[
                ErrorDetail(field="doc_type", message="Expected PDF or DOCX.", code="UNSUPPORTED_DOCUMENT_TYPE")
            ],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def document_not_found(document_id: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
            details=[],
        )
