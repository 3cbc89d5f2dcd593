"""
Document Ingestion API Router
POST /api/v1/documents/upload
GET  /api/v1/documents
GET  /api/v1/documents/{document_id}

Request lifecycle (upload):
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Every multipart `files` part is handled on its own    │
  │ 2. Extension + magic bytes validation, 50 MB ceiling     │
  │ 3. Original stored, metadata row committed (pending)     │
  │ 4. Job enqueued → 202, or processed inline → 200         │
  │ 5. Rejected parts listed in `errors`; 400 only when no   │
  │    part was accepted                                     │
  └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, File, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy import select

from portal.api.dependencies import DB, Coordinator
from portal.models.documents import DocumentMetadata
from portal.schemas.documents import (
    BatchUploadResponse,
    DocumentListResponse,
    DocumentStatusResponse,
    ErrorResponse,
    UploadErrors,
)
from portal.services.ingestion import SubmissionOutcome

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Ingestion"],
)


# ---------------------------------------------------------------------------
# POST /documents/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=BatchUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload one or more documents for indexing",
    description=(
        "Accepts PDF or DOCX files up to 50 MB each. "
        "Returns 202 when processing was queued, 200 when it already completed. "
        "Poll GET /documents/{id} for pipeline progress."
    ),
    responses={
        200: {"model": BatchUploadResponse, "description": "All files processed synchronously"},
        202: {"model": BatchUploadResponse, "description": "Files accepted for processing"},
        400: {"model": ErrorResponse, "description": "No files, or none could be accepted"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def upload_documents(
    request:     Request,
    coordinator: Coordinator,
    files:       list[UploadFile] = File(default=[], description="PDF or DOCX files (max 50 MB each)"),
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)

    if not files:
        body = UploadErrors.missing_files()
        body.request_id = request_id
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json"))

    response = BatchUploadResponse(message="")
    outcomes: list[SubmissionOutcome] = []

    for upload in files:
        result = await coordinator.ingest(upload)
        if result.error is not None:
            response.errors.append(result.error)
        if result.document is not None:
            response.documents.append(result.document)
            outcomes.append(result.outcome)

    if not response.documents:
        body = UploadErrors.nothing_accepted(response.errors)
        body.request_id = request_id
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body.model_dump(mode="json"))

    queued = SubmissionOutcome.ENQUEUED in outcomes
    response.message = (
        f"{len(response.documents)} document(s) accepted for processing."
        if queued else
        f"{len(response.documents)} document(s) processed."
    )
    logger.info(
        "Upload batch | accepted=%d rejected=%d queued=%s request_id=%s",
        len(response.documents), len(response.errors), queued, request_id,
    )

    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED if queued else status.HTTP_200_OK,
        content=response.model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# GET /documents
# ---------------------------------------------------------------------------

@router.get(
    "",
    response_model=DocumentListResponse,
    summary="List document metadata, newest first",
)
async def list_documents(
    db:    DB,
    page:  int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> DocumentListResponse:
    result = await db.execute(
        select(DocumentMetadata)
        .order_by(DocumentMetadata.upload_timestamp.desc(), DocumentMetadata.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    docs = result.scalars().all()
    return DocumentListResponse(
        page=page,
        limit=limit,
        documents=[DocumentStatusResponse.model_validate(d) for d in docs],
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}",
    response_model=DocumentStatusResponse,
    summary="Metadata and processing status of one document",
    responses={
        200: {"model": DocumentStatusResponse},
        404: {"model": ErrorResponse},
    },
)
async def get_document(document_id: str, db: DB):
    doc = await db.get(DocumentMetadata, document_id)
    if doc is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=UploadErrors.document_not_found(document_id).model_dump(mode="json"),
        )
    return DocumentStatusResponse.model_validate(doc)
