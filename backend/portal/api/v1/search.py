"""
Search API

GET /api/v1/search?keywords=...&doc_type=PDF|DOCX

  - keywords use the full-text query syntax (phrases, AND/OR/NOT, prefix*);
    input the index cannot parse is retried as a plain substring match and
    never produces an error response
  - doc_type is case-insensitive and ANDed with the keywords
  - neither given → empty result list
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from portal.api.dependencies import Index
from portal.schemas.documents import (
    DocumentType,
    ErrorResponse,
    SearchResponse,
    SearchResultItem,
    UploadErrors,
)
from portal.search.index import IndexEngineError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/search", tags=["Search"])


@router.get(
    "",
    response_model=SearchResponse,
    summary="Ranked full-text search over indexed documents",
    responses={
        200: {"model": SearchResponse},
        400: {"model": ErrorResponse, "description": "Unsupported doc_type filter"},
    },
)
async def search_documents(
    index:    Index,
    keywords: str | None = Query(None, max_length=1000, description="Full-text query"),
    doc_type: str | None = Query(None, description="PDF or DOCX"),
):
    type_filter: DocumentType | None = None
    if doc_type and doc_type.strip():
        type_filter = DocumentType.parse(doc_type)
        if type_filter is None:
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=UploadErrors.unsupported_search_type(doc_type).model_dump(mode="json"),
            )

    filter_value = type_filter.value if type_filter else None
    try:
        hits = await index.search_async(keywords, filter_value)
    except IndexEngineError as exc:
        logger.warning("Search degraded to empty result | keywords=%r error=%s", keywords, exc)
        hits = []

    return SearchResponse(
        keywords=keywords,
        doc_type=filter_value,
        total=len(hits),
        results=[
            SearchResultItem(
                document_id=h.document_id,
                file_name=h.file_name,
                doc_type=h.doc_type,
                score=h.score,
            )
            for h in hits
        ],
    )
