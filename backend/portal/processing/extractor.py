"""
Text Extraction
═══════════════

Maps (binary content, declared format) → plain text.

Strategy per format:
  PDF   → PdfTextStrategy   (pypdf: page text in document order, one
                             newline after every page)
  DOCX  → DocxTextStrategy  (python-docx: body paragraphs and table cells
                             in body order, one line each)

Contract of TextExtractor.extract():
  - The stream is rewound first when it is seekable (callers often read it
    once already, e.g. to persist the original).
  - An empty stream, an unsupported format or any parser failure yields "".
    Nothing is raised; the caller sees extracted length 0 and the log line
    carries the document label.

TextExtractor holds no mutable state and is safe to share between the
worker and request handlers.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from typing import BinaryIO

from docx import Document as open_docx
from docx.table import Table
from pypdf import PdfReader

from portal.schemas.documents import DocumentType

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class TextStrategy(ABC):
    """
    One format-specific extractor.

    Implementations receive the whole document as bytes and may raise;
    TextExtractor turns every exception into the empty-string outcome.
    """

    document_type: DocumentType

    @abstractmethod
    def extract(self, data: bytes, label: str) -> str:
        """Return the plain text of the document."""


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PdfTextStrategy(TextStrategy):
    document_type = DocumentType.PDF

    def extract(self, data: bytes, label: str) -> str:
        reader = PdfReader(io.BytesIO(data))
        pages = reader.pages

        if len(pages) == 0:
            logger.warning("PDF has no pages | file=%s", label)
            return ""

        parts: list[str] = []
        for page in pages:
            parts.append(page.extract_text() or "")
            parts.append("\n")
        return "".join(parts)


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

class DocxTextStrategy(TextStrategy):
    document_type = DocumentType.DOCX

    def extract(self, data: bytes, label: str) -> str:
        document = open_docx(io.BytesIO(data))
        lines: list[str] = []
        for block in document.iter_inner_content():
            if isinstance(block, Table):
                lines.extend(self._table_lines(block))
            else:
                lines.append(block.text)
        return "\n".join(lines)

    @staticmethod
    def _table_lines(table: Table) -> list[str]:
        lines: list[str] = []
        for row in table.rows:
            for cell in row.cells:
                lines.extend(p.text for p in cell.paragraphs)
        return lines


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class TextExtractor:
    """
    Select the strategy for the declared format and run it.

    Usage:
        extractor = TextExtractor()
        text = extractor.extract(stream, "PDF", "report.pdf")
        text = await extractor.extract_async(stream, DocumentType.DOCX, "notes.docx")
    """

    def __init__(self, strategies: list[TextStrategy] | None = None) -> None:
        strategies = strategies or [PdfTextStrategy(), DocxTextStrategy()]
        self._strategies: dict[DocumentType, TextStrategy] = {
            s.document_type: s for s in strategies
        }

    def extract(
        self,
        content:  BinaryIO,
        doc_type: DocumentType | str | None,
        label:    str,
    ) -> str:
        doc_format = DocumentType.parse(doc_type)
        strategy = self._strategies.get(doc_format) if doc_format else None
        if strategy is None:
            logger.warning("Unsupported document type | type=%s file=%s", doc_type, label)
            return ""

        t0 = time.monotonic()
        try:
            data = _read_all(content)
            if not data:
                logger.error("Stream is empty | file=%s", label)
                return ""
            text = strategy.extract(data, label)
        except Exception as exc:
            logger.error(
                "Text extraction failed | file=%s type=%s error=%s",
                label, doc_format.value, exc,
                exc_info=True,
            )
            return ""

        logger.info(
            "Extracted text | file=%s type=%s chars=%d elapsed_ms=%.0f",
            label, doc_format.value, len(text), (time.monotonic() - t0) * 1000,
        )
        return text

    async def extract_async(
        self,
        content:  BinaryIO,
        doc_type: DocumentType | str | None,
        label:    str,
    ) -> str:
        """Run extract() in the default thread pool; parsers are CPU-bound."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.extract, content, doc_type, label)


def _read_all(content: BinaryIO | None) -> bytes:
    if content is None:
        return b""
    if content.seekable():
        content.seek(0)
    return content.read() or b""


_default_extractor = TextExtractor()


def extract_text(content: BinaryIO, doc_type: DocumentType | str | None, label: str) -> str:
    """Module-level shortcut over a shared TextExtractor."""
    return _default_extractor.extract(content, doc_type, label)
