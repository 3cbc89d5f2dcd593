"""
Document Processing Package
════════════════════════════

  extractor.py  Format dispatch (PDF via pypdf, DOCX via python-docx) that
                turns an uploaded stream into plain text, degrading to ""
                instead of raising.
"""

from portal.processing.extractor import TextExtractor, extract_text

__all__ = [
    "TextExtractor",
    "extract_text",
]
