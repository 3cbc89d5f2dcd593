"""
Full-Text Search Package
════════════════════════

  index.py  IndexEngine: single-writer SQLite FTS5 index with snapshot reads
  query.py  Two-tier keyword expression building (structured, then escaped
            prefix fallback)
"""

from portal.search.index import (
    IndexClosedError,
    IndexedDocument,
    IndexEngine,
    IndexEngineError,
    IndexLockedError,
    IndexReadError,
    IndexWriteError,
    SearchResult,
)

__all__ = [
    "IndexClosedError",
    "IndexedDocument",
    "IndexEngine",
    "IndexEngineError",
    "IndexLockedError",
    "IndexReadError",
    "IndexWriteError",
    "SearchResult",
]
