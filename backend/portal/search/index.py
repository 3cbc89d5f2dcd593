"""
Full-Text Index Engine
══════════════════════

Owns the searchable projection of every uploaded document:

  IndexedDocument
    document_id  exact-match, stored      (indexed_documents.document_id, UNIQUE)
    filename     stored                   (indexed_documents.filename)
    content      tokenized, NOT stored    (contentless FTS5 tables only)
    doc_type     exact-match, stored      (indexed_documents.doc_type)

Storage layout (SQLite + FTS5):

  indexed_documents  one live row per document_id; doc_key is AUTOINCREMENT
                     so a key is never handed out twice
  document_terms     contentless FTS5 word index over content, rowid = doc_key
  document_grams     contentless FTS5 trigram index over content (substring
                     fallback), rowid = doc_key
  index_meta         commit generation

Upsert is a delete-then-insert in one transaction: the previous row in
indexed_documents and its rows in both FTS tables are removed, then the new
doc_key is inserted everywhere. Ranking therefore only ever reflects the
live documents.

Removing a contentless FTS row:
  - SQLite >= 3.43: the tables are created with contentless_delete=1 and the
    row is deleted by rowid
  - older SQLite: FTS5 'delete' needs the tokens that were indexed; they are
    read back from an fts5vocab instance table and replayed

Concurrency model:
  - exactly one writer connection per engine, every mutation under the
    store mutex, committed before the mutex is released
  - DiskIndexStore: each search opens its own read-only connection in WAL
    mode and reads inside one transaction (a point-in-time snapshot)
  - MemoryIndexStore: a private in-memory database; searches run on the
    writer connection under the same mutex, so they only ever see
    committed state
  - only one engine may own a store at a time (write.lock on disk)
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import ContextManager, Iterator

from portal.search.query import (
    fallback_expression,
    is_query_error,
    structured_expression,
)

logger = logging.getLogger(__name__)

MEMORY = ":memory:"
DEFAULT_MAX_RESULTS = 25

TERMS_TABLE = "document_terms"
GRAMS_TABLE = "document_grams"
FTS_TABLES  = (TERMS_TABLE, GRAMS_TABLE)

# contentless_delete=1 arrived in SQLite 3.43
CONTENTLESS_DELETE = sqlite3.sqlite_version_info >= (3, 43, 0)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS indexed_documents (
    doc_key     INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id TEXT    NOT NULL UNIQUE,
    filename    TEXT    NOT NULL,
    doc_type    TEXT    NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_indexed_documents_type ON indexed_documents (doc_type);

CREATE VIRTUAL TABLE IF NOT EXISTS document_terms USING fts5 (
    content,
    content = ''{delete_option},
    tokenize = 'unicode61 remove_diacritics 2'
);
CREATE VIRTUAL TABLE IF NOT EXISTS document_grams USING fts5 (
    content,
    content = ''{delete_option},
    tokenize = 'trigram'
);
CREATE VIRTUAL TABLE IF NOT EXISTS document_terms_instances
    USING fts5vocab (document_terms, instance);
CREATE VIRTUAL TABLE IF NOT EXISTS document_grams_instances
    USING fts5vocab (document_grams, instance);

CREATE TABLE IF NOT EXISTS index_meta (
    id         INTEGER PRIMARY KEY CHECK (id = 1),
    generation INTEGER NOT NULL,
    updated_at INTEGER
);
INSERT OR IGNORE INTO index_meta (id, generation) VALUES (1, 0);
"""


def _schema(contentless_delete: bool) -> str:
    option = ",\n    contentless_delete = 1" if contentless_delete else ""
    return _SCHEMA.replace("{delete_option}", option)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class IndexEngineError(Exception):
    """Base class for index failures."""


class IndexWriteError(IndexEngineError):
    """A mutation could not be committed; the transaction was rolled back."""


class IndexReadError(IndexEngineError):
    """The index could not be read (I/O, corruption); not a query syntax issue."""


class IndexLockedError(IndexEngineError):
    """Another engine already owns the store."""


class IndexClosedError(IndexEngineError):
    """The engine was used after close()."""


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IndexedDocument:
    document_id: str
    filename:    str
    doc_type:    str
    content:     str


@dataclass(frozen=True)
class SearchResult:
    document_id: str
    file_name:   str
    doc_type:    str
    score:       float


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class IndexStore(ABC):
    """
    Where the index lives. Both implementations honour the same contract:

      acquire()   take exclusive ownership, return the writer connection
      snapshot()  context manager yielding a connection that only sees
                  committed state for as long as it is held
      release()   close the writer and give up ownership

    `lock` serializes every use of the writer connection.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._writer: sqlite3.Connection | None = None

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable location for logs."""

    @abstractmethod
    def acquire(self) -> sqlite3.Connection: ...

    @abstractmethod
    def snapshot(self) -> ContextManager[sqlite3.Connection]: ...

    @abstractmethod
    def release(self) -> None: ...

    def _close_writer(self) -> None:
        if self._writer is not None:
            try:
                self._writer.close()
            finally:
                self._writer = None


class MemoryIndexStore(IndexStore):
    """Private in-memory database; contents vanish on release()."""

    description = MEMORY

    def acquire(self) -> sqlite3.Connection:
        if self._writer is not None:
            raise IndexLockedError("In-memory index is already owned by an engine")
        self._writer = sqlite3.connect(MEMORY, isolation_level=None, check_same_thread=False)
        return self._writer

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        with self.lock:
            if self._writer is None:
                raise IndexClosedError("Index is closed")
            yield self._writer

    def release(self) -> None:
        self._close_writer()


class DiskIndexStore(IndexStore):
    """
    Index database inside `directory`.

    Ownership is recorded in <directory>/write.lock (holding the owner pid).
    A lock left behind by a process that no longer exists is taken over.
    """

    DB_NAME   = "index.sqlite3"
    LOCK_NAME = "write.lock"

    def __init__(self, directory: str | os.PathLike) -> None:
        super().__init__()
        self.directory = Path(directory).expanduser().resolve()
        self.db_path   = self.directory / self.DB_NAME
        self.lock_path = self.directory / self.LOCK_NAME
        self._owns_lock = False

    @property
    def description(self) -> str:
        return str(self.db_path)

    def acquire(self) -> sqlite3.Connection:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._take_lock_file()
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                isolation_level=None,
                check_same_thread=False,
                timeout=10.0,
            )
            conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error:
            self._drop_lock_file()
            raise
        self._writer = conn
        return conn

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        if self._writer is None:
            raise IndexClosedError("Index is closed")
        conn = sqlite3.connect(
            f"{self.db_path.as_uri()}?mode=ro",
            uri=True,
            isolation_level=None,
            check_same_thread=False,
            timeout=10.0,
        )
        try:
            yield conn
        finally:
            conn.close()

    def release(self) -> None:
        try:
            self._close_writer()
        finally:
            self._drop_lock_file()

    # -- write.lock ---------------------------------------------------------

    def _take_lock_file(self) -> None:
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                owner = self._lock_owner()
                if owner is None or _pid_alive(owner):
                    raise IndexLockedError(
                        f"Index at {self.directory} is owned by process {owner}"
                    )
                logger.warning(
                    "Removing stale index lock | path=%s pid=%s", self.lock_path, owner,
                )
                self.lock_path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as fh:
                fh.write(str(os.getpid()))
            self._owns_lock = True
            return
        raise IndexLockedError(f"Could not acquire {self.lock_path}")

    def _lock_owner(self) -> int | None:
        try:
            return int(self.lock_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def _drop_lock_file(self) -> None:
        if self._owns_lock:
            self.lock_path.unlink(missing_ok=True)
            self._owns_lock = False


def _pid_alive(pid: int) -> bool:
    if os.name == "nt":
        # os.kill(pid, 0) cannot test for a live process on Windows; never steal the lock there
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class IndexEngine:
    """
    The single owner of one index store.

    Usage:
        engine = IndexEngine.open("./data/index")      # or ":memory:"
        engine.upsert(doc_id, "report.pdf", "PDF", text)
        hits = engine.search("budget", doc_type="PDF")
        engine.close()
    """

    def __init__(self, store: IndexStore, max_results: int = DEFAULT_MAX_RESULTS) -> None:
        if max_results < 1:
            raise ValueError("max_results must be positive")
        self._store = store
        self._max_results = max_results
        self._closed = False

        self._writer = store.acquire()
        try:
            self._writer.executescript(_schema(CONTENTLESS_DELETE))
            self._contentless_delete = _has_contentless_delete(self._writer)
        except sqlite3.Error:
            store.release()
            raise

        logger.info(
            "Index opened | store=%s documents=%d generation=%d",
            store.description, self.count(), self.generation,
        )

    @classmethod
    def open(
        cls,
        location: str | os.PathLike | None = None,
        max_results: int = DEFAULT_MAX_RESULTS,
    ) -> "IndexEngine":
        if location is None or str(location) == MEMORY:
            store: IndexStore = MemoryIndexStore()
        else:
            store = DiskIndexStore(location)
        return cls(store, max_results=max_results)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def upsert(self, document_id: str, filename: str, doc_type: str, content: str | None) -> None:
        """Insert or atomically replace the entry for document_id and commit."""
        if not document_id:
            raise ValueError("document_id is required")
        self.upsert_document(IndexedDocument(
            document_id=str(document_id),
            filename=filename or "",
            doc_type=str(getattr(doc_type, "value", doc_type) or ""),
            content=content or "",
        ))

    def upsert_document(self, doc: IndexedDocument) -> None:
        if not doc.content.strip():
            logger.warning(
                "Indexing without content, searchable by type only | doc=%s file=%s",
                doc.document_id, doc.filename,
            )

        with self._store.lock:
            self._ensure_open()
            conn = self._writer
            try:
                conn.execute("BEGIN IMMEDIATE")
                previous = conn.execute(
                    "SELECT doc_key FROM indexed_documents WHERE document_id = ?",
                    (doc.document_id,),
                ).fetchone()
                replaced = previous is not None
                if replaced:
                    self._remove_terms(conn, previous[0])
                    conn.execute("DELETE FROM indexed_documents WHERE doc_key = ?", (previous[0],))

                doc_key = conn.execute(
                    "INSERT INTO indexed_documents (document_id, filename, doc_type) "
                    "VALUES (?, ?, ?)",
                    (doc.document_id, doc.filename, doc.doc_type),
                ).lastrowid
                for table in FTS_TABLES:
                    conn.execute(
                        f"INSERT INTO {table} (rowid, content) VALUES (?, ?)",
                        (doc_key, doc.content),
                    )
                conn.execute(
                    "UPDATE index_meta SET generation = generation + 1, updated_at = ? WHERE id = 1",
                    (int(time.time()),),
                )
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                _rollback(conn)
                logger.exception("Index commit failed | doc=%s", doc.document_id)
                raise IndexWriteError(f"Failed to index document {doc.document_id}") from exc

        logger.info(
            "Indexed | doc=%s type=%s chars=%d replaced=%s",
            doc.document_id, doc.doc_type, len(doc.content), replaced,
        )

    def _remove_terms(self, conn: sqlite3.Connection, doc_key: int) -> None:
        """Drop doc_key from both FTS tables (inside the caller's transaction)."""
        for table in FTS_TABLES:
            if self._contentless_delete:
                conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (doc_key,))
            else:
                conn.execute(
                    f"INSERT INTO {table} ({table}, rowid, content) VALUES ('delete', ?, ?)",
                    (doc_key, _indexed_text(conn, table, doc_key)),
                )

    async def upsert_async(self, document_id: str, filename: str, doc_type: str, content: str | None) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.upsert, document_id, filename, doc_type, content)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, keywords: str | None, doc_type: str | None = None) -> list[SearchResult]:
        """
        Ranked hits, best first, at most max_results.

        keywords and doc_type are ANDed; with neither, the result is empty.
        """
        keywords = (keywords or "").strip()
        doc_type = str(getattr(doc_type, "value", doc_type) or "").strip() or None
        if not keywords and not doc_type:
            return []

        self._ensure_open()
        try:
            with self._store.snapshot() as conn:
                conn.execute("BEGIN")
                try:
                    if self._read_meta(conn) == 0:
                        logger.debug("Search on an index with no commits")
                        return []
                    if keywords:
                        rows = self._by_keywords(conn, keywords, doc_type)
                    else:
                        rows = self._by_type(conn, doc_type)
                finally:
                    conn.rollback()
        except sqlite3.Error as exc:
            logger.exception("Index read failed | keywords=%r doc_type=%s", keywords, doc_type)
            raise IndexReadError("Index could not be searched") from exc

        results = [
            SearchResult(document_id=r[0], file_name=r[1], doc_type=r[2], score=float(r[3]))
            for r in rows
        ]
        logger.info(
            "Search | keywords=%r doc_type=%s hits=%d", keywords, doc_type, len(results),
        )
        return results

    async def search_async(self, keywords: str | None, doc_type: str | None = None) -> list[SearchResult]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.search, keywords, doc_type)

    def _by_keywords(self, conn: sqlite3.Connection, keywords: str, doc_type: str | None) -> list[tuple]:
        try:
            return self._match(conn, TERMS_TABLE, structured_expression(keywords), doc_type)
        except sqlite3.OperationalError as exc:
            if not is_query_error(exc):
                raise
            logger.info(
                "Keyword syntax rejected, retrying as substring match | keywords=%r error=%s",
                keywords, exc,
            )

        expression = fallback_expression(keywords)
        if expression is None:
            return []
        try:
            return self._match(conn, GRAMS_TABLE, expression, doc_type)
        except sqlite3.OperationalError as exc:
            if not is_query_error(exc):
                raise
            logger.warning("Fallback query rejected | keywords=%r error=%s", keywords, exc)
            return []

    def _match(
        self, conn: sqlite3.Connection, table: str, expression: str, doc_type: str | None,
    ) -> list[tuple]:
        sql = (
            f"SELECT d.document_id, d.filename, d.doc_type, -bm25({table}) AS relevance "
            f"FROM {table} "
            f"JOIN indexed_documents AS d ON d.doc_key = {table}.rowid "
            f"WHERE {table} MATCH ?"
        )
        params: list = [expression]
        if doc_type:
            sql += " AND d.doc_type = ?"
            params.append(doc_type)
        sql += " ORDER BY relevance DESC LIMIT ?"
        params.append(self._max_results)
        return conn.execute(sql, params).fetchall()

    def _by_type(self, conn: sqlite3.Connection, doc_type: str) -> list[tuple]:
        return conn.execute(
            "SELECT document_id, filename, doc_type, 1.0 FROM indexed_documents "
            "WHERE doc_type = ? ORDER BY doc_key DESC LIMIT ?",
            (doc_type, self._max_results),
        ).fetchall()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def max_results(self) -> int:
        return self._max_results

    @property
    def generation(self) -> int:
        """Number of commits applied since the index was created."""
        return self.stats()["generation"]

    def count(self) -> int:
        """Live documents."""
        return self.stats()["documents"]

    def stats(self) -> dict:
        self._ensure_open()
        with self._store.snapshot() as conn:
            (documents,) = conn.execute("SELECT count(*) FROM indexed_documents").fetchone()
            generation = self._read_meta(conn)
        return {
            "store":      self._store.description,
            "documents":  documents,
            "generation": generation,
        }

    @staticmethod
    def _read_meta(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT generation FROM index_meta WHERE id = 1").fetchone()
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise IndexClosedError("Index engine is closed")

    def close(self) -> None:
        with self._store.lock:
            if self._closed:
                return
            self._closed = True
            self._store.release()
        logger.info("Index closed | store=%s", self._store.description)

    def __enter__(self) -> "IndexEngine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
    except sqlite3.Error:
        logger.exception("Index rollback failed")


def _has_contentless_delete(conn: sqlite3.Connection) -> bool:
    """Whether the existing FTS tables were created with contentless_delete=1."""
    row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?", (TERMS_TABLE,),
    ).fetchone()
    return row is not None and "contentless_delete" in row[0]


def _indexed_text(conn: sqlite3.Connection, table: str, doc_key: int) -> str:
    """
    Rebuild text that tokenizes to exactly the tokens stored for doc_key.

    Word tokens are already folded and re-tokenize to themselves; trigrams
    overlap, so each one after the first contributes its last character.
    """
    terms = [
        row[0] for row in conn.execute(
            f"SELECT term FROM {table}_instances WHERE doc = ? ORDER BY offset",
            (doc_key,),
        )
    ]
    if table == GRAMS_TABLE:
        return terms[0] + "".join(t[-1] for t in terms[1:]) if terms else ""
    return " ".join(terms)
