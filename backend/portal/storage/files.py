"""
Local File Store — uploaded originals

Layout:
    <upload_dir>/<document_id><ext>        e.g. 3f2a….pdf

The stored name is derived server-side from the document id and the
validated type; the uploader's file name is never used as a path, so a
name like "../../etc/passwd.pdf" cannot escape the directory.

Work items only carry the stored name and reopen the file from here when
they run. Raw bytes never travel through the queue.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from portal.schemas.documents import DocumentType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredFile:
    """Returned by LocalFileStore.save()."""
    stored_file_name: str
    path:             Path
    size_bytes:       int


class LocalFileStore:
    """
    Usage:
        files = LocalFileStore("./data/uploads")
        stored = await files.save(document_id, DocumentType.PDF, data)
        with files.open(stored.stored_file_name) as fh: ...
    """

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def stored_name(document_id: str, doc_type: DocumentType) -> str:
        return f"{document_id}{doc_type.extension}"

    def path_for(self, stored_file_name: str) -> Path:
        path = (self.root / stored_file_name).resolve()
        if path.parent != self.root:
            raise ValueError(f"Invalid stored file name: {stored_file_name!r}")
        return path

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save_sync(self, document_id: str, doc_type: DocumentType, data: bytes) -> StoredFile:
        name = self.stored_name(document_id, doc_type)
        path = self.path_for(name)
        tmp = path.with_name(path.name + ".part")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError:
            tmp.unlink(missing_ok=True)
            logger.exception("File store write failed | doc=%s path=%s", document_id, path)
            raise

        logger.info("Stored original | doc=%s file=%s bytes=%d", document_id, name, len(data))
        return StoredFile(stored_file_name=name, path=path, size_bytes=len(data))

    async def save(self, document_id: str, doc_type: DocumentType, data: bytes) -> StoredFile:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.save_sync, document_id, doc_type, data)

    # ------------------------------------------------------------------
    # Read / delete
    # ------------------------------------------------------------------

    def open(self, stored_file_name: str) -> BinaryIO:
        """Open a stored original for reading. Caller closes it."""
        return self.path_for(stored_file_name).open("rb")

    def exists(self, stored_file_name: str) -> bool:
        return self.path_for(stored_file_name).is_file()

    def delete(self, stored_file_name: str) -> bool:
        path = self.path_for(stored_file_name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted original | file=%s", stored_file_name)
        return True
