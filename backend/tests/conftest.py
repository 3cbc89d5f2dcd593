"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : test_settings, index_engine, runtime, sync_runtime,
                    app_with_runtime, async_client, sample_pdf_bytes,
                    sample_docx_bytes

Environment strategy:
  - Every test gets its own SQLite metadata database, upload directory and
    in-memory full-text index under pytest's tmp_path. Nothing is shared
    between tests and no external service is needed.
  - PDF and DOCX samples are real documents built on the fly (pypdf and
    python-docx can parse them), not just magic-byte stubs.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no HTTP)
  pytest -m integration           # full FastAPI stack over ASGITransport
  pytest tests/unit/test_index.py # single file
"""

from __future__ import annotations

import asyncio
import io
import os
import tempfile
import time
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any portal imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

_SESSION_DIR = tempfile.mkdtemp(prefix="portal-tests-")

os.environ.setdefault("DATABASE_URL",    f"sqlite+aiosqlite:///{_SESSION_DIR}/portal.db")
os.environ.setdefault("INDEX_PATH",      ":memory:")
os.environ.setdefault("UPLOAD_DIR",      f"{_SESSION_DIR}/uploads")
os.environ.setdefault("PROCESSING_MODE", "queued")
os.environ.setdefault("APP_ENV",         "development")
os.environ.setdefault("DEBUG",           "true")


# ─────────────────────────────────────────────────────────────────────────────
# Document builders
# ─────────────────────────────────────────────────────────────────────────────

def make_pdf(pages: list[str]) -> bytes:
    """
    Build a small but well-formed PDF: one Helvetica text line per page,
    with a correct xref table so pypdf parses it without repair.
    """
    objects: list[bytes] = []
    kids = " ".join(f"{4 + 2 * i} 0 R" for i in range(len(pages)))
    objects.append(b"<< /Type /Catalog /Pages 2 0 R >>")
    objects.append(f"<< /Type /Pages /Kids [{kids}] /Count {len(pages)} >>".encode())
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    for i, text in enumerate(pages):
        escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        stream = f"BT /F1 12 Tf 72 712 Td ({escaped}) Tj ET".encode("latin-1")
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                "/Resources << /Font << /F1 3 0 R >> >> "
                f"/Contents {5 + 2 * i} 0 R >>"
            ).encode()
        )
        objects.append(b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream")

    out = bytearray(b"%PDF-1.4\n")
    offsets: list[int] = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += b"%d 0 obj\n" % number + body + b"\nendobj\n"

    xref_at = len(out)
    out += b"xref\n0 %d\n" % (len(objects) + 1)
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += b"%010d 00000 n \n" % offset
    out += b"trailer\n<< /Size %d /Root 1 0 R >>\nstartxref\n%d\n%%%%EOF\n" % (
        len(objects) + 1, xref_at,
    )
    return bytes(out)


def make_docx(paragraphs: list[str], table_rows: list[list[str]] | None = None) -> bytes:
    """Build a DOCX with python-docx: paragraphs first, then an optional table."""
    from docx import Document

    document = Document()
    for text in paragraphs:
        document.add_paragraph(text)
    if table_rows:
        table = document.add_table(rows=len(table_rows), cols=len(table_rows[0]))
        for r, row in enumerate(table_rows):
            for c, value in enumerate(row):
                table.cell(r, c).text = value

    buf = io.BytesIO()
    document.save(buf)
    return buf.getvalue()


async def wait_until(
    predicate: Callable[[], Awaitable[bool] | bool],
    timeout:   float = 5.0,
    interval:  float = 0.02,
) -> None:
    """Poll until predicate() is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if time.monotonic() > deadline:
            pytest.fail(f"condition not met within {timeout}s")
        await asyncio.sleep(interval)


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Single-page PDF containing 'quarterly budget review'."""
    return make_pdf(["quarterly budget review"])


@pytest.fixture
def sample_docx_bytes() -> bytes:
    """DOCX with two paragraphs about staffing."""
    return make_docx(["Staffing plan for the clinic", "Weekend rota and on-call cover"])


@pytest.fixture
def oversized_file_bytes() -> bytes:
    """PDF header followed by padding beyond the 50 MB ceiling."""
    return b"%PDF-1.4\n" + b"x" * (52 * 1024 * 1024)


@pytest.fixture
def exe_bytes() -> bytes:
    """Windows PE executable: rejected by the extension/magic-byte checks."""
    return b"MZ\x90\x00" + b"\x00" * 100


# ─────────────────────────────────────────────────────────────────────────────
# Settings, index and runtime
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_settings(tmp_path):
    """Factory: isolated Settings rooted in tmp_path."""
    from portal.core.config import Settings

    def _build(**overrides) -> Settings:
        values = {
            "database_url":            f"sqlite+aiosqlite:///{tmp_path}/portal.db",
            "index_path":              ":memory:",
            "upload_dir":              str(tmp_path / "uploads"),
            "processing_mode":         "queued",
            "queue_capacity":          10,
            "worker_shutdown_timeout": 5.0,
        }
        values.update(overrides)
        return Settings(**values)

    return _build


@pytest.fixture
def test_settings(make_settings):
    return make_settings()


@pytest.fixture
def index_engine():
    """Fresh in-memory IndexEngine, closed after the test."""
    from portal.search.index import IndexEngine

    engine = IndexEngine.open(":memory:")
    yield engine
    engine.close()


@pytest_asyncio.fixture
async def runtime(test_settings):
    """Started Runtime in queued mode (worker running)."""
    from portal.core.runtime import Runtime

    rt = Runtime(test_settings)
    await rt.start()
    yield rt
    await rt.stop()


@pytest_asyncio.fixture
async def sync_runtime(make_settings):
    """Started Runtime in synchronous mode."""
    from portal.core.runtime import Runtime

    rt = Runtime(make_settings(processing_mode="synchronous"))
    await rt.start()
    yield rt
    await rt.stop()


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app + client
# ─────────────────────────────────────────────────────────────────────────────

def _app_for(rt):
    from portal.main import create_app

    app = create_app(with_lifespan=False)
    app.state.runtime = rt
    return app


@pytest.fixture
def app_with_runtime(runtime):
    """FastAPI app wired to the per-test queued Runtime (lifespan skipped)."""
    return _app_for(runtime)


@pytest_asyncio.fixture
async def async_client(app_with_runtime) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the per-test app.

    httpx >= 0.28 removed the 'app=' shortcut; use ASGITransport explicitly.
    """
    from httpx import ASGITransport
    transport = ASGITransport(app=app_with_runtime)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def sync_client(sync_runtime) -> AsyncGenerator[AsyncClient, None]:
    """Client for an app whose uploads are processed inline."""
    from httpx import ASGITransport
    transport = ASGITransport(app=_app_for(sync_runtime))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
