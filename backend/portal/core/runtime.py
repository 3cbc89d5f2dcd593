"""
Application Runtime
═══════════════════

Owns every long-lived component and their start/stop order:

  start()   metadata schema → index engine → queue bound to the loop →
            ingestion worker → re-queue documents a previous run left
            unfinished (background task); a failure part way through
            runs stop() before re-raising
  stop()    queue closed (uploads, including ones waiting for space, now
            get `rejected`) → worker drained or cancelled → index closed →
            DB engine disposed

open_scope() is the per-work-item scope factory: a fresh AsyncSession plus
the shared extractor, index and file store.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from portal.core.config import Settings, settings as default_settings
from portal.db.session import build_engine, check_db_health, init_models
from portal.processing.extractor import TextExtractor
from portal.search.index import IndexEngine
from portal.services.ingestion import IngestionCoordinator
from portal.storage.files import LocalFileStore
from portal.workers.jobs import ServiceScope, WorkItem
from portal.workers.queue import WorkQueue
from portal.workers.worker import IngestionWorker

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(self, config: Settings | None = None) -> None:
        self.settings = config or default_settings

        self.engine: AsyncEngine = build_engine(
            self.settings.database_url, echo=self.settings.db_echo_sql,
        )
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self.extractor = TextExtractor()
        self.files = LocalFileStore(self.settings.upload_dir)
        self.queue: WorkQueue[WorkItem] = WorkQueue(self.settings.queue_capacity)

        self.index: IndexEngine | None = None
        self.worker: IngestionWorker | None = None
        self._requeue_task: asyncio.Task | None = None
        self.coordinator = IngestionCoordinator(
            session_factory=self.session_factory,
            scope_factory=self.open_scope,
            queue=self.queue,
            files=self.files,
            extractor=self.extractor,
            processing_mode=self.settings.processing_mode,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        try:
            await init_models(self.engine)

            loop = asyncio.get_running_loop()
            self.index = await loop.run_in_executor(
                None, IndexEngine.open, self.settings.index_path, self.settings.search_max_results,
            )

            self.queue.attach(loop)
            self.worker = IngestionWorker(
                self.queue,
                self.open_scope,
                shutdown_timeout=self.settings.worker_shutdown_timeout,
            )
            self.worker.start()
        except Exception:
            logger.exception("Runtime start failed, releasing what was acquired")
            await self.stop()
            raise

        # Backlog larger than the queue must not hold up startup
        self._requeue_task = asyncio.create_task(self._requeue_unfinished())

        logger.info(
            "Runtime started | mode=%s index=%s queue_capacity=%d",
            self.settings.processing_mode, self.settings.index_path, self.queue.capacity,
        )

    async def _requeue_unfinished(self) -> None:
        try:
            await self.coordinator.requeue_unfinished()
        except Exception:
            logger.exception("Re-queueing unfinished documents failed")

    async def stop(self) -> None:
        self.queue.close()
        try:
            if self._requeue_task is not None:
                await self._requeue_task
            if self.worker is not None:
                await self.worker.stop()
        finally:
            try:
                if self.index is not None:
                    self.index.close()
            finally:
                await self.engine.dispose()
        logger.info("Runtime stopped")

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Scopes and health
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def open_scope(self) -> AsyncIterator[ServiceScope]:
        if self.index is None:
            raise RuntimeError("Runtime is not started")
        async with self.session_factory() as session:
            yield ServiceScope(
                db=session,
                extractor=self.extractor,
                index=self.index,
                files=self.files,
            )

    async def readiness(self) -> dict:
        db = await check_db_health(self.engine)
        index = self.index.stats() if self.index is not None and not self.index.closed else None
        worker = self.worker.stats() if self.worker is not None else None
        ready = db["status"] == "ok" and index is not None and bool(worker and worker["running"])
        return {
            "status":   "ready" if ready else "not_ready",
            "database": db,
            "index":    index,
            "worker":   worker,
            "mode":     self.settings.processing_mode,
        }
