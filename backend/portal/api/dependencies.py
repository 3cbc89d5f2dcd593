"""
Shared FastAPI dependencies.

Every long-lived component hangs off the Runtime stored on app.state by the
lifespan hook (tests install their own Runtime the same way).
"""

from __future__ import annotations

from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from portal.core.runtime import Runtime
from portal.search.index import IndexEngine
from portal.services.ingestion import IngestionCoordinator


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Application runtime is not initialised")
    return runtime


async def get_db(
    runtime: Annotated[Runtime, Depends(get_runtime)],
) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; commits when the handler returns."""
    async with runtime.session_factory() as session:
        async with session.begin():
            yield session


def get_coordinator(runtime: Annotated[Runtime, Depends(get_runtime)]) -> IngestionCoordinator:
    return runtime.coordinator


def get_index(runtime: Annotated[Runtime, Depends(get_runtime)]) -> IndexEngine:
    if runtime.index is None:
        raise RuntimeError("Index engine is not open")
    return runtime.index


PortalRuntime = Annotated[Runtime,              Depends(get_runtime)]
DB            = Annotated[AsyncSession,         Depends(get_db)]
Coordinator   = Annotated[IngestionCoordinator, Depends(get_coordinator)]
Index         = Annotated[IndexEngine,          Depends(get_index)]
