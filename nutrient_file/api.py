# -*- coding: utf-8 -*-
"""FastAPI application serving the locally synced nutrient dataset.

Run with ``uvicorn nutrient_file.api:app``.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .shards.api import dataset_router, foods_router
from .shards.sync import ShardSynchronizer


def create_app(synchronizer: Optional[ShardSynchronizer] = None) -> FastAPI:
    """Build the app. An injected synchronizer must already be initialized."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = app.state.synchronizer is None
        if owned:
            app.state.synchronizer = ShardSynchronizer(settings).init()
        try:
            yield
        finally:
            if owned:
                app.state.synchronizer.close()
                app.state.synchronizer = None

    app = FastAPI(
        title="Canadian Nutrient File",
        description="Shard sync status and food lookups over the local dataset store",
        version="1.0.0",
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.synchronizer = synchronizer

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok"}

    app.include_router(dataset_router)
    app.include_router(foods_router)
    return app


app = create_app()


def run() -> None:
    """Console entry point (used by pyproject [project.scripts])."""
    import uvicorn

    host = os.environ.get("CNF_HOST") or os.environ.get("HOST") or "127.0.0.1"
    port_raw = os.environ.get("CNF_PORT") or os.environ.get("PORT") or "8000"
    try:
        port = int(port_raw)
    except ValueError:
        port = 8000

    uvicorn.run("nutrient_file.api:app", host=host, port=port, reload=False)
