from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ..comfyui import ComfyUIClient
from ..config import Settings, configure_logging
from ..manager import GenerationManager
from ..queue.base import GenerationQueue
from ..queue.memory import MemoryQueue
from ..store.base import GenerationStore
from ..store.sqlite import SqliteGenerationStore
from ..worker import GenerationWorker
from ..workflows import WorkflowRegistry, default_registry

logger = logging.getLogger("genbridge.lifecycle")

MANAGER_STATE_KEY = "genbridge_manager"
INFERENCE_STATE_KEY = "genbridge_inference"
SETTINGS_STATE_KEY = "genbridge_settings"
WORKER_STATE_KEY = "genbridge_workers"


def setup_genbridge(
    app: FastAPI,
    settings: Settings | None = None,
    *,
    store: GenerationStore | None = None,
    queue: GenerationQueue | None = None,
    inference: ComfyUIClient | None = None,
    registry: WorkflowRegistry | None = None,
    include_router: bool = True,
    prefix: str | None = None,
    worker_count: int | None = None,
) -> GenerationManager:
    """Setup genbridge in FastAPI application."""
    settings = settings or Settings()
    configure_logging(settings)

    if store is None:
        store = SqliteGenerationStore(db_path=settings.db_path)

    if queue is None:
        queue = MemoryQueue()

    if inference is None:
        inference = ComfyUIClient(
            settings.comfyui_url,
            ws_url=settings.comfyui_ws_url,
            timeout=settings.comfyui_timeout_seconds,
        )

    registry = registry or default_registry()
    if worker_count is None:
        worker_count = settings.worker_count

    mgr = GenerationManager(store=store, queue=queue)
    setattr(app.state, MANAGER_STATE_KEY, mgr)
    setattr(app.state, INFERENCE_STATE_KEY, inference)
    setattr(app.state, SETTINGS_STATE_KEY, settings)

    @asynccontextmanager
    async def _lifespan(app_: FastAPI):
        # Startup
        if hasattr(store, "_ensure"):
            await store._ensure()

        # Anything left pending/processing belongs to a previous process
        try:
            recovered = await store.recover_stale_generations(
                max_age_seconds=settings.stale_after_seconds
            )
            if recovered > 0:
                logger.warning(f"Recovered {recovered} stale generations on startup")
        except Exception:
            logger.exception("Failed to recover stale generations")

        workers = []
        for i in range(worker_count):
            worker = GenerationWorker(
                queue=queue,
                store=store,
                inference=inference,
                registry=registry,
                worker_id=f"worker-{i}",
            )
            worker.start()
            workers.append(worker)

        setattr(app_.state, WORKER_STATE_KEY, workers)
        logger.info(f"Started {worker_count} workers")

        try:
            yield
        finally:
            logger.info("Shutting down genbridge...")

            for worker in workers:
                try:
                    await worker.stop()
                except Exception:
                    logger.exception("Failed to stop worker")

            try:
                await queue.close()
            except Exception:
                logger.exception("Failed to close queue")

            try:
                await inference.close()
            except Exception:
                logger.exception("Failed to close inference client")

            try:
                await store.close()
            except Exception:
                logger.exception("Failed to close store")

            logger.info("Genbridge shutdown complete")

    # Compose with existing lifespan
    if app.router.lifespan_context is None:
        app.router.lifespan_context = _lifespan
    else:
        existing = app.router.lifespan_context

        @asynccontextmanager
        async def _composed(app_: FastAPI):
            async with existing(app_):
                async with _lifespan(app_):
                    yield

        app.router.lifespan_context = _composed

    if include_router:
        from .router import get_router

        app.include_router(get_router(), prefix=settings.api_prefix if prefix is None else prefix)

    return mgr
