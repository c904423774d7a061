from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from ..bridge import ProgressBridge
from ..comfyui import ComfyUIClient
from ..config import Settings
from ..manager import GenerationManager
from ..models import GenerationStatus
from .deps import get_generation_manager, get_inference, get_settings
from .schemas import (
    GenerationResponse,
    HealthResponse,
    ListGenerationsResponse,
    SubmitGenerationRequest,
)

logger = logging.getLogger("genbridge.router")

SSE_PING_SECONDS = 15


def get_router() -> APIRouter:
    """Get FastAPI router for generation and progress endpoints."""
    router = APIRouter()

    @router.get("/generate/progress", tags=["Progress"])
    async def generation_progress(
        prompt_id: str | None = Query(default=None, alias="promptId"),
        image_index: int = Query(1, alias="imageIndex", ge=1),
        total_images: int = Query(1, alias="totalImages", ge=1),
        manager: GenerationManager = Depends(get_generation_manager),
        inference: ComfyUIClient = Depends(get_inference),
        settings: Settings = Depends(get_settings),
    ):
        """Stream step progress for one generation as server-sent events."""
        if not prompt_id:
            return JSONResponse(
                {"error": "promptId (generation ID) is required"},
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        logger.info(f"Progress stream requested for {prompt_id} (image {image_index}/{total_images})")
        bridge = ProgressBridge(
            prompt_id,
            image_index,
            total_images,
            store=manager.store(),
            inference=inference,
            poll_interval=settings.poll_interval_seconds,
            step_timeout=settings.step_timeout_seconds or None,
            min_timeout=settings.min_stream_timeout_seconds,
        )

        async def _stream():
            try:
                async for event in bridge.events():
                    yield {"data": json.dumps(event.to_dict())}
            finally:
                bridge.abort()

        return EventSourceResponse(
            _stream(),
            headers={"Cache-Control": "no-cache"},
            ping=SSE_PING_SECONDS,
        )

    @router.post(
        "/generations",
        response_model=GenerationResponse,
        status_code=status.HTTP_202_ACCEPTED,
        tags=["Generations"],
    )
    async def submit_generation(
        body: SubmitGenerationRequest,
        manager: GenerationManager = Depends(get_generation_manager),
    ) -> GenerationResponse:
        """Submit a new generation for processing."""
        generation = await manager.submit(body.prompt, body.settings, priority=body.priority)
        return GenerationResponse.from_generation(generation)

    @router.get("/generations", response_model=ListGenerationsResponse, tags=["Generations"])
    async def list_generations(
        status_filter: GenerationStatus | None = Query(default=None, alias="status"),
        page: int = Query(1, ge=1),
        page_size: int = Query(10, alias="pageSize", ge=1, le=50),
        manager: GenerationManager = Depends(get_generation_manager),
    ) -> ListGenerationsResponse:
        """List generations, newest first."""
        items, total = await manager.list(page, page_size, status_filter)
        return ListGenerationsResponse(
            items=[GenerationResponse.from_generation(g) for g in items],
            total=total,
            page=page,
            page_size=page_size,
            has_more=page * page_size < total,
        )

    @router.get(
        "/generations/{generation_id}", response_model=GenerationResponse, tags=["Generations"]
    )
    async def get_generation(
        generation_id: str,
        manager: GenerationManager = Depends(get_generation_manager),
    ) -> GenerationResponse:
        """Get a generation, including its images once complete."""
        generation = await manager.get(generation_id)
        if not generation:
            raise HTTPException(status_code=404, detail="Generation not found")
        return GenerationResponse.from_generation(generation)

    @router.delete("/generations/{generation_id}", tags=["Generations"])
    async def delete_generation(
        generation_id: str,
        manager: GenerationManager = Depends(get_generation_manager),
    ):
        """Delete a generation record."""
        if not await manager.delete(generation_id):
            raise HTTPException(status_code=404, detail="Generation not found")
        return {"id": generation_id, "deleted": True}

    @router.post("/generations/{generation_id}/retry", tags=["Generations"])
    async def retry_generation(
        generation_id: str,
        priority: int = Query(100, ge=0, le=1000),
        manager: GenerationManager = Depends(get_generation_manager),
    ):
        """Retry a failed generation."""
        generation = await manager.retry(generation_id, priority=priority)
        if not generation:
            raise HTTPException(
                status_code=404,
                detail="Generation not found or cannot be retried",
            )
        return {"id": generation.id, "status": generation.status.value}

    @router.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check(inference: ComfyUIClient = Depends(get_inference)) -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            service="genbridge",
            comfyui=await inference.health_check(),
        )

    return router
