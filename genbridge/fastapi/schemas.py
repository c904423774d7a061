from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..models import Generation, GenerationStatus


class SubmitGenerationRequest(BaseModel):
    """Request to start a new generation."""

    prompt: str = Field(min_length=1, max_length=10000)
    settings: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(100, ge=0, le=1000)


class GeneratedImageResponse(BaseModel):
    """Output image reference."""

    filename: str
    subfolder: str = ""
    type: str = "output"
    url: str | None = None


class GenerationResponse(BaseModel):
    """Generation record."""

    id: str
    prompt: str
    settings: dict[str, Any]
    status: GenerationStatus
    declared_steps: int
    error_message: str | None = None
    comfyui_prompt_id: str | None = None
    images: list[GeneratedImageResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_generation(cls, generation: Generation) -> GenerationResponse:
        return cls(
            id=generation.id,
            prompt=generation.prompt,
            settings=generation.settings_dict,
            status=generation.status,
            declared_steps=generation.declared_steps,
            error_message=generation.error_message,
            comfyui_prompt_id=generation.comfyui_prompt_id,
            images=[GeneratedImageResponse(**img.__dict__) for img in generation.images],
            created_at=generation.created_at,
            updated_at=generation.updated_at,
        )


class ListGenerationsResponse(BaseModel):
    """Page of generations, newest first."""

    items: list[GenerationResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class HealthResponse(BaseModel):
    """Service health."""

    status: str
    service: str
    comfyui: bool
