from __future__ import annotations

import abc
import builtins

from ..models import GeneratedImage, Generation, GenerationStatus


class GenerationStore(abc.ABC):
    """Abstract base for generation persistence."""

    @abc.abstractmethod
    async def create(self, generation: Generation) -> Generation:
        """Create a new generation."""
        ...

    @abc.abstractmethod
    async def get(self, generation_id: str) -> Generation | None:
        """Get generation by ID, or None when it does not exist."""
        ...

    @abc.abstractmethod
    async def list(
        self,
        status: GenerationStatus | None,
        limit: int,
        offset: int,
    ) -> tuple[builtins.list[Generation], int]:
        """List generations, newest first."""
        ...

    @abc.abstractmethod
    async def set_prompt_id(self, generation_id: str, prompt_id: str) -> Generation | None:
        """Record the inference server's prompt id and mark the generation processing."""
        ...

    @abc.abstractmethod
    async def update_status(
        self,
        generation_id: str,
        status: GenerationStatus,
        *,
        error_message: str | None = None,
    ) -> Generation | None:
        """Update generation status."""
        ...

    @abc.abstractmethod
    async def reset_for_retry(self, generation_id: str) -> Generation | None:
        """Return a generation to pending, clearing the error, prompt id and images of the last run."""
        ...

    @abc.abstractmethod
    async def attach_images(
        self, generation_id: str, images: builtins.list[GeneratedImage]
    ) -> Generation | None:
        """Attach output images to generation."""
        ...

    @abc.abstractmethod
    async def delete(self, generation_id: str) -> bool:
        """Delete generation. Returns False when it did not exist."""
        ...

    @abc.abstractmethod
    async def recover_stale_generations(self, max_age_seconds: int = 3600) -> int:
        """Fail generations stuck in processing."""
        ...

    @abc.abstractmethod
    async def close(self) -> None:
        """Close store connections."""
        ...
