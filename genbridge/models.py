from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .util.time import now_utc

DEFAULT_STEPS = 20


class GenerationStatus(str, Enum):
    """Generation lifecycle states."""

    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    def is_terminal(self) -> bool:
        """Check if status is terminal (no further processing)."""
        return self in (self.completed, self.failed)

    def is_active(self) -> bool:
        """Check if generation is queued or running on the inference server."""
        return self in (self.pending, self.processing)


@dataclass
class GeneratedImage:
    """Output image reference produced by the inference server."""

    filename: str
    subfolder: str = ""
    type: str = "output"
    url: str | None = None


def parse_steps(settings: dict[str, Any] | str | None) -> int:
    """Read the declared step count from generation settings.

    Settings may be a dict or a JSON-encoded string (older rows). Anything
    missing, unparsable or non-positive falls back to ``DEFAULT_STEPS``.
    """
    if isinstance(settings, str):
        try:
            settings = json.loads(settings)
        except ValueError:
            return DEFAULT_STEPS
    if not isinstance(settings, dict):
        return DEFAULT_STEPS

    raw = settings.get("steps")
    if isinstance(raw, bool):
        return DEFAULT_STEPS
    try:
        steps = int(raw)
    except (TypeError, ValueError):
        return DEFAULT_STEPS
    return steps if steps > 0 else DEFAULT_STEPS


@dataclass
class Generation:
    """Core generation record."""

    id: str
    prompt: str
    settings: dict[str, Any] | str = field(default_factory=dict)

    status: GenerationStatus = GenerationStatus.pending
    error_message: str | None = None
    comfyui_prompt_id: str | None = None  # assigned once the inference server accepts the work
    images: list[GeneratedImage] = field(default_factory=list)

    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)

    @property
    def declared_steps(self) -> int:
        return parse_steps(self.settings)

    @property
    def settings_dict(self) -> dict[str, Any]:
        """Settings as a dict, decoding legacy JSON strings."""
        if isinstance(self.settings, dict):
            return self.settings
        try:
            decoded = json.loads(self.settings)
        except (TypeError, ValueError):
            return {}
        return decoded if isinstance(decoded, dict) else {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dict."""
        d = asdict(self)
        d["status"] = self.status.value
        d["settings"] = self.settings_dict
        return d

    def mark_updated(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = now_utc()
