from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Literal

EventType = Literal["connected", "progress", "complete", "error"]

# attribute name -> wire key
_WIRE_KEYS = {
    "current_step": "currentStep",
    "total_steps": "totalSteps",
    "percentage": "percentage",
    "image_index": "imageIndex",
    "total_images": "totalImages",
    "status": "status",
    "message": "message",
}


@dataclass(frozen=True)
class ProgressEvent:
    """Event relayed to the browser while a generation runs.

    Subclasses are the four variants of the stream; ``type`` is the
    discriminator sent on the wire.
    """

    type: ClassVar[EventType]

    current_step: int | None = None
    total_steps: int | None = None
    percentage: int | None = None
    image_index: int | None = None
    total_images: int | None = None
    status: str | None = None

    @property
    def is_terminal(self) -> bool:
        return False

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON wire form, omitting unset fields."""
        d: dict[str, Any] = {"type": self.type}
        for attr, key in _WIRE_KEYS.items():
            value = getattr(self, attr, None)
            if value is not None:
                d[key] = value
        return d


@dataclass(frozen=True)
class ConnectedEvent(ProgressEvent):
    type: ClassVar[EventType] = "connected"


@dataclass(frozen=True)
class ProgressUpdateEvent(ProgressEvent):
    type: ClassVar[EventType] = "progress"


@dataclass(frozen=True)
class CompleteEvent(ProgressEvent):
    type: ClassVar[EventType] = "complete"

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class ErrorEvent(ProgressEvent):
    type: ClassVar[EventType] = "error"

    message: str = "Generation failed"

    @property
    def is_terminal(self) -> bool:
        return True


EVENT_TYPES: dict[str, type[ProgressEvent]] = {
    cls.type: cls for cls in (ConnectedEvent, ProgressUpdateEvent, CompleteEvent, ErrorEvent)
}


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_event(data: dict[str, Any]) -> ProgressEvent | None:
    """Build an event from its wire form. Unknown types return None."""
    cls = EVENT_TYPES.get(data.get("type"))  # type: ignore[arg-type]
    if cls is None:
        return None

    kwargs: dict[str, Any] = {}
    for attr, key in _WIRE_KEYS.items():
        if key not in data:
            continue
        if attr in ("status", "message"):
            if data[key] is not None:
                kwargs[attr] = str(data[key])
        else:
            kwargs[attr] = _as_int(data[key])

    if cls is not ErrorEvent:
        kwargs.pop("message", None)
    return cls(**kwargs)
