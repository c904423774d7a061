"""
Genbridge - image generation back-end with live ComfyUI progress over SSE.

Usage:
    from fastapi import FastAPI
    from genbridge import Settings, setup_genbridge

    app = FastAPI()
    setup_genbridge(app, Settings(COMFYUI_URL="http://127.0.0.1:8188"))

Clients submit with ``POST /api/generations`` and follow
``GET /api/generate/progress?promptId=<id>``; ``ProgressWatcher`` does both.
"""

from .bridge import ProgressBridge, step_percentage
from .comfyui import ComfyUIClient, Subscription
from .config import Settings, configure_logging
from .consumer import ConsumerPhase, ProgressConsumer, ProgressState, ProgressWatcher
from .events import (
    CompleteEvent,
    ConnectedEvent,
    ErrorEvent,
    ProgressEvent,
    ProgressUpdateEvent,
    parse_event,
)
from .exceptions import GenBridgeError, InferenceError, InferenceUnavailableError
from .fastapi.lifecycle import setup_genbridge
from .manager import GenerationManager
from .models import DEFAULT_STEPS, GeneratedImage, Generation, GenerationStatus, parse_steps
from .queue.base import GenerationQueue, QueueItem
from .queue.memory import MemoryQueue
from .store.base import GenerationStore
from .store.sqlite import SqliteGenerationStore
from .version import __version__
from .worker import GenerationWorker
from .workflows import WorkflowRegistry, build_flux2_workflow, default_registry

# Conditional Redis import
try:
    from .queue.redis import RedisQueue

    __all_redis = ["RedisQueue"]
except ImportError:
    __all_redis = []

__all__ = [
    # Version
    "__version__",
    # Core
    "Generation",
    "GenerationStatus",
    "GeneratedImage",
    "DEFAULT_STEPS",
    "parse_steps",
    # Events
    "ProgressEvent",
    "ConnectedEvent",
    "ProgressUpdateEvent",
    "CompleteEvent",
    "ErrorEvent",
    "parse_event",
    # Progress
    "ProgressBridge",
    "step_percentage",
    "ProgressConsumer",
    "ProgressState",
    "ConsumerPhase",
    "ProgressWatcher",
    # Inference
    "ComfyUIClient",
    "Subscription",
    "WorkflowRegistry",
    "build_flux2_workflow",
    "default_registry",
    # Manager
    "GenerationManager",
    # Store
    "GenerationStore",
    "SqliteGenerationStore",
    # Queue
    "GenerationQueue",
    "QueueItem",
    "MemoryQueue",
    # Worker
    "GenerationWorker",
    # Config
    "Settings",
    "configure_logging",
    # FastAPI
    "setup_genbridge",
    # Exceptions
    "GenBridgeError",
    "InferenceError",
    "InferenceUnavailableError",
] + __all_redis
