from fastapi import Request

from ..comfyui import ComfyUIClient
from ..config import Settings
from ..manager import GenerationManager
from .lifecycle import INFERENCE_STATE_KEY, MANAGER_STATE_KEY, SETTINGS_STATE_KEY


def get_generation_manager(request: Request) -> GenerationManager:
    """Dependency to get GenerationManager from app state."""
    mgr = getattr(request.app.state, MANAGER_STATE_KEY, None)
    if mgr is None:
        raise RuntimeError("GenerationManager not initialized. Did you call setup_genbridge()?")
    return mgr


def get_inference(request: Request) -> ComfyUIClient:
    """Dependency to get the inference server client from app state."""
    client = getattr(request.app.state, INFERENCE_STATE_KEY, None)
    if client is None:
        raise RuntimeError("Inference client not initialized. Did you call setup_genbridge()?")
    return client


def get_settings(request: Request) -> Settings:
    """Dependency to get Settings from app state."""
    return getattr(request.app.state, SETTINGS_STATE_KEY, None) or Settings()
