from __future__ import annotations

import logging
import random
from collections.abc import Callable
from typing import Any

from .models import parse_steps

logger = logging.getLogger("genbridge.workflows")

Workflow = dict[str, dict[str, Any]]
WorkflowBuilder = Callable[[str, dict[str, Any]], Workflow]

DEFAULT_WORKFLOW = "flux2"
MAX_SEED = 2**53 - 1

RESOLUTIONS: dict[str, dict[str, tuple[int, int]]] = {
    "1K": {
        "1:1": (1024, 1024),
        "16:9": (1280, 720),
        "9:16": (720, 1280),
        "4:3": (1152, 864),
        "3:4": (864, 1152),
        "21:9": (1344, 576),
    },
    "2K": {
        "1:1": (2048, 2048),
        "16:9": (2560, 1440),
        "9:16": (1440, 2560),
        "4:3": (2304, 1728),
        "3:4": (1728, 2304),
        "21:9": (2688, 1152),
    },
    "4K": {
        "1:1": (4096, 4096),
        "16:9": (3840, 2160),
        "9:16": (2160, 3840),
        "4:3": (4096, 3072),
        "3:4": (3072, 4096),
        "21:9": (5120, 2160),
    },
}


def resolution_dimensions(resolution: str = "1K", aspect_ratio: str = "1:1") -> tuple[int, int]:
    """Pixel size for a resolution tier and aspect ratio."""
    try:
        return RESOLUTIONS[resolution][aspect_ratio]
    except KeyError:
        raise ValueError(f"Unsupported resolution {resolution!r} / aspect ratio {aspect_ratio!r}")


def _node(class_type: str, title: str, **inputs: Any) -> dict[str, Any]:
    return {"inputs": inputs, "class_type": class_type, "_meta": {"title": title}}


def build_flux2_workflow(prompt: str, settings: dict[str, Any]) -> Workflow:
    """Flux 2 text-to-image graph.

    The scheduler's ``steps`` is the declared step count, which is what the
    progress bridge divides live ticks by.
    """
    width, height = resolution_dimensions(
        settings.get("resolution", "1K"), settings.get("aspectRatio", "1:1")
    )
    steps = parse_steps(settings)
    guidance = settings.get("guidance", 4)
    seed = settings.get("seed")
    if seed is None:
        seed = random.randint(0, MAX_SEED)

    return {
        "6": _node("CLIPTextEncode", "CLIP Text Encode (Positive Prompt)", text=prompt, clip=["38", 0]),
        "8": _node("VAEDecode", "VAE Decode", samples=["13", 0], vae=["10", 0]),
        "9": _node("SaveImage", "Save Image", filename_prefix="Flux2", images=["8", 0]),
        "10": _node("VAELoader", "Load VAE", vae_name="flux2-vae.safetensors"),
        "12": _node(
            "UNETLoader",
            "Load Diffusion Model",
            unet_name="flux2_dev_fp8mixed.safetensors",
            weight_dtype="default",
        ),
        "13": _node(
            "SamplerCustomAdvanced",
            "SamplerCustomAdvanced",
            noise=["25", 0],
            guider=["22", 0],
            sampler=["16", 0],
            sigmas=["48", 0],
            latent_image=["47", 0],
        ),
        "16": _node("KSamplerSelect", "KSamplerSelect", sampler_name="euler"),
        "22": _node("BasicGuider", "BasicGuider", model=["12", 0], conditioning=["26", 0]),
        "25": _node("RandomNoise", "RandomNoise", noise_seed=seed),
        "26": _node("FluxGuidance", "FluxGuidance", guidance=guidance, conditioning=["6", 0]),
        "38": _node(
            "CLIPLoader",
            "Load CLIP",
            clip_name="mistral_3_small_flux2_bf16.safetensors",
            type="flux2",
            device="default",
        ),
        "47": _node("EmptyFlux2LatentImage", "Empty Flux 2 Latent", width=width, height=height, batch_size=1),
        "48": _node("Flux2Scheduler", "Flux2Scheduler", steps=steps, width=width, height=height),
    }


class WorkflowRegistry:
    """Registry of workflow builders by name."""

    def __init__(self) -> None:
        self._map: dict[str, WorkflowBuilder] = {}

    def add(self, name: str, builder: WorkflowBuilder) -> None:
        """Register a workflow builder."""
        self._map[name] = builder
        logger.info(f"Registered workflow: {name}")

    def get(self, name: str) -> WorkflowBuilder | None:
        """Get workflow builder by name."""
        return self._map.get(name)

    def list_workflows(self) -> list[str]:
        """List all registered workflows."""
        return list(self._map.keys())

    def build(self, prompt: str, settings: dict[str, Any]) -> Workflow:
        """Build the workflow named by ``settings["workflow"]``."""
        name = settings.get("workflow") or DEFAULT_WORKFLOW
        builder = self.get(name)
        if builder is None:
            raise ValueError(f"No workflow registered under {name!r}")
        return builder(prompt, settings)


def default_registry() -> WorkflowRegistry:
    registry = WorkflowRegistry()
    registry.add("flux2", build_flux2_workflow)
    return registry
