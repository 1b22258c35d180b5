"""Scene router — generation, mask and workflow previews, region catalog."""
from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, status
from pydantic import BaseModel, Field

from scenegen.services.masks.rasterizer import encode_png
from scenegen.services.regions.registry import DEFAULT_SPLITS
from scenegen.services.regions.types import RegionRequest
from scenegen.services.scene.orchestrator import SceneGenOrchestrator
from scenegen.services.scene.prompt import SceneCharacter, build_scene_prompt
from scenegen.services.scene.types import CharacterSlot, SceneGenOptions
from scenegen.services.shared.errors import (
    EngineError,
    EngineUnavailable,
    GenerationCancelled,
    GenerationTimedOut,
    SceneGenError,
    ValidationError,
)
from scenegen.services.shared.task_manager import (
    get_task_manager,
    register_cancel,
    release_cancel,
)

logger = logging.getLogger("scenegen.routers.scene")
router = APIRouter()

_orchestrator: Optional[SceneGenOrchestrator] = None


def _get_orchestrator() -> SceneGenOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SceneGenOrchestrator.from_config()
    return _orchestrator


def _http_error(exc: SceneGenError) -> HTTPException:
    if isinstance(exc, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, EngineUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, GenerationTimedOut):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    elif isinstance(exc, EngineError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=exc.to_dict())


# ── Request models ────────────────────────────────────────────────────────────

class CharacterIn(BaseModel):
    name: str
    reference_image_path: str
    region: Optional[str] = None


class GenerateRequest(BaseModel):
    positive_prompt: str
    characters: List[CharacterIn]
    seed: Optional[int] = None
    steps: Optional[int] = None
    cfg: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    negative_prompt: Optional[str] = None
    feather: Optional[int] = None
    timeout: Optional[float] = None
    sampler: Dict[str, Any] = Field(default_factory=dict)

    def slots(self) -> List[CharacterSlot]:
        return [CharacterSlot(c.name, c.reference_image_path, c.region) for c in self.characters]

    def options(self) -> SceneGenOptions:
        return SceneGenOptions(
            seed=self.seed,
            steps=self.steps,
            cfg=self.cfg,
            width=self.width,
            height=self.height,
            negative_prompt=self.negative_prompt,
            feather_px=self.feather,
            timeout_sec=self.timeout,
            sampler=dict(self.sampler),
        )


class RegionIn(BaseModel):
    name: str
    region: Optional[str] = None


class MaskPreviewRequest(BaseModel):
    characters: List[RegionIn]
    width: Optional[int] = None
    height: Optional[int] = None
    feather: Optional[int] = None
    composite: bool = False


class PromptCharacterIn(BaseModel):
    name: str
    region: Optional[str] = None
    expression: str = ""
    clothing: str = ""
    action: str = ""


class PromptRequest(BaseModel):
    description: str
    characters: List[PromptCharacterIn] = Field(default_factory=list)
    mood: Optional[str] = None
    lighting: Optional[str] = None


# ── Background worker ─────────────────────────────────────────────────────────

async def _run_generate(
    task_id: str,
    positive_prompt: str,
    characters: List[CharacterSlot],
    options: SceneGenOptions,
    cancel_event: Optional[asyncio.Event] = None,
) -> None:
    """Background worker: one scene generation, progress mirrored to the task row.

    ``cancel_event`` is registered by the endpoint before the 202 goes out, so a
    DELETE that lands before this worker starts still stops it.
    """
    tm = get_task_manager()
    if cancel_event is None:
        cancel_event = register_cancel(task_id)
    state = tm.get_status(task_id)
    if state is not None and state.is_terminal:
        logger.info("Task %s already %s; not starting", task_id, state.status.value)
        release_cancel(task_id)
        return

    def progress(stage: str, percent: float, message: str) -> None:
        tm.update_progress(task_id, stage, percent, message)

    try:
        result = await _get_orchestrator().generate(
            positive_prompt, characters, options, cancel_event=cancel_event, progress=progress,
        )
        tm.complete_task(task_id, result.to_dict())
    except GenerationCancelled as exc:
        logger.info("Task %s cancelled during %s", task_id, exc.stage)
        tm.cancel_task(task_id)
    except GenerationTimedOut as exc:
        logger.warning("Task %s timed out: %s", task_id, exc)
        tm.time_out_task(task_id, str(exc))
    except SceneGenError as exc:
        logger.error("Task %s failed at %s: %s", task_id, exc.stage, exc)
        tm.fail_task(task_id, str(exc), stage=exc.stage)
    except Exception as exc:
        # Background tasks run after the 202 response is sent; never re-raise.
        logger.exception("Scene generation crashed: %s", exc)
        tm.fail_task(task_id, str(exc))
    finally:
        release_cancel(task_id)


# ── Endpoints ─────────────────────────────────────────────────────────────────

@router.post("/generate", status_code=status.HTTP_202_ACCEPTED)
async def generate_scene(
    request: GenerateRequest,
    background_tasks: BackgroundTasks,
) -> Dict[str, str]:
    """Validate the request and start generation as a background task."""
    slots = request.slots()
    options = request.options()
    try:
        _get_orchestrator().validate(request.positive_prompt, slots, options)
    except SceneGenError as exc:
        raise _http_error(exc) from exc

    task_id = get_task_manager().create_task("generate_scene", {
        "positive_prompt": request.positive_prompt,
        "characters": [c.name for c in request.characters],
        "seed": request.seed,
    })
    cancel_event = register_cancel(task_id)
    background_tasks.add_task(
        _run_generate, task_id, request.positive_prompt, slots, options, cancel_event,
    )
    return {"task_id": task_id, "status": "queued"}


@router.get("/regions")
async def list_regions() -> Dict[str, Any]:
    """Region catalog, families, and the default split per character count."""
    registry = _get_orchestrator().registry
    regions = []
    for region_id in registry.list_ids():
        preset = registry.resolve(region_id)
        regions.append({
            "id": preset.id,
            "x": preset.x,
            "y": preset.y,
            "w": preset.w,
            "h": preset.h,
            "family": preset.family,
        })
    return {
        "regions": regions,
        "families": registry.families(),
        "defaults": {str(n): list(ids) for n, ids in DEFAULT_SPLITS.items()},
    }


@router.post("/masks/preview")
async def preview_masks(request: MaskPreviewRequest) -> Dict[str, Any]:
    """Render masks for a region assignment without contacting the engine."""
    orch = _get_orchestrator()
    try:
        placements, masks = orch.preview_masks(
            [RegionRequest(c.name, c.region) for c in request.characters],
            request.width,
            request.height,
            request.feather,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc),
        ) from exc

    body: Dict[str, Any] = {
        "masks": [
            {
                "name": m.owner_name,
                "region": m.region_id,
                "width": m.width,
                "height": m.height,
                "feather_px": m.feather_px,
                "warnings": m.warnings,
                "png_base64": m.to_base64(),
            }
            for m in masks
        ],
        "composite": None,
    }
    if request.composite and masks:
        rgb = orch.rasterizer.render_composite(placements, masks[0].width, masks[0].height)
        body["composite"] = base64.b64encode(encode_png(rgb)).decode("ascii")
    return body


@router.post("/workflow/preview")
async def preview_workflow(request: GenerateRequest) -> Dict[str, Any]:
    """Return the engine graph for a request, with placeholder asset names."""
    try:
        graph = _get_orchestrator().preview_graph(
            request.positive_prompt, request.slots(), request.options(),
        )
    except SceneGenError as exc:
        raise _http_error(exc) from exc
    return {
        "prompt": graph.to_prompt(),
        "seed": graph.seed,
        "output_node_id": graph.output_node_id,
        "node_count": len(graph),
    }


@router.post("/prompt")
async def compose_prompt(request: PromptRequest) -> Dict[str, str]:
    """Assemble a positive prompt from a scene description and character details."""
    characters = [
        SceneCharacter(c.name, c.region, c.expression, c.clothing, c.action)
        for c in request.characters
    ]
    return {
        "positive_prompt": build_scene_prompt(
            request.description, characters, request.mood, request.lighting,
        ),
    }
