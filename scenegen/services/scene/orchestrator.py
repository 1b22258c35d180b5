"""SceneGen Orchestrator — one multi-character scene, request to output image.

Stages, in order:
    validation → health → regions → upload → masks → graph → submit → await → download

Any failure surfaces as a ``SceneGenError`` tagged with the stage it happened
in.  Cancellation is checked between stages and raises ``GenerationCancelled``.
Uploaded assets are left on the engine when a later stage fails.
"""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from scenegen.services.inference.client import ComfyUIClient
from scenegen.services.inference.types import GenerationJob, JobOutcome, JobStatus
from scenegen.services.masks.rasterizer import AttentionMask, MaskRasterizer, validate_canvas
from scenegen.services.regions.registry import RegionRegistry
from scenegen.services.regions.types import CharacterPlacement, RegionRequest
from scenegen.services.scene.types import (
    CharacterSlot,
    SceneGenOptions,
    SceneGenRequest,
    SceneGenResult,
)
from scenegen.services.shared.config import Config, get_config
from scenegen.services.shared.errors import (
    EngineUnavailable,
    GenerationCancelled,
    GenerationFailed,
    GenerationTimedOut,
    SceneGenError,
    ValidationError,
)
from scenegen.services.shared.logging import run_context
from scenegen.services.workflow.builder import WorkflowGraphBuilder
from scenegen.services.workflow.types import MAX_CHARACTER_SLOTS, SamplerSettings, WorkflowGraph

logger = logging.getLogger("scenegen.scene.orchestrator")

ProgressCallback = Callable[[str, float, str], None]

# Percent reported when each stage starts.
_STAGE_PERCENT = {
    "validation": 0.0,
    "health": 5.0,
    "regions": 10.0,
    "upload": 15.0,
    "masks": 30.0,
    "graph": 45.0,
    "submit": 50.0,
    "await": 55.0,
    "download": 90.0,
}


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "character"


def reference_upload_name(run_id: str, name: str, index: int) -> str:
    return f"{run_id}_ref_{_slug(name)}_{index}.png"


def mask_upload_name(run_id: str, index: int) -> str:
    return f"{run_id}_scene_mask_char{index + 1}.png"


@contextmanager
def _stage_errors(stage: str) -> Iterator[None]:
    """Tag every failure raised inside the block with ``stage``."""
    try:
        yield
    except SceneGenError as exc:
        exc.stage = stage
        raise
    except GenerationCancelled:
        raise
    except Exception as exc:
        raise SceneGenError(f"{stage} failed: {exc}", stage=stage) from exc


def _check_cancel(cancel_event: Optional[asyncio.Event], stage: str, job_id: Optional[str] = None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("Generation cancelled before %s", stage)
        raise GenerationCancelled(stage, job_id)


class SceneGenOrchestrator:
    """Runs the scene pipeline against one inference engine.

    Holds no per-job state; concurrent ``generate`` calls are independent.

    Usage::

        orch = SceneGenOrchestrator.from_config()
        result = await orch.generate(
            "two friends at a cafe, golden hour",
            [CharacterSlot("Elena", "refs/elena.png"), CharacterSlot("Sophie", "refs/sophie.png")],
            SceneGenOptions(seed=42),
        )
    """

    def __init__(
        self,
        client: ComfyUIClient,
        registry: Optional[RegionRegistry] = None,
        rasterizer: Optional[MaskRasterizer] = None,
        builder: Optional[WorkflowGraphBuilder] = None,
        staging_dir: Path = Path("data/staging"),
        output_dir: Path = Path("output/scenes"),
        canvas_size: Tuple[int, int] = (1024, 576),
        feather_px: int = 20,
        download_outputs: bool = False,
    ):
        self._client = client
        self._registry = registry or RegionRegistry()
        self._rasterizer = rasterizer or MaskRasterizer(self._registry)
        self._builder = builder or WorkflowGraphBuilder()
        self._staging_dir = Path(staging_dir)
        self._output_dir = Path(output_dir)
        self._canvas_size = canvas_size
        self._feather_px = feather_px
        self._download_outputs = download_outputs

    @classmethod
    def from_config(
        cls, config: Optional[Config] = None, client: Optional[ComfyUIClient] = None
    ) -> "SceneGenOrchestrator":
        cfg = config or get_config()
        registry = RegionRegistry()
        return cls(
            client=client or ComfyUIClient.from_config(cfg),
            registry=registry,
            rasterizer=MaskRasterizer(registry),
            builder=WorkflowGraphBuilder(SamplerSettings.from_mapping(cfg.section("workflow"))),
            staging_dir=Path(cfg.get("paths.staging", "data/staging")),
            output_dir=Path(cfg.get("paths.outputs", "output/scenes")),
            canvas_size=(int(cfg.get("canvas.width", 1024)), int(cfg.get("canvas.height", 576))),
            feather_px=int(cfg.get("canvas.feather_px", 20)),
            download_outputs=bool(cfg.get("engine.download_outputs", False)),
        )

    @property
    def client(self) -> ComfyUIClient:
        return self._client

    @property
    def registry(self) -> RegionRegistry:
        return self._registry

    @property
    def rasterizer(self) -> MaskRasterizer:
        return self._rasterizer

    @property
    def builder(self) -> WorkflowGraphBuilder:
        return self._builder

    # ── public ────────────────────────────────────────────────────────────────

    async def generate(
        self,
        positive_prompt: str,
        characters: Sequence[CharacterSlot],
        options: Optional[SceneGenOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SceneGenResult:
        """Generate one scene image.

        Raises:
            ValidationError: Bad input; nothing was sent to the engine.
            EngineUnavailable: The health check failed.
            SceneGenError: Any later failure, with ``stage`` set.
            GenerationTimedOut: The wait budget ran out.
            GenerationCancelled: ``cancel_event`` was set.
        """
        with run_context(uuid.uuid4().hex[:8]) as run_id:
            return await self._generate_run(
                run_id, positive_prompt, characters, options or SceneGenOptions(),
                cancel_event, progress,
            )

    async def _generate_run(
        self,
        run_id: str,
        positive_prompt: str,
        characters: Sequence[CharacterSlot],
        options: SceneGenOptions,
        cancel_event: Optional[asyncio.Event],
        progress: Optional[ProgressCallback],
    ) -> SceneGenResult:
        def report(stage: str, message: str) -> None:
            logger.info("%s: %s", stage, message)
            if progress is not None:
                progress(stage, _STAGE_PERCENT[stage], message)

        # 1. Validate (no network)
        report("validation", f"Validating {len(characters)} character(s)")
        with _stage_errors("validation"):
            width, height, feather = self.validate(positive_prompt, characters, options)
            references = [self._read_reference(c) for c in characters]

        # 2. Engine health
        _check_cancel(cancel_event, "health")
        report("health", f"Checking engine at {self._client.base_url}")
        with _stage_errors("health"):
            if not await asyncio.to_thread(self._client.is_available):
                raise EngineUnavailable(f"ComfyUI not reachable at {self._client.base_url}")

        # 3. Regions
        _check_cancel(cancel_event, "regions")
        report("regions", "Assigning regions")
        with _stage_errors("regions"):
            placements = self._registry.auto_assign(
                [RegionRequest(c.name, c.region) for c in characters]
            )
            request = SceneGenRequest(
                positive_prompt=positive_prompt,
                characters=[
                    CharacterSlot(c.name, c.reference_image_path, p.region)
                    for c, p in zip(characters, placements)
                ],
                width=width,
                height=height,
                options=options,
            )

        # 4. Reference uploads
        _check_cancel(cancel_event, "upload")
        report("upload", f"Uploading {len(references)} reference image(s)")
        with _stage_errors("upload"):
            reference_names = await asyncio.gather(*(
                asyncio.to_thread(
                    self._client.upload, data, reference_upload_name(run_id, slot.name, i)
                )
                for i, (slot, data) in enumerate(zip(characters, references))
            ))

        # 5. Masks: render, stage, upload
        _check_cancel(cancel_event, "masks")
        report("masks", f"Rendering {len(placements)} mask(s) at {width}x{height}")
        with _stage_errors("masks"):
            masks = await asyncio.to_thread(
                self._rasterizer.render_all, placements, width, height, feather
            )
            mask_names = await asyncio.gather(*(
                asyncio.to_thread(self._stage_and_upload_mask, mask, run_id, i)
                for i, mask in enumerate(masks)
            ))
        warnings = [w for mask in masks for w in mask.warnings]

        # 6. Graph
        _check_cancel(cancel_event, "graph")
        report("graph", "Building workflow")
        with _stage_errors("graph"):
            graph = self._builder.build(request, list(mask_names), list(reference_names))

        # 7. Submit
        _check_cancel(cancel_event, "submit")
        report("submit", f"Submitting {len(graph)}-node workflow (seed={graph.seed})")
        job = GenerationJob(graph)
        with _stage_errors("submit"):
            job.job_id = await asyncio.to_thread(self._client.submit, graph)

        # 8. Await
        report("await", f"Waiting for job {job.job_id}")
        with _stage_errors("await"):
            outcome = await self._client.await_completion(
                job.job_id, timeout=options.timeout_sec, cancel_event=cancel_event, job=job,
            )
            self._raise_for_outcome(outcome)

        output_urls = [self._client.view_url(o) for o in outcome.outputs]
        output_paths = [
            f"{o.subfolder}/{o.filename}" if o.subfolder else o.filename
            for o in outcome.outputs
        ]

        # 9. Optional download
        if self._download_outputs:
            _check_cancel(cancel_event, "download", job.job_id)
            report("download", f"Downloading {len(outcome.outputs)} image(s)")
            with _stage_errors("download"):
                local = await asyncio.gather(*(
                    asyncio.to_thread(self._client.download, o, self._output_dir)
                    for o in outcome.outputs
                ))
            output_paths = [str(p) for p in local]

        logger.info(
            "Job %s finished in %.1fs: %d image(s)",
            job.job_id, outcome.elapsed_sec, len(output_paths),
        )
        return SceneGenResult(
            output_paths=output_paths,
            job_id=job.job_id,
            seed=graph.seed,
            output_urls=output_urls,
            regions={p.name: p.region for p in placements},
            warnings=warnings,
        )

    def generate_sync(
        self,
        positive_prompt: str,
        characters: Sequence[CharacterSlot],
        options: Optional[SceneGenOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SceneGenResult:
        """Blocking wrapper for callers without an event loop."""
        return asyncio.run(
            self.generate(positive_prompt, characters, options, cancel_event, progress)
        )

    def preview_masks(
        self,
        characters: Sequence[RegionRequest],
        width: Optional[int] = None,
        height: Optional[int] = None,
        feather_px: Optional[int] = None,
    ) -> Tuple[List[CharacterPlacement], List[AttentionMask]]:
        """Assign regions and render masks without touching the engine."""
        width = self._canvas_size[0] if width is None else width
        height = self._canvas_size[1] if height is None else height
        feather = self._feather_px if feather_px is None else feather_px
        placements = self._registry.auto_assign(characters)
        return placements, self._rasterizer.render_all(placements, width, height, feather)

    def preview_graph(
        self,
        positive_prompt: str,
        characters: Sequence[CharacterSlot],
        options: Optional[SceneGenOptions] = None,
    ) -> WorkflowGraph:
        """Build the graph with placeholder asset names, without touching the engine."""
        options = options or SceneGenOptions()
        width, height, _ = self.validate(positive_prompt, characters, options, check_files=False)
        placements = self._registry.auto_assign(
            [RegionRequest(c.name, c.region) for c in characters]
        )
        request = SceneGenRequest(
            positive_prompt,
            [CharacterSlot(c.name, c.reference_image_path, p.region)
             for c, p in zip(characters, placements)],
            width,
            height,
            options,
        )
        return self._builder.build(
            request,
            [mask_upload_name("preview", i) for i in range(len(characters))],
            [reference_upload_name("preview", c.name, i) for i, c in enumerate(characters)],
        )

    def validate(
        self,
        positive_prompt: str,
        characters: Sequence[CharacterSlot],
        options: SceneGenOptions,
        check_files: bool = True,
    ) -> Tuple[int, int, int]:
        """Check the request and return the effective ``(width, height, feather)``.

        Runs before any network call.

        Raises:
            ValidationError: On any malformed field or unreadable reference path.
        """
        if not positive_prompt or not positive_prompt.strip():
            raise ValidationError("positive_prompt must not be empty")
        if not 1 <= len(characters) <= MAX_CHARACTER_SLOTS:
            raise ValidationError(
                f"Scene needs 1-{MAX_CHARACTER_SLOTS} characters, got {len(characters)}"
            )
        seen: set = set()
        for i, char in enumerate(characters):
            if not char.name or not char.name.strip():
                raise ValidationError(f"Character {i} has an empty name")
            if char.name.strip() in seen:
                raise ValidationError(f"Character name {char.name!r} is used more than once")
            seen.add(char.name.strip())
            if not char.reference_image_path:
                raise ValidationError(f"Character {char.name!r} has no reference image")
            if check_files and not Path(char.reference_image_path).is_file():
                raise ValidationError(
                    f"Reference image for {char.name!r} not found: {char.reference_image_path}"
                )

        width = self._canvas_size[0] if options.width is None else options.width
        height = self._canvas_size[1] if options.height is None else options.height
        try:
            validate_canvas(width, height)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        feather = self._feather_px if options.feather_px is None else options.feather_px
        if feather < 0:
            raise ValidationError(f"feather_px must be >= 0, got {feather}")
        if options.timeout_sec is not None and options.timeout_sec <= 0:
            raise ValidationError(f"timeout_sec must be > 0, got {options.timeout_sec}")

        # Unknown sampler overrides fail here rather than after the uploads.
        self._builder.effective_settings(
            SceneGenRequest(positive_prompt, list(characters), width, height, options)
        )
        return width, height, feather

    # ── private ───────────────────────────────────────────────────────────────

    @staticmethod
    def _read_reference(char: CharacterSlot) -> bytes:
        try:
            return Path(char.reference_image_path).read_bytes()
        except OSError as exc:
            raise ValidationError(
                f"Cannot read reference image for {char.name!r}: {exc}"
            ) from exc

    def _stage_and_upload_mask(self, mask: AttentionMask, run_id: str, index: int) -> str:
        name = mask_upload_name(run_id, index)
        path = mask.save(self._staging_dir, name)
        logger.debug("Staged mask for %s at %s", mask.owner_name, path)
        return self._client.upload(path.read_bytes(), name)

    @staticmethod
    def _raise_for_outcome(outcome: JobOutcome) -> None:
        if outcome.status == JobStatus.SUCCEEDED:
            return
        if outcome.status == JobStatus.CANCELLED:
            raise GenerationCancelled("await", outcome.job_id)
        if outcome.status == JobStatus.TIMED_OUT:
            raise GenerationTimedOut(
                f"Job {outcome.job_id} did not finish within {outcome.elapsed_sec:.0f}s",
                job_id=outcome.job_id,
            )
        raise GenerationFailed(
            outcome.reason or f"Job {outcome.job_id} failed",
            detail={"job_id": outcome.job_id},
        )
