"""Workflow Graph Builder — IP-Adapter FaceID scene graph for 1–3 characters.

The graph has a shared layer (checkpoint, LoRA, prompts, latent, the three
FaceID backbone loaders) and one conditioning chain link per character.  Each
link's FaceID node takes the *model output of the previous link*, so the
identities stack; the sampler reads the model from the last link.
"""
from __future__ import annotations

import logging
import random
from functools import reduce
from typing import Optional, Sequence, Tuple

from scenegen.services.scene.types import CharacterSlot, SceneGenRequest
from scenegen.services.shared.errors import ValidationError
from scenegen.services.workflow.types import (
    MAX_CHARACTER_SLOTS,
    NodeRef,
    NodeRole,
    SamplerSettings,
    WorkflowGraph,
    node_id,
)

logger = logging.getLogger("scenegen.workflow.builder")

_SEED_LIMIT = 2 ** 53


def generate_seed() -> int:
    return random.randrange(_SEED_LIMIT)


class WorkflowGraphBuilder:
    """Assembles the ComfyUI prompt graph for one scene.

    Usage::

        builder = WorkflowGraphBuilder(SamplerSettings(steps=25))
        graph = builder.build(request, mask_names, reference_names)
        payload = graph.to_prompt()
    """

    def __init__(self, settings: Optional[SamplerSettings] = None):
        self._settings = settings or SamplerSettings()

    @property
    def settings(self) -> SamplerSettings:
        return self._settings

    def effective_settings(self, request: SceneGenRequest) -> SamplerSettings:
        """Defaults with the request's overrides applied.

        Raises:
            ValidationError: If an override names an unknown setting.
        """
        opts = request.options
        overrides = dict(opts.sampler)
        for key, value in (("steps", opts.steps), ("cfg", opts.cfg),
                           ("negative_prompt", opts.negative_prompt)):
            if value is not None:
                overrides[key] = value
        try:
            return self._settings.with_overrides(**overrides)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    def build(
        self,
        request: SceneGenRequest,
        mask_assets: Sequence[str],
        reference_assets: Sequence[str],
    ) -> WorkflowGraph:
        """Build the graph.

        ``mask_assets[i]`` and ``reference_assets[i]`` are the names the engine
        assigned to character ``i``'s uploads.

        Raises:
            ValidationError: If the character count is outside 1..3 or the
                asset lists do not line up with the characters.
        """
        count = len(request.characters)
        if not 1 <= count <= MAX_CHARACTER_SLOTS:
            raise ValidationError(
                f"Workflow supports 1-{MAX_CHARACTER_SLOTS} characters, got {count}",
                stage="graph",
            )
        if len(mask_assets) != count or len(reference_assets) != count:
            raise ValidationError(
                f"Expected {count} masks and references, got "
                f"{len(mask_assets)} and {len(reference_assets)}",
                stage="graph",
            )

        settings = self.effective_settings(request)
        seed = request.options.seed if request.options.seed is not None else generate_seed()

        graph = WorkflowGraph()
        graph.seed = seed
        start = self._add_shared_layer(graph, request, settings)

        links = list(enumerate(zip(request.characters, reference_assets, mask_assets)))
        last_model = reduce(
            lambda model, link: self._add_character(graph, settings, model, *link),
            links,
            start,
        )

        self._add_tail(graph, settings, last_model, seed)
        graph.validate()
        logger.debug(
            "Built workflow: %d nodes, %d character(s), seed=%d", len(graph), count, seed
        )
        return graph

    # ── layers ────────────────────────────────────────────────────────────────

    def _add_shared_layer(
        self, graph: WorkflowGraph, request: SceneGenRequest, settings: SamplerSettings
    ) -> NodeRef:
        """Add the per-job nodes and return the model output the chain starts from."""
        ckpt = node_id(NodeRole.CHECKPOINT)
        lora = node_id(NodeRole.LORA)

        graph.add(ckpt, "CheckpointLoaderSimple", {"ckpt_name": settings.checkpoint})
        graph.add(lora, "LoraLoader", {
            "model": NodeRef(ckpt, 0),
            "clip": NodeRef(ckpt, 1),
            "lora_name": settings.lora_name,
            "strength_model": settings.lora_strength,
            "strength_clip": settings.lora_strength,
        })
        graph.add(node_id(NodeRole.POSITIVE), "CLIPTextEncode", {
            "clip": NodeRef(lora, 1),
            "text": request.positive_prompt,
        })
        graph.add(node_id(NodeRole.NEGATIVE), "CLIPTextEncode", {
            "clip": NodeRef(lora, 1),
            "text": settings.negative_prompt,
        })
        graph.add(node_id(NodeRole.LATENT), "EmptyLatentImage", {
            "width": request.width,
            "height": request.height,
            "batch_size": 1,
        })
        graph.add(node_id(NodeRole.IPADAPTER_LOADER), "IPAdapterModelLoader", {
            "ipadapter_file": settings.ipadapter_file,
        })
        graph.add(node_id(NodeRole.CLIP_VISION_LOADER), "CLIPVisionLoader", {
            "clip_name": settings.clip_vision_file,
        })
        graph.add(node_id(NodeRole.INSIGHTFACE_LOADER), "IPAdapterInsightFaceLoader", {
            "provider": settings.insightface_provider,
        })
        return NodeRef(lora, 0)

    def _add_character(
        self,
        graph: WorkflowGraph,
        settings: SamplerSettings,
        model: NodeRef,
        slot: int,
        assets: Tuple[CharacterSlot, str, str],
    ) -> NodeRef:
        """Add one chain link and return its model output for the next link."""
        _character, reference_name, mask_name = assets
        ref_id = node_id(NodeRole.REFERENCE, slot)
        mask_id = node_id(NodeRole.MASK, slot)
        convert_id = node_id(NodeRole.MASK_CONVERT, slot)
        faceid_id = node_id(NodeRole.CONDITIONING, slot)

        graph.add(ref_id, "LoadImage", {"image": reference_name})
        graph.add(mask_id, "LoadImage", {"image": mask_name})
        graph.add(convert_id, "ImageToMask", {
            "image": NodeRef(mask_id, 0),
            "channel": "red",
        })
        graph.add(faceid_id, "IPAdapterFaceID", {
            "model": model,
            "ipadapter": NodeRef(node_id(NodeRole.IPADAPTER_LOADER), 0),
            "image": NodeRef(ref_id, 0),
            "attn_mask": NodeRef(convert_id, 0),
            "clip_vision": NodeRef(node_id(NodeRole.CLIP_VISION_LOADER), 0),
            "insightface": NodeRef(node_id(NodeRole.INSIGHTFACE_LOADER), 0),
            "weight": settings.faceid_weight,
            "weight_faceidv2": settings.faceid_v2_weight,
            "weight_type": settings.weight_type,
            "combine_embeds": settings.combine_embeds,
            "start_at": 0.0,
            "end_at": 1.0,
            "embeds_scaling": settings.embeds_scaling,
        })
        return NodeRef(faceid_id, 0)

    def _add_tail(
        self, graph: WorkflowGraph, settings: SamplerSettings, model: NodeRef, seed: int
    ) -> None:
        sampler = node_id(NodeRole.SAMPLER)
        decode = node_id(NodeRole.DECODE)

        graph.add(sampler, "KSampler", {
            "model": model,
            "positive": NodeRef(node_id(NodeRole.POSITIVE), 0),
            "negative": NodeRef(node_id(NodeRole.NEGATIVE), 0),
            "latent_image": NodeRef(node_id(NodeRole.LATENT), 0),
            "seed": seed,
            "steps": settings.steps,
            "cfg": settings.cfg,
            "sampler_name": settings.sampler_name,
            "scheduler": settings.scheduler,
            "denoise": settings.denoise,
        })
        graph.add(decode, "VAEDecode", {
            "samples": NodeRef(sampler, 0),
            "vae": NodeRef(node_id(NodeRole.CHECKPOINT), 2),
        })
        graph.add(node_id(NodeRole.SAVE), "SaveImage", {
            "images": NodeRef(decode, 0),
            "filename_prefix": settings.filename_prefix,
        }, terminal=True)
