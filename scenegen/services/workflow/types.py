"""Data types for ComfyUI conditioning graphs."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Union


class NodeRef(NamedTuple):
    """Reference to output ``output_index`` of node ``node_id``."""
    node_id: str
    output_index: int = 0

    def to_json(self) -> List[Any]:
        return [self.node_id, self.output_index]


Literal = Union[str, int, float, bool]
NodeInput = Union[Literal, NodeRef]


class NodeRole(str, Enum):
    """Logical role of a node; each role maps to one stable node id."""
    CHECKPOINT = "checkpoint"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    LATENT = "latent"
    LORA = "lora"
    IPADAPTER_LOADER = "ipadapter_loader"
    CLIP_VISION_LOADER = "clip_vision_loader"
    INSIGHTFACE_LOADER = "insightface_loader"
    SAMPLER = "sampler"
    DECODE = "decode"
    SAVE = "save"
    # Per-character roles, one id per slot
    REFERENCE = "reference"
    CONDITIONING = "conditioning"
    MASK = "mask"
    MASK_CONVERT = "mask_convert"


MAX_CHARACTER_SLOTS = 3

_SHARED_IDS: Dict[NodeRole, str] = {
    NodeRole.CHECKPOINT: "1",
    NodeRole.POSITIVE: "2",
    NodeRole.NEGATIVE: "3",
    NodeRole.LATENT: "4",
    NodeRole.LORA: "5",
    NodeRole.IPADAPTER_LOADER: "10",
    NodeRole.CLIP_VISION_LOADER: "11",
    NodeRole.INSIGHTFACE_LOADER: "12",
    NodeRole.SAMPLER: "35",
    NodeRole.DECODE: "36",
    NodeRole.SAVE: "37",
}

# First id of each per-character block; slot i uses base + i.
_SLOT_BASES: Dict[NodeRole, int] = {
    NodeRole.REFERENCE: 20,
    NodeRole.CONDITIONING: 30,
    NodeRole.MASK: 40,
    NodeRole.MASK_CONVERT: 45,
}


def node_id(role: NodeRole, slot: Optional[int] = None) -> str:
    """Return the stable node id for ``role`` (and character ``slot``)."""
    if role in _SHARED_IDS:
        if slot is not None:
            raise ValueError(f"Shared role {role.value} takes no slot")
        return _SHARED_IDS[role]
    if slot is None or not 0 <= slot < MAX_CHARACTER_SLOTS:
        raise ValueError(f"Role {role.value} needs a slot in 0..{MAX_CHARACTER_SLOTS - 1}")
    return str(_SLOT_BASES[role] + slot)


@dataclass
class GraphNode:
    id: str
    class_type: str
    inputs: Dict[str, NodeInput] = field(default_factory=dict)

    def references(self) -> List[NodeRef]:
        return [v for v in self.inputs.values() if isinstance(v, NodeRef)]

    def to_json(self) -> Dict[str, Any]:
        return {
            "class_type": self.class_type,
            "inputs": {
                k: v.to_json() if isinstance(v, NodeRef) else v
                for k, v in self.inputs.items()
            },
        }


class GraphError(ValueError):
    """Raised when a node would break the graph's reference invariants."""


class WorkflowGraph:
    """Ordered node mapping with no dangling references.

    Nodes must be added after every node they reference, so insertion order
    is always a valid topological order.  Exactly one node is marked as the
    terminal output.
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, GraphNode] = {}
        self.output_node_id: Optional[str] = None
        self.seed: Optional[int] = None

    def add(
        self,
        node_id: str,
        class_type: str,
        inputs: Optional[Mapping[str, NodeInput]] = None,
        terminal: bool = False,
    ) -> GraphNode:
        if node_id in self._nodes:
            raise GraphError(f"Duplicate node id {node_id!r}")
        node = GraphNode(node_id, class_type, dict(inputs or {}))
        for ref in node.references():
            if ref.node_id not in self._nodes:
                raise GraphError(f"Node {node_id!r} references missing node {ref.node_id!r}")
        if terminal:
            if self.output_node_id is not None:
                raise GraphError(
                    f"Graph already has terminal node {self.output_node_id!r}"
                )
            self.output_node_id = node_id
        self._nodes[node_id] = node
        return node

    def set_input(self, node_id: str, key: str, value: Literal) -> None:
        """Replace a literal input, e.g. to substitute an uploaded asset name."""
        self._nodes[node_id].inputs[key] = value

    def __getitem__(self, node_id: str) -> GraphNode:
        return self._nodes[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[GraphNode]:
        return iter(self._nodes.values())

    def ids(self) -> List[str]:
        return list(self._nodes)

    def nodes_of_type(self, class_type: str) -> List[GraphNode]:
        return [n for n in self._nodes.values() if n.class_type == class_type]

    def validate(self) -> None:
        """Check the terminal node is set and every reference resolves."""
        if self.output_node_id is None:
            raise GraphError("Graph has no terminal output node")
        for node in self._nodes.values():
            for ref in node.references():
                if ref.node_id not in self._nodes:
                    raise GraphError(f"{node.id} → missing {ref.node_id}")

    def to_prompt(self) -> Dict[str, Dict[str, Any]]:
        """The engine's API form: ``{id: {"class_type", "inputs"}}``."""
        return {n.id: n.to_json() for n in self._nodes.values()}


DEFAULT_NEGATIVE_PROMPT = (
    "(worst quality, low quality:1.4), (bad anatomy:1.3), (bad hands:1.4), "
    "(missing fingers:1.3), (extra fingers:1.3), (too many fingers:1.4), "
    "(fused fingers:1.3), (poorly drawn hands:1.4), (floating limbs:1.3), "
    "(disconnected limbs:1.3), (extra limbs:1.3), (missing arms:1.2), "
    "(extra arms:1.2), (deformed:1.3), (mutated:1.2), (disfigured:1.2), "
    "blurry, lowres, watermark, text, signature, cropped, out of frame, "
    "ugly, duplicate, cloned face, poorly drawn face, "
    "(floating head:1.4), (detached head:1.4), bad proportions, long neck"
)


@dataclass
class SamplerSettings:
    """Model files and numeric knobs for one workflow build."""
    checkpoint: str = "juggernautXL_ragnarokBy.safetensors"
    lora_name: str = "ip-adapter-faceid-plusv2_sdxl_lora.safetensors"
    lora_strength: float = 0.85
    ipadapter_file: str = "ip-adapter-faceid-plusv2_sdxl.bin"
    clip_vision_file: str = "CLIP-ViT-H-14-laion2B-s32B-b79K.safetensors"
    insightface_provider: str = "CPU"
    steps: int = 30
    cfg: float = 5.5
    sampler_name: str = "dpmpp_2m_sde"
    scheduler: str = "karras"
    denoise: float = 1.0
    faceid_weight: float = 1.2
    faceid_v2_weight: float = 1.2
    weight_type: str = "strong middle"
    combine_embeds: str = "concat"
    embeds_scaling: str = "V only"
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    filename_prefix: str = "SceneGen/scene"

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "SamplerSettings":
        """Build from a config section, ignoring keys that are not settings."""
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def with_overrides(self, **overrides: Any) -> "SamplerSettings":
        """Return a copy with every non-None override applied.

        Raises:
            ValueError: If an override names an unknown setting.
        """
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown sampler settings: {sorted(unknown)}")
        return dataclasses.replace(
            self, **{k: v for k, v in overrides.items() if v is not None}
        )
