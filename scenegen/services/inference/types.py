"""Data types for inference engine jobs."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from scenegen.services.workflow.types import WorkflowGraph


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class OutputImage:
    """An output asset descriptor from the engine's history listing."""
    filename: str
    subfolder: str = ""
    type: str = "output"
    node_id: str = ""

    @classmethod
    def from_json(cls, data: Dict[str, Any], node_id: str = "") -> "OutputImage":
        return cls(
            filename=data["filename"],
            subfolder=data.get("subfolder") or "",
            type=data.get("type") or "output",
            node_id=node_id,
        )


@dataclass
class GenerationJob:
    """One submitted graph.  Only the polling loop changes ``status``."""
    graph: WorkflowGraph
    submitted_at: float = field(default_factory=time.time)
    job_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING


@dataclass
class JobOutcome:
    """Terminal result of waiting on a job."""
    status: JobStatus
    job_id: str
    outputs: List[OutputImage] = field(default_factory=list)
    reason: str = ""
    elapsed_sec: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED
