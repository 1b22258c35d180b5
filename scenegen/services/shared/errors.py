"""Error taxonomy for scene generation.

Every failure carries the ``stage`` it happened in so callers can tell
"the request was malformed" from "the engine is down" from "it's just slow".
Cancellation is not a failure and does not derive from SceneGenError.
"""
from __future__ import annotations

from typing import Any, Optional


class SceneGenError(Exception):
    """Base class for scene generation failures."""

    default_stage = "unknown"

    def __init__(self, message: str, *, stage: Optional[str] = None, detail: Any = None):
        super().__init__(message)
        self.stage = stage or self.default_stage
        self.detail = detail

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "stage": self.stage,
            "message": str(self),
            "detail": self.detail,
        }


class ValidationError(SceneGenError, ValueError):
    """Bad input, rejected before any network call."""
    default_stage = "validation"


class EngineUnavailable(SceneGenError):
    """The inference engine did not answer its health check."""
    default_stage = "health"


class EngineError(SceneGenError):
    """The engine answered but refused or failed the request.

    ``detail`` holds the engine's own error payload when one was returned.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        detail: Any = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, stage=stage, detail=detail)
        self.status_code = status_code


class UploadFailure(EngineError):
    default_stage = "upload"


class SubmitFailure(EngineError):
    default_stage = "submit"


class GenerationFailed(EngineError):
    """The job ran but the engine reported an execution error."""
    default_stage = "await"


class DownloadFailure(EngineError):
    default_stage = "download"


class GenerationTimedOut(SceneGenError):
    """The wait budget ran out.  The job may still complete on the engine."""
    default_stage = "await"

    def __init__(self, message: str, *, job_id: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message, stage=stage, detail={"job_id": job_id})
        self.job_id = job_id


class GenerationCancelled(Exception):
    """The caller aborted the wait.  The remote job is left in place."""

    def __init__(self, stage: str, job_id: Optional[str] = None):
        super().__init__(f"Generation cancelled during {stage}")
        self.stage = stage
        self.job_id = job_id
