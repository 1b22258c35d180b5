"""System router — service health and inference engine status."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter

from scenegen.services.inference.client import ComfyUIClient
from scenegen.services.shared.config import get_config

logger = logging.getLogger("scenegen.routers.system")
router = APIRouter()

VERSION = "0.1.0"

_client: Optional[ComfyUIClient] = None


def _get_client() -> ComfyUIClient:
    global _client
    if _client is None:
        _client = ComfyUIClient.from_config(get_config())
    return _client


@router.get("/health")
async def health_check() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": VERSION}


@router.get("/engine")
async def engine_status() -> Dict[str, Any]:
    """Report whether ComfyUI answers, with its system stats when it does."""
    client = _get_client()
    stats = await asyncio.to_thread(client.system_stats)
    return {
        "available": stats is not None,
        "url": client.base_url,
        "stats": stats or {},
    }
