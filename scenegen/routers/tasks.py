"""Task router — background task state, cancellation, and WebSocket progress."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, status

from scenegen.services.shared.task_manager import TaskState, get_task_manager, request_cancel

logger = logging.getLogger("scenegen.routers.tasks")
router = APIRouter()

_WS_POLL_INTERVAL = 0.5   # seconds between DB polls for WebSocket updates
_WS_TIMEOUT       = 600   # max WebSocket session duration


# ── Helpers ───────────────────────────────────────────────────────────────────

# TaskManager stores "complete"; clients expect "completed"
_STATUS_MAP = {"complete": "completed"}


def _state_to_dict(state: TaskState) -> Dict[str, Any]:
    raw_status = state.status.value
    return {
        "task_id":   state.task_id,
        "task_type": state.task_type,
        "status":    _STATUS_MAP.get(raw_status, raw_status),
        "progress":  state.percent,
        "stage":     state.stage,
        "message":   state.message,
        "result":    state.result,
        "error":     state.error,
    }


def _require(task_id: str) -> TaskState:
    state = get_task_manager().get_status(task_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id!r} not found.",
        )
    return state


# ── Endpoints ─────────────────────────────────────────────────────────────────

# NOTE: GET "/" must be defined before GET "/{task_id}" so FastAPI doesn't
# swallow the empty path as a task_id.

@router.get("/")
async def list_active_tasks() -> Dict[str, Any]:
    """List all pending and running tasks."""
    tasks = get_task_manager().list_active()
    return {"tasks": [_state_to_dict(t) for t in tasks], "total": len(tasks)}


@router.get("/{task_id}")
async def get_task(task_id: str) -> Dict[str, Any]:
    """Return the current state of a background task.

    Status values: ``pending`` | ``running`` | ``completed`` | ``failed`` |
    ``timed_out`` | ``cancelled``
    """
    return _state_to_dict(_require(task_id))


@router.delete("/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_task(task_id: str) -> None:
    """Cancel a pending or running task.

    The job's local wait stops at once; a graph already queued on the engine
    is left to run.
    """
    _require(task_id)
    if not request_cancel(task_id):
        logger.debug("No live job for task_id=%s; marking cancelled only", task_id)
    get_task_manager().cancel_task(task_id)


@router.websocket("/ws/{task_id}")
async def task_progress_ws(websocket: WebSocket, task_id: str) -> None:
    """Stream task progress over WebSocket.

    Pushes ``{task_id, progress, stage, message, status}`` every 500 ms and
    closes when the task reaches a terminal state or the session times out.
    """
    await websocket.accept()
    tm = get_task_manager()
    elapsed = 0.0

    try:
        while elapsed < _WS_TIMEOUT:
            state = tm.get_status(task_id)

            if state is None:
                await websocket.send_json({
                    "task_id": task_id,
                    "progress": 0,
                    "stage": "error",
                    "message": f"Task {task_id!r} not found.",
                    "status": "failed",
                })
                break

            raw_status = state.status.value
            await websocket.send_json({
                "task_id":  task_id,
                "progress": state.percent,
                "stage":    state.stage,
                "message":  state.message,
                "status":   _STATUS_MAP.get(raw_status, raw_status),
            })

            if state.is_terminal:
                break

            await asyncio.sleep(_WS_POLL_INTERVAL)
            elapsed += _WS_POLL_INTERVAL

        await websocket.close()

    except WebSocketDisconnect:
        logger.debug("WebSocket disconnected for task_id=%s", task_id)
