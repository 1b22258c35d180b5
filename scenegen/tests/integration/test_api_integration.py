"""Integration tests for the SceneGen FastAPI app.

Uses FastAPI TestClient to exercise every router end-to-end through the ASGI
stack.  ComfyUI is replaced by the ``fake_comfy`` session mock; masks,
graphs, SQLite task rows and background generation all run for real.
"""
from __future__ import annotations

import asyncio
import base64

import pytest
from fastapi.testclient import TestClient

from scenegen.main import app
from scenegen.routers import scene, system
from scenegen.services.scene.orchestrator import SceneGenOrchestrator
from scenegen.services.scene.types import CharacterSlot, SceneGenOptions
from scenegen.services.shared.config import get_config, reset_config
from scenegen.services.shared.task_manager import (
    TaskStatus,
    get_task_manager,
    register_cancel,
    request_cancel,
    reset_task_manager,
)


@pytest.fixture
def orchestrator(comfy_client, tmp_dir):
    return SceneGenOrchestrator(
        comfy_client, staging_dir=tmp_dir / "staging", output_dir=tmp_dir / "outputs",
    )


@pytest.fixture
def client(sample_settings, comfy_client, orchestrator, monkeypatch):
    reset_config()
    reset_task_manager()
    get_config(str(sample_settings))
    monkeypatch.setattr(scene, "_orchestrator", orchestrator)
    monkeypatch.setattr(system, "_client", comfy_client)
    with TestClient(app) as c:
        yield c
    reset_config()
    reset_task_manager()


def _generate_body(paths, **extra):
    names = ["Elena", "Sophie", "Marco"]
    body = {
        "positive_prompt": "two friends at a cafe, golden hour",
        "characters": [{"name": n, "reference_image_path": str(p)} for n, p in zip(names, paths)],
    }
    body.update(extra)
    return body


# ─────────────────────────────────────────────────────────────────────────────
# System
# ─────────────────────────────────────────────────────────────────────────────


class TestSystem:
    def test_health(self, client):
        resp = client.get("/api/system/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_engine_available(self, client):
        body = client.get("/api/system/engine").json()
        assert body["available"] is True
        assert body["url"] == "http://comfy.test:8188"
        assert body["stats"]["system"]["comfyui_version"] == "0.3.10"

    def test_engine_down(self, client, fake_comfy):
        fake_comfy.available = False
        body = client.get("/api/system/engine").json()
        assert body["available"] is False
        assert body["stats"] == {}


# ─────────────────────────────────────────────────────────────────────────────
# Scene: offline endpoints
# ─────────────────────────────────────────────────────────────────────────────


class TestSceneOffline:
    def test_regions(self, client):
        body = client.get("/api/scene/regions").json()
        assert len(body["regions"]) == 14
        assert body["defaults"]["2"] == ["left-half", "right-half"]
        assert "seated" in body["families"]

    def test_mask_preview(self, client, fake_comfy):
        resp = client.post("/api/scene/masks/preview", json={
            "characters": [{"name": "Elena"}, {"name": "Sophie"}],
            "width": 256, "height": 144, "feather": 8, "composite": True,
        })
        assert resp.status_code == 200
        body = resp.json()
        assert [m["region"] for m in body["masks"]] == ["left-half", "right-half"]
        assert base64.b64decode(body["masks"][0]["png_base64"]).startswith(b"\x89PNG")
        assert base64.b64decode(body["composite"]).startswith(b"\x89PNG")
        assert not fake_comfy.session.post.called

    def test_mask_preview_unknown_region_warns(self, client):
        body = client.post("/api/scene/masks/preview", json={
            "characters": [{"name": "Elena", "region": "rooftop"}], "width": 64, "height": 64,
        }).json()
        assert body["masks"][0]["region"] == "full"
        assert body["masks"][0]["warnings"]

    def test_mask_preview_bad_canvas(self, client):
        resp = client.post("/api/scene/masks/preview", json={
            "characters": [{"name": "Elena"}], "width": 0, "height": 64,
        })
        assert resp.status_code == 422

    def test_workflow_preview(self, client, reference_images):
        resp = client.post("/api/scene/workflow/preview", json=_generate_body(reference_images[:2], seed=99))
        assert resp.status_code == 200
        body = resp.json()
        assert body["seed"] == 99
        assert body["output_node_id"] == "37"
        assert body["prompt"]["31"]["inputs"]["model"] == ["30", 0]

    def test_workflow_preview_too_many_characters(self, client, reference_images):
        body = _generate_body(reference_images)
        body["characters"].append({"name": "Extra", "reference_image_path": "x.png"})
        resp = client.post("/api/scene/workflow/preview", json=body)
        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "ValidationError"

    def test_prompt(self, client):
        resp = client.post("/api/scene/prompt", json={
            "description": "a rainy street",
            "characters": [{"name": "Elena", "region": "left", "expression": "laughing"}],
            "mood": "playful",
        })
        prompt = resp.json()["positive_prompt"]
        assert "person left laughing" in prompt
        assert "playful atmosphere" in prompt


# ─────────────────────────────────────────────────────────────────────────────
# Scene: background generation + tasks
# ─────────────────────────────────────────────────────────────────────────────


class TestGenerate:
    def test_generate_completes(self, client, reference_images, fake_comfy):
        resp = client.post("/api/scene/generate", json=_generate_body(reference_images[:2], seed=5))
        assert resp.status_code == 202
        task_id = resp.json()["task_id"]

        task = client.get(f"/api/tasks/{task_id}").json()
        assert task["status"] == "completed"
        assert task["progress"] == 100.0
        assert task["result"]["job_id"] == "job-123"
        assert task["result"]["seed"] == 5
        assert len(task["result"]["output_paths"]) == 1
        assert len(fake_comfy.prompts) == 1

    def test_generate_rejects_invalid_request(self, client, tmp_dir, fake_comfy):
        body = _generate_body([tmp_dir / "missing.png"])
        resp = client.post("/api/scene/generate", json=body)
        assert resp.status_code == 422
        assert resp.json()["detail"]["stage"] == "validation"
        assert get_task_manager().list_active() == []

    def test_engine_down_fails_task(self, client, reference_images, fake_comfy):
        fake_comfy.available = False
        task_id = client.post("/api/scene/generate", json=_generate_body(reference_images[:1])).json()["task_id"]
        task = client.get(f"/api/tasks/{task_id}").json()
        assert task["status"] == "failed"
        assert task["stage"] == "health"
        assert "not reachable" in task["error"]

    def test_timeout_marks_task_timed_out(self, client, reference_images, fake_comfy):
        fake_comfy.history_entry = None
        body = _generate_body(reference_images[:1], timeout=0.1)
        task_id = client.post("/api/scene/generate", json=body).json()["task_id"]
        assert client.get(f"/api/tasks/{task_id}").json()["status"] == "timed_out"

    def test_progress_websocket(self, client, reference_images):
        task_id = client.post("/api/scene/generate", json=_generate_body(reference_images[:1])).json()["task_id"]
        with client.websocket_connect(f"/api/tasks/ws/{task_id}") as ws:
            event = ws.receive_json()
        assert event["task_id"] == task_id
        assert event["status"] == "completed"


class TestTasks:
    def test_list_active(self, client):
        task_id = get_task_manager().create_task("generate_scene", {})
        body = client.get("/api/tasks/").json()
        assert body["total"] == 1
        assert body["tasks"][0]["task_id"] == task_id

    def test_unknown_task_404(self, client):
        assert client.get("/api/tasks/nope").status_code == 404
        assert client.delete("/api/tasks/nope").status_code == 404

    def test_delete_cancels(self, client):
        task_id = get_task_manager().create_task("generate_scene", {})
        assert client.delete(f"/api/tasks/{task_id}").status_code == 204
        assert client.get(f"/api/tasks/{task_id}").json()["status"] == "cancelled"


def test_cancel_running_job(sample_settings, orchestrator, reference_images, fake_comfy, monkeypatch):
    """A cancel request reaches the running job's wait loop and the row ends cancelled."""
    reset_config()
    reset_task_manager()
    get_config(str(sample_settings))
    monkeypatch.setattr(scene, "_orchestrator", orchestrator)
    fake_comfy.history_entry = None
    tm = get_task_manager()
    task_id = tm.create_task("generate_scene", {})

    async def scenario():
        job = asyncio.create_task(scene._run_generate(
            task_id, "scene", [CharacterSlot("Elena", str(reference_images[0]))],
            SceneGenOptions(timeout_sec=2),
        ))
        await asyncio.sleep(0.3)
        assert request_cancel(task_id)
        await job

    try:
        asyncio.run(scenario())
        assert tm.get_status(task_id).status == TaskStatus.CANCELLED
        assert request_cancel(task_id) is False
    finally:
        reset_config()
        reset_task_manager()


def _scene_task(sample_settings, orchestrator, monkeypatch):
    reset_config()
    reset_task_manager()
    get_config(str(sample_settings))
    monkeypatch.setattr(scene, "_orchestrator", orchestrator)
    tm = get_task_manager()
    return tm, tm.create_task("generate_scene", {})


def test_cancel_before_worker_starts(sample_settings, orchestrator, reference_images, fake_comfy, monkeypatch):
    """DELETE between the 202 and the worker's first step stops the job before any upload."""
    tm, task_id = _scene_task(sample_settings, orchestrator, monkeypatch)

    async def scenario():
        event = register_cancel(task_id)
        assert request_cancel(task_id)
        tm.cancel_task(task_id)
        await scene._run_generate(
            task_id, "scene", [CharacterSlot("Elena", str(reference_images[0]))],
            SceneGenOptions(), event,
        )

    try:
        asyncio.run(scenario())
        assert fake_comfy.uploads == []
        assert fake_comfy.prompts == []
        assert tm.get_status(task_id).status == TaskStatus.CANCELLED
        assert request_cancel(task_id) is False
    finally:
        reset_config()
        reset_task_manager()


def test_cancelled_row_never_starts(sample_settings, orchestrator, reference_images, fake_comfy, monkeypatch):
    """A worker picking up a task already marked cancelled does nothing."""
    tm, task_id = _scene_task(sample_settings, orchestrator, monkeypatch)
    tm.cancel_task(task_id)

    try:
        asyncio.run(scene._run_generate(
            task_id, "scene", [CharacterSlot("Elena", str(reference_images[0]))], SceneGenOptions(),
        ))
        assert not fake_comfy.session.get.called
        assert fake_comfy.prompts == []
        assert tm.get_status(task_id).status == TaskStatus.CANCELLED
    finally:
        reset_config()
        reset_task_manager()


def test_generate_registers_cancel_before_responding(client, reference_images, monkeypatch):
    queued = []

    async def hold(task_id, prompt, slots, options, cancel_event=None):
        queued.append((task_id, cancel_event))

    monkeypatch.setattr(scene, "_run_generate", hold)
    task_id = client.post("/api/scene/generate", json=_generate_body(reference_images[:1])).json()["task_id"]
    assert queued[0][0] == task_id
    assert isinstance(queued[0][1], asyncio.Event)

    assert client.delete(f"/api/tasks/{task_id}").status_code == 204
    assert queued[0][1].is_set()
