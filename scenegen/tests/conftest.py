"""Shared test fixtures for SceneGen."""
import json
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from unittest.mock import MagicMock

import pytest
import requests
import yaml
from PIL import Image


@pytest.fixture(scope="session")
def project_root() -> Path:
    return Path(__file__).parent.parent.parent


@pytest.fixture
def tmp_dir() -> Generator[Path, None, None]:
    d = Path(tempfile.mkdtemp())
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def sample_settings(tmp_dir: Path) -> Path:
    """Write a minimal settings.yaml to a temp dir and return its path."""
    settings = {
        "paths": {
            "staging": str(tmp_dir / "staging"),
            "outputs": str(tmp_dir / "outputs"),
            "tasks_db": str(tmp_dir / "tasks.db"),
        },
        "engine": {
            "url": "http://comfy.test:8188",
            "health_timeout_sec": 1,
            "request_timeout_sec": 5,
            "poll_interval_sec": 0.01,
            "timeout_sec": 2,
            "hard_ceiling_sec": 2,
            "download_outputs": False,
        },
        "canvas": {"width": 1024, "height": 576, "feather_px": 20},
        "workflow": {
            "checkpoint": "test_checkpoint.safetensors",
            "steps": 12,
            "cfg": 4.0,
            "not_a_setting": "ignored",
        },
        "logging": {"level": "DEBUG", "file": str(tmp_dir / "test.log")},
    }
    cfg_path = tmp_dir / "settings.yaml"
    cfg_path.write_text(yaml.dump(settings))
    return cfg_path


# ─────────────────────────────────────────────────────────────────────────────
# Reference images
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def reference_images(tmp_dir: Path) -> List[Path]:
    """Three small portrait PNGs, one per character slot."""
    paths = []
    for i, colour in enumerate([(200, 150, 120), (90, 60, 40), (230, 200, 170)]):
        path = tmp_dir / "refs" / f"portrait_{i}.png"
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", (64, 64), colour).save(path, format="PNG")
        paths.append(path)
    return paths


# ─────────────────────────────────────────────────────────────────────────────
# ComfyUI mock
# ─────────────────────────────────────────────────────────────────────────────


def make_response(
    status_code: int = 200,
    payload: Any = None,
    content: bytes = b"",
) -> MagicMock:
    """A ``requests.Response`` stand-in with ``ok``, ``json()``, ``text`` and ``content``."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 300
    if payload is None:
        resp.json.side_effect = ValueError("no JSON body")
        resp.text = ""
    else:
        resp.json.return_value = payload
        resp.text = json.dumps(payload)
    resp.content = content
    return resp


SUCCESS_ENTRY: Dict[str, Any] = {
    "status": {"status_str": "success", "completed": True, "messages": []},
    "outputs": {
        "37": {"images": [{"filename": "scene_00001_.png", "subfolder": "SceneGen", "type": "output"}]},
    },
}


class FakeComfyUI:
    """Routes ``session.get`` / ``session.post`` calls like a ComfyUI server.

    ``pending_polls`` history polls return an empty body before
    ``history_entry`` is served; ``history_entry = None`` never completes.
    """

    def __init__(self) -> None:
        self.session = MagicMock()
        self.session.get.side_effect = self._get
        self.session.post.side_effect = self._post
        self.available = True
        self.job_id = "job-123"
        self.history_entry: Optional[Dict[str, Any]] = SUCCESS_ENTRY
        self.pending_polls = 0
        self.polls = 0
        self.uploads: List[str] = []
        self.prompts: List[Dict[str, Any]] = []
        self.upload_status = 200
        self.submit_response: Optional[MagicMock] = None

    def _get(self, url: str, **kwargs: Any) -> MagicMock:
        if url.endswith("/system_stats"):
            if not self.available:
                raise requests.ConnectionError("connection refused")
            return make_response(200, {"system": {"comfyui_version": "0.3.10"}, "devices": []})
        if "/history/" in url:
            self.polls += 1
            if self.history_entry is None or self.polls <= self.pending_polls:
                return make_response(200, {})
            return make_response(200, {self.job_id: self.history_entry})
        if "/view?" in url:
            return make_response(200, content=b"\x89PNG\r\n\x1a\nfake")
        return make_response(404, {"error": "not found"})

    def _post(self, url: str, **kwargs: Any) -> MagicMock:
        if url.endswith("/upload/image"):
            filename = kwargs["files"]["image"][0]
            if self.upload_status != 200:
                return make_response(self.upload_status, {"error": "disk full"})
            self.uploads.append(filename)
            return make_response(200, {"name": filename, "subfolder": "", "type": "input"})
        if url.endswith("/prompt"):
            self.prompts.append(kwargs["json"])
            if self.submit_response is not None:
                return self.submit_response
            return make_response(200, {"prompt_id": self.job_id, "number": 1, "node_errors": {}})
        return make_response(404, {"error": "not found"})


@pytest.fixture
def response():
    """Factory for canned ``requests.Response`` mocks."""
    return make_response


@pytest.fixture
def fake_comfy() -> FakeComfyUI:
    return FakeComfyUI()


@pytest.fixture
def comfy_client(fake_comfy: FakeComfyUI):
    """A ComfyUIClient wired to ``fake_comfy`` with fast polling."""
    from scenegen.services.inference.client import ComfyUIClient
    return ComfyUIClient(
        base_url="http://comfy.test:8188",
        session=fake_comfy.session,
        poll_interval=0.01,
        default_timeout=2.0,
        hard_ceiling=2.0,
    )
