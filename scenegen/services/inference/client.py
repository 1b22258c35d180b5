"""ComfyUI client — asset upload, job submission, and bounded completion wait.

Endpoints used:
  GET  /system_stats        health check
  POST /upload/image        store a reference image or mask, returns its name
  POST /prompt              queue a graph, returns a prompt_id
  GET  /history/{id}        job status and output descriptors
  GET  /view                fetch an output image
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests

from scenegen.services.inference.types import GenerationJob, JobOutcome, JobStatus, OutputImage
from scenegen.services.shared.errors import DownloadFailure, SubmitFailure, UploadFailure
from scenegen.services.workflow.types import WorkflowGraph

logger = logging.getLogger("scenegen.inference.client")

DEFAULT_URL = "http://127.0.0.1:8188"


def _error_payload(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class ComfyUIClient:
    """Thin synchronous HTTP client plus an async polling wait.

    The HTTP calls are blocking (``requests``); ``await_completion`` runs each
    poll in a worker thread so the wait itself can be cancelled or cut off at
    its deadline without waiting for a slow response.

    Usage::

        client = ComfyUIClient("http://127.0.0.1:8188")
        name = client.upload(png_bytes, "scene_mask_char1.png")
        job_id = client.submit(graph)
        outcome = await client.await_completion(job_id, timeout=90)
    """

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        session: Optional[requests.Session] = None,
        request_timeout: float = 30.0,
        health_timeout: float = 3.0,
        poll_interval: float = 1.0,
        default_timeout: float = 120.0,
        hard_ceiling: float = 120.0,
        client_id: Optional[str] = None,
    ):
        self._base = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._request_timeout = request_timeout
        self._health_timeout = health_timeout
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout
        self._hard_ceiling = hard_ceiling
        self._client_id = client_id or uuid.uuid4().hex

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "ComfyUIClient":
        """Build a client from the ``engine.*`` settings."""
        return cls(
            base_url=str(config.get("engine.url", DEFAULT_URL)),
            session=session,
            request_timeout=float(config.get("engine.request_timeout_sec", 30)),
            health_timeout=float(config.get("engine.health_timeout_sec", 3)),
            poll_interval=float(config.get("engine.poll_interval_sec", 1.0)),
            default_timeout=float(config.get("engine.timeout_sec", 120)),
            hard_ceiling=float(config.get("engine.hard_ceiling_sec", 120)),
        )

    @property
    def base_url(self) -> str:
        return self._base

    # ── health ────────────────────────────────────────────────────────────────

    def system_stats(self) -> Optional[Dict[str, Any]]:
        """Return the engine's stats payload, or None if it is unreachable."""
        try:
            resp = self._session.get(f"{self._base}/system_stats", timeout=self._health_timeout)
        except requests.RequestException as exc:
            logger.info("ComfyUI not reachable at %s: %s", self._base, exc)
            return None
        if not resp.ok:
            logger.info("ComfyUI health check returned %s", resp.status_code)
            return None
        try:
            return resp.json()
        except ValueError:
            return {}

    def is_available(self) -> bool:
        return self.system_stats() is not None

    # ── upload / submit ───────────────────────────────────────────────────────

    def upload(self, image_bytes: bytes, filename: str) -> str:
        """Store an image in the engine's input folder.

        Returns the name the engine assigned, which is what ``LoadImage``
        nodes must reference (it can differ from ``filename``).

        Raises:
            UploadFailure: On transport errors, non-2xx responses, or a
                response without a ``name``.
        """
        try:
            resp = self._session.post(
                f"{self._base}/upload/image",
                files={"image": (filename, image_bytes, "image/png")},
                data={"overwrite": "true"},
                timeout=self._request_timeout,
            )
        except requests.RequestException as exc:
            raise UploadFailure(f"POST /upload/image failed for {filename}: {exc}") from exc

        if not resp.ok:
            raise UploadFailure(
                f"Upload of {filename} returned {resp.status_code}",
                detail=_error_payload(resp),
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise UploadFailure(f"Invalid upload response for {filename}", detail=resp.text) from exc

        name = body.get("name") if isinstance(body, dict) else None
        if not name:
            raise UploadFailure(f"No 'name' in upload response for {filename}", detail=body)
        subfolder = body.get("subfolder") or ""
        stored = f"{subfolder}/{name}" if subfolder else name
        logger.debug("Uploaded %s as %s", filename, stored)
        return stored

    def submit(self, graph: WorkflowGraph) -> str:
        """Queue ``graph`` and return the engine's job id.

        Raises:
            SubmitFailure: On transport errors, non-2xx responses, node
                validation errors, or a response without ``prompt_id``.
                Never retried.
        """
        payload = {"prompt": graph.to_prompt(), "client_id": self._client_id}
        try:
            resp = self._session.post(
                f"{self._base}/prompt", json=payload, timeout=self._request_timeout
            )
        except requests.RequestException as exc:
            raise SubmitFailure(f"POST /prompt failed: {exc}") from exc

        if not resp.ok:
            raise SubmitFailure(
                f"Queue returned {resp.status_code}",
                detail=_error_payload(resp),
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise SubmitFailure("Invalid queue response", detail=resp.text) from exc

        if body.get("node_errors"):
            raise SubmitFailure("Engine rejected workflow nodes", detail=body["node_errors"])
        job_id = body.get("prompt_id")
        if not job_id:
            raise SubmitFailure("No 'prompt_id' in queue response", detail=body)
        logger.info("Queued job %s (%d nodes)", job_id, len(graph))
        return str(job_id)

    # ── polling ───────────────────────────────────────────────────────────────

    def fetch_history(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return the history entry for ``job_id``, or None while it has none."""
        resp = self._session.get(
            f"{self._base}/history/{job_id}",
            timeout=min(self._request_timeout, 10.0),
        )
        if not resp.ok:
            logger.debug("History for %s returned %s", job_id, resp.status_code)
            return None
        body = resp.json()
        return body.get(job_id) if isinstance(body, dict) else None

    @staticmethod
    def parse_history_entry(entry: Dict[str, Any]) -> Tuple[JobStatus, List[OutputImage], str]:
        """Classify a history entry as running, succeeded, or failed."""
        status = entry.get("status") or {}
        if status.get("status_str") == "error":
            messages = json.dumps(status.get("messages", []))
            return JobStatus.FAILED, [], f"Engine execution error: {messages}"

        outputs = entry.get("outputs") or {}
        images = [
            OutputImage.from_json(img, str(nid))
            for nid, node_out in outputs.items()
            for img in (node_out or {}).get("images", []) or []
            if isinstance(img, dict) and img.get("filename")
        ]
        if images:
            return JobStatus.SUCCEEDED, images, ""
        if outputs or status.get("completed"):
            return JobStatus.FAILED, [], "Workflow completed but produced no images"
        return JobStatus.RUNNING, [], ""

    def effective_timeout(self, timeout: Optional[float]) -> float:
        """The requested budget, never above the hard ceiling."""
        budget = self._default_timeout if timeout is None else float(timeout)
        return max(0.0, min(budget, self._hard_ceiling))

    async def await_completion(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        job: Optional[GenerationJob] = None,
    ) -> JobOutcome:
        """Poll until the job lists output images, fails, times out, or is cancelled.

        Timeout and cancellation are outcomes, not exceptions.  Cancelling
        only stops the local wait; the job stays queued on the engine.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.effective_timeout(timeout)
        cancel = cancel_event or asyncio.Event()
        stop = asyncio.ensure_future(cancel.wait())

        def finish(status: JobStatus, outputs=(), reason: str = "") -> JobOutcome:
            if job is not None:
                job.status = status
            return JobOutcome(status, job_id, list(outputs), reason, loop.time() - started)

        if job is not None:
            job.status = JobStatus.RUNNING
        try:
            while True:
                if cancel.is_set():
                    logger.info("Wait for job %s cancelled by caller", job_id)
                    return finish(JobStatus.CANCELLED, reason="Cancelled by caller")
                remaining = deadline - loop.time()
                if remaining <= 0:
                    logger.warning("Job %s timed out after %.1fs", job_id, loop.time() - started)
                    return finish(JobStatus.TIMED_OUT, reason="Timed out waiting for outputs")

                fetch = asyncio.ensure_future(asyncio.to_thread(self.fetch_history, job_id))
                done, _ = await asyncio.wait(
                    {fetch, stop}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if stop in done:
                    fetch.cancel()
                    logger.info("Wait for job %s cancelled by caller", job_id)
                    return finish(JobStatus.CANCELLED, reason="Cancelled by caller")
                if fetch not in done:
                    fetch.cancel()
                    continue

                try:
                    entry = fetch.result()
                except (requests.RequestException, ValueError) as exc:
                    logger.warning("Poll for job %s failed (retrying): %s", job_id, exc)
                    entry = None

                if entry is not None:
                    status, outputs, reason = self.parse_history_entry(entry)
                    if status in (JobStatus.SUCCEEDED, JobStatus.FAILED):
                        return finish(status, outputs, reason)

                pause = min(self._poll_interval, deadline - loop.time())
                if pause > 0:
                    done, _ = await asyncio.wait({stop}, timeout=pause)
                    if stop in done:
                        logger.info("Wait for job %s cancelled by caller", job_id)
                        return finish(JobStatus.CANCELLED, reason="Cancelled by caller")
        finally:
            if not stop.done():
                stop.cancel()

    # ── outputs ───────────────────────────────────────────────────────────────

    def view_url(self, output: OutputImage) -> str:
        query = urlencode({
            "filename": output.filename,
            "subfolder": output.subfolder,
            "type": output.type,
        })
        return f"{self._base}/view?{query}"

    def download(self, output: OutputImage, dest_dir: Path) -> Path:
        """Fetch an output image into ``dest_dir`` and return the local path.

        Raises:
            DownloadFailure: On transport errors, non-2xx responses, or
                write errors.
        """
        try:
            resp = self._session.get(self.view_url(output), timeout=self._request_timeout)
        except requests.RequestException as exc:
            raise DownloadFailure(f"GET /view failed for {output.filename}: {exc}") from exc
        if not resp.ok:
            raise DownloadFailure(
                f"Download of {output.filename} returned {resp.status_code}",
                status_code=resp.status_code,
            )
        dest = Path(dest_dir)
        try:
            dest.mkdir(parents=True, exist_ok=True)
            path = dest / Path(output.filename).name
            path.write_bytes(resp.content)
        except OSError as exc:
            raise DownloadFailure(f"Cannot write {output.filename}: {exc}") from exc
        return path

    def close(self) -> None:
        self._session.close()
