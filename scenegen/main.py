"""SceneGen — FastAPI application entry point.

All routers are mounted here. If a router module exists, it must be mounted
in this file.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scenegen.routers import scene, system, tasks
from scenegen.routers.system import VERSION
from scenegen.services.shared.config import get_config
from scenegen.services.shared.logging import setup_logging


@asynccontextmanager
async def lifespan(_app: FastAPI):
    config = get_config()
    setup_logging(
        level=str(config.get("logging.level", "INFO")),
        log_file=config.get("logging.file"),
    )
    yield


app = FastAPI(
    title="SceneGen",
    version=VERSION,
    description="Multi-character scene synthesis with region-masked identity conditioning.",
    lifespan=lifespan,
)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(scene.router,   prefix="/api/scene",   tags=["Scene"])
app.include_router(tasks.router,   prefix="/api/tasks",   tags=["Tasks"])
app.include_router(system.router,  prefix="/api/system",  tags=["System"])
