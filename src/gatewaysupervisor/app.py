"""Gateway supervisor FastAPI application."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import gateway_state_router


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    from .service import get_supervisor_service

    svc = get_supervisor_service()
    ensure_on_start = str(os.getenv("GATEWAYSUPERVISOR_ENSURE_ON_START", "0") or "0").strip().lower()
    if ensure_on_start in {"1", "true", "yes", "on"}:
        # Fire-and-forget warmup; callers still go through the same lock.
        _app.state.warmup = asyncio.create_task(asyncio.to_thread(svc.owner.ensure))
    logger.info("Gateway supervisor ready (port=%s, data_dir=%s)", svc.config.gateway_port, svc.config.data_dir)
    yield


app = FastAPI(
    title="Gateway Supervisor",
    description="Single-owner lifecycle supervisor for a sandboxed gateway process (ensure / restart / state).",
    version="0.1.0",
    lifespan=_lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(gateway_state_router, prefix="/api")


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "gatewaysupervisor"}
