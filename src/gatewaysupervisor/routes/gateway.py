"""Gateway state API: ensure / restart / state for the supervised gateway."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..service import get_supervisor_service


router = APIRouter(prefix="/gateway-state", tags=["gateway-state"])
logger = logging.getLogger(__name__)


class LifecycleResponse(BaseModel):
    ok: bool
    ready: Optional[bool] = None
    processId: Optional[str] = Field(default=None, description="Sandbox process id of the gateway, if tracked.")
    error: Optional[str] = None


class StateResponse(BaseModel):
    ready: bool
    processId: Optional[str] = None
    lastStartAttempt: Optional[str] = Field(default=None, description="ISO 8601 timestamp, null when never attempted.")
    lastHealthCheck: Optional[str] = Field(default=None, description="ISO 8601 timestamp, null when never confirmed.")


async def _dispatch(path: str) -> JSONResponse:
    owner = get_supervisor_service().owner
    # Lifecycle transitions block (process waits); keep them off the event loop so /state stays responsive.
    status, body = await asyncio.to_thread(owner.handle, path)
    return JSONResponse(status_code=status, content=body)


@router.api_route("", methods=["GET", "POST"], response_model=LifecycleResponse, include_in_schema=False)
async def default_ensure():
    return await _dispatch("ensure")


@router.api_route("/ensure", methods=["GET", "POST"], response_model=LifecycleResponse)
async def ensure_gateway():
    return await _dispatch("ensure")


@router.api_route("/restart", methods=["GET", "POST"], response_model=LifecycleResponse)
async def restart_gateway():
    return await _dispatch("restart")


@router.get("/state", response_model=StateResponse)
async def gateway_state():
    return get_supervisor_service().owner.get_state()


@router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def unknown_path(path: str):
    if not path.strip("/"):
        return await _dispatch("ensure")
    logger.debug("Unknown gateway-state path: %s", path)
    return JSONResponse(status_code=404, content={"error": "Not found"})
