"""
Status API routes — read-only view of the uninstall progress.
"""

import logging

from fastapi import APIRouter, Request

from uninstall_operator.models import ProgressEvent, StatusResponse

logger = logging.getLogger("status")

router = APIRouter(prefix="/status", tags=["status"])


@router.get("", response_model=StatusResponse)
async def get_status(request: Request):
    """Grace period, pass counters, last outcome and recent progress events."""
    return request.app.state.controller.status()


@router.get("/events", response_model=list[ProgressEvent])
async def get_events(request: Request):
    return request.app.state.controller.status().events
