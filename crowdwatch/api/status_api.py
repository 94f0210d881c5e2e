"""
Status API: dispatcher, alerting and viewer state.

Endpoints:
- GET /api/status - Slot/backlog usage, counters, alert state, model backend
- GET /api/viewers/connected - List connected dashboard viewers
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel
from typing import List

router = APIRouter(prefix="/api", tags=["status"])


class DispatchStatus(BaseModel):
    active_slots: int
    max_concurrency: int
    backlog: int
    max_backlog: int
    accepted: int
    rejected: int
    processed: int
    failed: int


class AlertStatus(BaseModel):
    threshold: int
    cooldown: float
    state: str
    alerts_fired: int


class StatusResponse(BaseModel):
    dispatch: DispatchStatus
    alert: AlertStatus
    inference: dict
    viewers: int


class ViewerInfo(BaseModel):
    viewer_id: str
    label: str
    connected_at: float


class ViewerListResponse(BaseModel):
    viewers: List[ViewerInfo]
    total: int


@router.get("/status", response_model=StatusResponse)
async def get_status(request: Request):
    state = request.app.state
    return StatusResponse(
        dispatch=DispatchStatus(**state.dispatcher.stats()),
        alert=AlertStatus(**state.alert_evaluator.snapshot()),
        inference=state.ml_module.status(),
        viewers=state.viewer_manager.get_viewer_count(),
    )


@router.get("/viewers/connected", response_model=ViewerListResponse)
async def get_connected_viewers(request: Request):
    """Get list of all connected dashboard viewers."""
    viewers = request.app.state.viewer_manager.get_connected_viewers()
    return ViewerListResponse(
        viewers=[ViewerInfo(**v) for v in viewers],
        total=len(viewers),
    )
