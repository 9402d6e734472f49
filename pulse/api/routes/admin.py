"""
pulse.api.routes.admin — Admin Operations
==========================================

JWT-protected triggers that act on the live tracker:
    - Force flush (snapshot every open session into the counters)
    - Reconciliation sweep (stale sessions, orphans, due resets)
    - Session health (read only: open, stale and parked work)

All three answer 503 when the API runs without the bot, since only the process
that owns the sessions may close them.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pulse.api.deps import get_current_admin, get_tracker
from pulse.services.tracker import ActivityTracker

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class FlushResult(BaseModel):
    flushed: int


class SweepResult(BaseModel):
    checked: int
    closed: int
    orphans_closed: int
    retried: int
    users_reset: int
    timestamp: str


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------
@router.post("/flush", response_model=FlushResult)
async def trigger_flush(
    admin: dict = Depends(get_current_admin),  # noqa: ARG001
    tracker: ActivityTracker = Depends(get_tracker),
):
    """Complete every open session at now and continue it as a new segment."""
    return FlushResult(flushed=await tracker.flush())


@router.post("/sweep", response_model=SweepResult)
async def trigger_sweep(
    admin: dict = Depends(get_current_admin),  # noqa: ARG001
    tracker: ActivityTracker = Depends(get_tracker),
):
    """Run one reconciliation sweep now."""
    return SweepResult(**await tracker.sweep())


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------
class TrackerHealth(BaseModel):
    active: dict[str, int]
    active_total: int
    active_users: int
    stale: dict[str, int]
    stale_total: int
    stale_after_minutes: int
    pending_completions: int
    dispatcher_backlog: int
    warnings: list[str]
    timestamp: str


@router.get("/health", response_model=TrackerHealth)
async def tracker_health(
    admin: dict = Depends(get_current_admin),  # noqa: ARG001
    tracker: ActivityTracker = Depends(get_tracker),
):
    """Open sessions per kind, the ones gone quiet past the grace window,
    completions waiting on the database and events still queued."""
    return TrackerHealth(**tracker.health())
