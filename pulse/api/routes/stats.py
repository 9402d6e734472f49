"""
pulse.api.routes.stats — Read-only stats endpoints
===================================================

Every response carries ``degraded``: ``true`` means the store could not
be read and the numbers are live-session data only.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from pulse.api.deps import get_stats
from pulse.constants import METRICS, PERIODS, ensure_utc, utc_now
from pulse.database.models import ActivityKind
from pulse.services.aggregator import StatsService

router = APIRouter(tags=["stats"])


# ---------------------------------------------------------------------------
# GET /stats/{user_id}
# ---------------------------------------------------------------------------
@router.get("/stats/{user_id}")
async def get_user_stats(user_id: int, stats: StatsService = Depends(get_stats)):
    """Daily and monthly counters including time from open sessions."""
    snapshot = await stats.get_user_stats(user_id)
    return snapshot.to_dict()


# ---------------------------------------------------------------------------
# GET /stats/{user_id}/range
# ---------------------------------------------------------------------------
@router.get("/stats/{user_id}/range")
async def get_user_range(
    user_id: int,
    start: datetime = Query(..., description="Inclusive, ISO-8601 (naive = UTC)"),
    end: datetime | None = Query(None, description="Exclusive, defaults to now"),
    stats: StatsService = Depends(get_stats),
):
    """Totals and sessions overlapping ``[start, end)``."""
    now = utc_now()
    end = ensure_utc(end) if end is not None else now
    try:
        result = await stats.get_range(user_id, start, end, now=now)
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    return result.to_dict(now)


# ---------------------------------------------------------------------------
# GET /sessions/active
# ---------------------------------------------------------------------------
@router.get("/sessions/active")
async def list_active_sessions(
    kind: ActivityKind | None = Query(None),
    stats: StatsService = Depends(get_stats),
):
    """Every open session, oldest first."""
    now = utc_now()
    sessions, degraded = await stats.list_active_sessions(kind)
    return {
        "total": len(sessions),
        "degraded": degraded,
        "sessions": [s.to_dict(now) for s in sessions],
    }


# ---------------------------------------------------------------------------
# GET /leaderboard/{metric}
# ---------------------------------------------------------------------------
@router.get("/leaderboard/{metric}")
async def get_leaderboard(
    metric: str,
    period: str = Query("daily"),
    limit: int = Query(10, ge=1, le=100),
    stats: StatsService = Depends(get_stats),
):
    """Users ranked by one counter for the current day or month."""
    if metric not in METRICS:
        raise HTTPException(404, f"Unknown metric: {metric}")
    if period not in PERIODS:
        raise HTTPException(422, f"period must be one of {', '.join(PERIODS)}")

    entries, degraded = await stats.leaderboard(metric, period, limit)
    return {
        "metric": metric,
        "period": period,
        "degraded": degraded,
        "users": [
            {"rank": e.rank, "user_id": str(e.user_id), "value": e.value}
            for e in entries
        ],
    }
