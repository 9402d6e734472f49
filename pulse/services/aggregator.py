"""
pulse.services.aggregator — Stats Queries
==========================================

Read side of the engine.  Answers "how much has this user done" by
combining the durable counters with the elapsed-so-far time of any
session that is still open, so numbers grow while a session is running
instead of jumping when it ends.

Two sources of live sessions:

* a :class:`~pulse.engine.sessions.SessionManager` (same process as the
  bot): exact in-memory state;
* otherwise the ``active`` rows of the session log (standalone API).

Persistence failures never raise out of a query: the result is flagged
``degraded`` and carries whatever live data is available.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

from pulse.constants import (
    KIND_COUNT_METRIC,
    KIND_MINUTES_METRIC,
    METRICS,
    PERIODS,
    counter_column,
    ensure_utc,
    minutes_between,
    start_of_utc_day,
    start_of_utc_month,
    utc_now,
)
from pulse.database.engine import run_db
from pulse.database.models import ActivityKind
from pulse.engine.events import Session
from pulse.engine.sessions import SessionManager, live_increments
from pulse.errors import InvalidStatsError, PersistenceError
from pulse.services.counter_store import CounterStore, StatsSnapshot
from pulse.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def _zeros() -> dict[str, int]:
    return dict.fromkeys(METRICS, 0)


def _period_start(period: str, now: datetime) -> datetime:
    return start_of_utc_day(now) if period == "daily" else start_of_utc_month(now)


# ---------------------------------------------------------------------------
# Result shapes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RangeResult:
    """Totals and sessions for ``[start, end)``.

    ``source`` is ``"daily"`` / ``"monthly"`` when the range matched the
    current period and totals came from the counters, else ``"history"``.
    """

    user_id: int
    start: datetime
    end: datetime
    totals: dict[str, int]
    sessions: list[Session] = field(default_factory=list)
    source: str = "history"
    degraded: bool = False

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "user_id": str(self.user_id),
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "totals": dict(self.totals),
            "sessions": [s.to_dict(now) for s in self.sessions],
            "source": self.source,
            "degraded": self.degraded,
        }


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    rank: int
    user_id: int
    value: int


# ---------------------------------------------------------------------------
# StatsService
# ---------------------------------------------------------------------------
class StatsService:
    """Query facade over counters, the session log and live sessions."""

    def __init__(
        self,
        counters: CounterStore,
        sessions: SessionStore,
        manager: SessionManager | None = None,
    ) -> None:
        self.counters = counters
        self.sessions = sessions
        self.manager = manager

    async def _live(
        self,
        *,
        user_id: int | None = None,
        kind: ActivityKind | None = None,
    ) -> tuple[list[Session], bool]:
        """Open sessions plus a degraded flag."""
        if self.manager is not None:
            live = self.manager.list_active(kind)
            if user_id is not None:
                live = [s for s in live if s.user_id == user_id]
            return live, False
        try:
            return await run_db(self.sessions.list_active, kind=kind, user_id=user_id), False
        except PersistenceError:
            logger.exception("Could not load active sessions")
            return [], True

    # -------------------------------------------------------------------
    # get_user_stats
    # -------------------------------------------------------------------
    async def get_user_stats(self, user_id: int, now: datetime | None = None) -> StatsSnapshot:
        """Persisted counters merged with the elapsed time of open sessions.

        Periods whose last reset is before the current UTC day / month are
        *presented* as zero; nothing is written here.
        """
        now = ensure_utc(now or utc_now())
        live, degraded = await self._live(user_id=user_id)

        try:
            stored = await run_db(self.counters.read, user_id)
        except (PersistenceError, InvalidStatsError):
            logger.exception("Stats read failed for user %s; serving live data only", user_id)
            stored = StatsSnapshot(
                user_id=user_id,
                daily=_zeros(),
                monthly=_zeros(),
                last_daily_reset=start_of_utc_day(now),
                last_monthly_reset=start_of_utc_month(now),
                updated_at=now,
            )
            degraded = True

        daily = dict(stored.daily)
        monthly = dict(stored.monthly)
        if start_of_utc_day(stored.last_daily_reset) < start_of_utc_day(now):
            daily = _zeros()
        if start_of_utc_month(stored.last_monthly_reset) < start_of_utc_month(now):
            monthly = _zeros()

        live_totals: dict[str, int] = {}
        for session in live:
            for metric, amount in live_increments(session, now).items():
                live_totals[metric] = live_totals.get(metric, 0) + amount
        for metric, amount in live_totals.items():
            daily[metric] += amount
            monthly[metric] += amount

        return replace(
            stored,
            daily=daily,
            monthly=monthly,
            degraded=degraded,
            live=live_totals,
        )

    # -------------------------------------------------------------------
    # get_range
    # -------------------------------------------------------------------
    async def get_range(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> RangeResult:
        """Totals and sessions for ``[start, end)``.

        A range that starts exactly at the current day (month) boundary and
        reaches *now* is served from the counters.  Anything else is summed
        from the session log, with each session's minutes clipped to the
        range.

        Raises
        ------
        ValueError
            If *end* is not after *start*.
        """
        now = ensure_utc(now or utc_now())
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise ValueError("end must be after start")

        live, degraded = await self._live(user_id=user_id)
        live = [s for s in live if s.start_time < end]
        try:
            completed = await run_db(self.sessions.history, user_id, start, end)
        except PersistenceError:
            logger.exception("History read failed for user %s; serving live data only", user_id)
            completed = []
            degraded = True

        sessions = sorted(completed + live, key=lambda s: (s.start_time, s.id))

        period = self._aligned_period(start, end, now)
        if period is not None:
            stats = await self.get_user_stats(user_id, now)
            return RangeResult(
                user_id=user_id,
                start=start,
                end=end,
                totals=dict(getattr(stats, period)),
                sessions=sessions,
                source=period,
                degraded=degraded or stats.degraded,
            )

        return RangeResult(
            user_id=user_id,
            start=start,
            end=end,
            totals=_sum_sessions(completed, live, start, end, now),
            sessions=sessions,
            degraded=degraded,
        )

    @staticmethod
    def _aligned_period(start: datetime, end: datetime, now: datetime) -> str | None:
        if end < now:
            return None
        for period in PERIODS:
            if start == _period_start(period, now):
                return period
        return None

    # -------------------------------------------------------------------
    # Active sessions / leaderboard
    # -------------------------------------------------------------------
    async def list_active_sessions(self, kind: ActivityKind | None = None) -> tuple[list[Session], bool]:
        """``(sessions, degraded)`` for every open session, oldest first."""
        return await self._live(kind=kind)

    async def leaderboard(
        self,
        metric: str,
        period: str = "daily",
        limit: int = 10,
        now: datetime | None = None,
    ) -> tuple[list[LeaderboardEntry], bool]:
        """Users ranked by one persisted counter for the current period.

        Returns ``(entries, degraded)``.  Open sessions are not merged in:
        rankings move when sessions complete (or on flush).
        """
        counter_column(period, metric)  # ValueError on unknown names
        now = ensure_utc(now or utc_now())
        try:
            rows = await run_db(
                self.counters.top, period, metric, limit, _period_start(period, now),
            )
        except (PersistenceError, InvalidStatsError):
            logger.exception("Leaderboard query failed for %s %s", period, metric)
            return [], True
        entries = [
            LeaderboardEntry(rank=i, user_id=row.user_id, value=row.get(period, metric))
            for i, row in enumerate(rows, start=1)
        ]
        return entries, False


def _sum_sessions(
    completed: list[Session],
    live: list[Session],
    start: datetime,
    end: datetime,
    now: datetime,
) -> dict[str, int]:
    totals = _zeros()
    for session in completed:
        assert session.end_time is not None
        totals[KIND_MINUTES_METRIC[session.kind]] += minutes_between(
            max(session.start_time, start), min(session.end_time, end),
        )
        count_metric = KIND_COUNT_METRIC.get(session.kind)
        if count_metric and session.continues_id is None and start <= session.start_time < end:
            totals[count_metric] += 1
        # Screen share is not clippable; it follows the segment's end time
        if session.kind is ActivityKind.VOICE and start <= session.end_time < end:
            totals["screen_share_minutes"] += session.screen_share_minutes
    for session in live:
        totals[KIND_MINUTES_METRIC[session.kind]] += minutes_between(
            max(session.start_time, start), min(now, end),
        )
    return totals
