"""
pulse.services.counter_store — Durable Per-User Counters
=========================================================

Owns the ``user_stats`` table.  Two write paths, both single transactions
gated by :func:`pulse.services.reset_scheduler.maybe_reset`:

* :meth:`CounterStore.increment` — add to one metric's daily + monthly
  tracks.
* :meth:`CounterStore.record_completed_session` — flip a session segment
  to ``completed`` **and** apply its metric increments together.  The flip
  is conditional on the row still being ``active``, which is what makes a
  retried or raced completion count exactly once.

Increments are deliberately *not* idempotent: each call is new elapsed
time.  Exactly-once is the session manager's job, backed by the
conditional flip above.

All public methods are synchronous — call via ``await run_db(...)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as OrmSession

from pulse.constants import (
    KIND_COUNT_METRIC,
    KIND_MINUTES_METRIC,
    METRICS,
    PERIODS,
    counter_column,
    ensure_utc,
    minutes_between,
    utc_now,
)
from pulse.database.engine import get_session
from pulse.database.models import (
    COUNTER_COLUMNS,
    ActivityKind,
    ActivitySession,
    SessionStatus,
    UserStats,
)
from pulse.engine.events import Session
from pulse.errors import InvalidStatsError, PersistenceError
from pulse.services.reset_scheduler import maybe_reset, new_stats_row

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# StatsSnapshot — validated, detached view of a user_stats row
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    """Immutable copy of one ``user_stats`` row.

    ``daily`` / ``monthly`` map metric name → value for every metric in
    :data:`pulse.constants.METRICS`.
    """

    user_id: int
    daily: dict[str, int]
    monthly: dict[str, int]
    last_daily_reset: datetime
    last_monthly_reset: datetime
    updated_at: datetime
    degraded: bool = False
    live: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: UserStats) -> StatsSnapshot:
        for column in COUNTER_COLUMNS:
            value = getattr(row, column)
            if value is None or value < 0:
                raise InvalidStatsError(
                    f"user_stats.{column} is {value!r} for user {row.user_id}"
                )
        return cls(
            user_id=row.user_id,
            daily=row.counters("daily"),
            monthly=row.counters("monthly"),
            last_daily_reset=ensure_utc(row.last_daily_reset),
            last_monthly_reset=ensure_utc(row.last_monthly_reset),
            updated_at=ensure_utc(row.updated_at),
        )

    def get(self, period: str, metric: str) -> int:
        counter_column(period, metric)  # validates both names
        return getattr(self, period)[metric]

    def to_dict(self) -> dict:
        """Flat ``daily_<metric>`` / ``monthly_<metric>`` shape used by the API."""
        out: dict = {"user_id": str(self.user_id)}
        for period in PERIODS:
            for metric, value in getattr(self, period).items():
                out[f"{period}_{metric}"] = value
        out["last_daily_reset"] = self.last_daily_reset.isoformat()
        out["last_monthly_reset"] = self.last_monthly_reset.isoformat()
        out["updated_at"] = self.updated_at.isoformat()
        out["degraded"] = self.degraded
        if self.live:
            out["live_minutes"] = dict(self.live)
        return out


def session_increments(session: Session) -> dict[str, int]:
    """Metric → amount contributed by a completed segment."""
    assert session.end_time is not None
    amounts: dict[str, int] = {
        KIND_MINUTES_METRIC[session.kind]: minutes_between(session.start_time, session.end_time),
    }
    count_metric = KIND_COUNT_METRIC.get(session.kind)
    if count_metric and session.continues_id is None:
        amounts[count_metric] = 1
    if session.kind is ActivityKind.VOICE:
        amounts["screen_share_minutes"] = session.screen_share_until(session.end_time)
    return amounts


def _current_periods(row: UserStats, at: datetime) -> tuple[str, ...]:
    """Periods whose last reset is at or before *at*.

    A segment that ended before a reset already applied (forced reset pass,
    late sweep or retry) belongs to the period that was zeroed.
    """
    at = ensure_utc(at)
    return tuple(
        period for period in PERIODS
        if ensure_utc(getattr(row, f"last_{period}_reset")) <= at
    )


def _apply_increment(
    row: UserStats,
    metric: str,
    amount: int,
    at: datetime,
    periods: tuple[str, ...] = PERIODS,
) -> None:
    if metric not in METRICS:
        raise InvalidStatsError(f"Unknown metric: {metric!r}")
    if amount < 0:
        raise InvalidStatsError(f"Negative increment for {metric}: {amount}")
    for period in periods:
        column = counter_column(period, metric)
        setattr(row, column, (getattr(row, column) or 0) + amount)
    row.updated_at = max(ensure_utc(row.updated_at), ensure_utc(at))


# ---------------------------------------------------------------------------
# CounterStore
# ---------------------------------------------------------------------------
class CounterStore:
    """Transactional access to ``user_stats``.

    All methods are synchronous — call via ``await run_db(store.method, ...)``.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def read(self, user_id: int) -> StatsSnapshot:
        """Current persisted row, creating a zeroed one if absent.

        Never resets: a stale row is returned as stored.
        """
        try:
            with get_session(self.engine) as session:
                row = session.get(UserStats, user_id)
                if row is None:
                    row = new_stats_row(user_id, utc_now())
                    session.add(row)
                    session.flush()
                return StatsSnapshot.from_row(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to read stats for user {user_id}") from exc

    def all_user_ids(self) -> list[int]:
        try:
            with get_session(self.engine) as session:
                return list(session.scalars(select(UserStats.user_id)).all())
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to list users") from exc

    def top(
        self,
        period: str,
        metric: str,
        limit: int = 10,
        since: datetime | None = None,
    ) -> list[StatsSnapshot]:
        """Rows ordered by one counter, highest first (leaderboards).

        With *since*, rows whose *period* was last reset before it are
        skipped: their counters belong to an earlier day or month.
        """
        column = getattr(UserStats, counter_column(period, metric))
        stmt = select(UserStats).where(column > 0)
        if since is not None:
            reset_column = getattr(UserStats, f"last_{period}_reset")
            stmt = stmt.where(reset_column >= ensure_utc(since))
        try:
            with get_session(self.engine) as session:
                rows = session.scalars(
                    stmt.order_by(column.desc(), UserStats.user_id).limit(limit)
                ).all()
                return [StatsSnapshot.from_row(r) for r in rows]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to rank users by {period} {metric}") from exc

    # -------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------
    def increment(
        self,
        user_id: int,
        metric: str,
        amount: int,
        at: datetime | None = None,
    ) -> StatsSnapshot:
        """Reset-check, then add *amount* to *metric*'s daily + monthly tracks."""
        at = ensure_utc(at or utc_now())
        if metric not in METRICS:
            raise InvalidStatsError(f"Unknown metric: {metric!r}")
        try:
            with get_session(self.engine) as session:
                row = maybe_reset(session, user_id, at)
                _apply_increment(row, metric, amount, at)
                session.flush()
                return StatsSnapshot.from_row(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to increment {metric} for user {user_id}"
            ) from exc

    def record_completed_session(self, session: Session) -> bool:
        """Persist a completed segment and count it, atomically.

        Returns ``True`` if this call completed the row, ``False`` if it was
        already completed (by a racing sweep, a previous retry, …), in which
        case no counter is touched.
        """
        if session.end_time is None:
            raise ValueError(f"Session {session.id} has no end_time")
        amounts = session_increments(session)
        try:
            with get_session(self.engine) as db:
                if not _complete_row(db, session, amounts):
                    return False
                row = maybe_reset(db, session.user_id, session.end_time)
                periods = _current_periods(row, session.end_time)
                if periods != PERIODS:
                    logger.info(
                        "Session %s ended %s, before the last reset; counted in %s only",
                        session.id, session.end_time.isoformat(), periods or "no period",
                    )
                for metric, amount in amounts.items():
                    _apply_increment(row, metric, amount, session.end_time, periods)
                return True
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to record completed session {session.id}"
            ) from exc


def _complete_row(db: OrmSession, session: Session, amounts: dict[str, int]) -> bool:
    result = db.execute(
        update(ActivitySession)
        .where(
            ActivitySession.id == session.id,
            ActivitySession.status == SessionStatus.ACTIVE,
        )
        .values(
            status=SessionStatus.COMPLETED,
            end_time=session.end_time,
            duration_minutes=amounts[KIND_MINUTES_METRIC[session.kind]],
            screen_share_minutes=amounts.get("screen_share_minutes", 0),
        )
    )
    if result.rowcount != 1:
        logger.info(
            "Session %s already completed; skipping counters (user=%s kind=%s)",
            session.id, session.user_id, session.kind,
        )
        return False
    return True
