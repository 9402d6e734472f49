"""
pulse.services.session_store — Append-Only Session Log
=======================================================

Durable side of the session lifecycle.  A row is inserted ``active`` when
a session opens, its ``last_heartbeat`` is bumped while it lives, and it
is flipped to ``completed`` exactly once by
:meth:`pulse.services.counter_store.CounterStore.record_completed_session`.
Completed rows are never updated or deleted, which is what lets
:mod:`pulse.services.aggregator` answer arbitrary historical ranges.

All public methods are synchronous — call via ``await run_db(...)``.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Engine, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from pulse.constants import ensure_utc
from pulse.database.engine import get_session
from pulse.database.models import ActivityKind, ActivitySession, SessionStatus
from pulse.engine.events import Session
from pulse.errors import InvalidStatsError, PersistenceError

logger = logging.getLogger(__name__)


def to_session(row: ActivitySession) -> Session:
    """Convert an ORM row into the in-memory :class:`Session` value."""
    try:
        kind = ActivityKind(row.kind)
    except ValueError as exc:
        raise InvalidStatsError(f"Unknown activity kind {row.kind!r} on session {row.id}") from exc
    return Session(
        id=row.id,
        user_id=row.user_id,
        kind=kind,
        label=row.label,
        detail=row.detail,
        start_time=ensure_utc(row.start_time),
        end_time=ensure_utc(row.end_time) if row.end_time else None,
        last_heartbeat=ensure_utc(row.last_heartbeat),
        status=SessionStatus(row.status),
        continues_id=row.continues_id,
        screen_share_minutes=row.screen_share_minutes or 0,
    )


class SessionStore:
    """Insert/heartbeat/query access to ``activity_sessions``."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def open_session(
        self,
        *,
        user_id: int,
        kind: ActivityKind,
        label: str,
        start_time: datetime,
        detail: str | None = None,
        continues_id: int | None = None,
    ) -> Session:
        """Insert an ``active`` row and return it as a :class:`Session`."""
        start_time = ensure_utc(start_time)
        row = ActivitySession(
            user_id=user_id,
            kind=kind,
            label=label,
            detail=detail,
            start_time=start_time,
            last_heartbeat=start_time,
            status=SessionStatus.ACTIVE,
            continues_id=continues_id,
            duration_minutes=0,
            screen_share_minutes=0,
        )
        try:
            with get_session(self.engine) as session:
                session.add(row)
                session.flush()
                return to_session(row)
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to open {kind} session for user {user_id}"
            ) from exc

    def touch(self, session_id: int, at: datetime) -> bool:
        """Advance ``last_heartbeat`` (never backwards) on an active row."""
        at = ensure_utc(at)
        try:
            with get_session(self.engine) as session:
                result = session.execute(
                    update(ActivitySession)
                    .where(
                        ActivitySession.id == session_id,
                        ActivitySession.status == SessionStatus.ACTIVE,
                        ActivitySession.last_heartbeat < at,
                    )
                    .values(last_heartbeat=at)
                )
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to heartbeat session {session_id}") from exc

    def get(self, session_id: int) -> Session | None:
        try:
            with get_session(self.engine) as session:
                row = session.get(ActivitySession, session_id)
                return to_session(row) if row else None
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load session {session_id}") from exc

    def list_active(
        self,
        kind: ActivityKind | None = None,
        user_id: int | None = None,
    ) -> list[Session]:
        stmt = select(ActivitySession).where(ActivitySession.status == SessionStatus.ACTIVE)
        if kind is not None:
            stmt = stmt.where(ActivitySession.kind == kind)
        if user_id is not None:
            stmt = stmt.where(ActivitySession.user_id == user_id)
        stmt = stmt.order_by(ActivitySession.start_time)
        try:
            with get_session(self.engine) as session:
                return [to_session(r) for r in session.scalars(stmt).all()]
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to list active sessions") from exc

    def history(
        self,
        user_id: int,
        start: datetime,
        end: datetime,
        *,
        kind: ActivityKind | None = None,
    ) -> list[Session]:
        """Completed segments overlapping ``[start, end)``, oldest first."""
        start, end = ensure_utc(start), ensure_utc(end)
        stmt = (
            select(ActivitySession)
            .where(
                ActivitySession.user_id == user_id,
                ActivitySession.status == SessionStatus.COMPLETED,
                ActivitySession.start_time < end,
                or_(ActivitySession.end_time.is_(None), ActivitySession.end_time > start),
            )
            .order_by(ActivitySession.start_time, ActivitySession.id)
        )
        if kind is not None:
            stmt = stmt.where(ActivitySession.kind == kind)
        try:
            with get_session(self.engine) as session:
                return [to_session(r) for r in session.scalars(stmt).all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load session history for user {user_id}") from exc
