"""
pulse.services.reset_scheduler — Daily / Monthly Reset Protocol
================================================================

The only code allowed to zero counters.

``maybe_reset`` runs inside the caller's transaction immediately before
every increment: if the write time falls on a later UTC day (or month)
than the row's last reset, the matching ``daily_*`` (``monthly_*``)
columns are zeroed and the reset timestamp moves to the start of the new
period.  Users with no activity across a boundary are therefore reset
lazily on their next event; :func:`force_reset_all` does the same for
every user at once so queries made before that event already read zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Engine, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pulse.constants import ensure_utc, start_of_utc_day, start_of_utc_month, utc_now
from pulse.database.engine import get_session
from pulse.database.models import UserStats
from pulse.errors import PersistenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ResetResult:
    daily: bool = False
    monthly: bool = False

    def __bool__(self) -> bool:
        return self.daily or self.monthly


def _clamp(at: datetime) -> datetime:
    # Reset timestamps may never run ahead of the wall clock
    return min(ensure_utc(at), utc_now())


def new_stats_row(user_id: int, at: datetime) -> UserStats:
    """A zeroed row whose periods start at *at*'s UTC day / month."""
    at = _clamp(at)
    row = UserStats(
        user_id=user_id,
        last_daily_reset=start_of_utc_day(at),
        last_monthly_reset=start_of_utc_month(at),
        updated_at=at,
    )
    row.zero("daily")
    row.zero("monthly")
    return row


def load_stats_for_update(session: Session, user_id: int, at: datetime) -> UserStats:
    """Fetch the user's row with a row lock, creating it if absent.

    Two writers racing to create the same row resolve through the primary
    key: the loser's savepoint rolls back and it re-reads the winner's row.
    """
    row = session.get(UserStats, user_id, with_for_update=True)
    if row is not None:
        return row

    row = new_stats_row(user_id, at)
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        row = session.get(UserStats, user_id, with_for_update=True, populate_existing=True)
        if row is None:
            raise
    return row


def apply_resets(row: UserStats, at: datetime) -> ResetResult:
    """Zero whichever periods *at* has moved past.  Pure row mutation."""
    at = _clamp(at)
    day = start_of_utc_day(at)
    month = start_of_utc_month(at)

    daily = day > start_of_utc_day(row.last_daily_reset)
    if daily:
        row.zero("daily")
        row.last_daily_reset = day

    monthly = month > start_of_utc_month(row.last_monthly_reset)
    if monthly:
        row.zero("monthly")
        row.last_monthly_reset = month

    if daily or monthly:
        row.updated_at = at
    return ResetResult(daily=daily, monthly=monthly)


def maybe_reset(session: Session, user_id: int, at: datetime) -> UserStats:
    """Load (or create) the user's row and apply any due reset.

    Must be called inside the same transaction as the increment that
    follows, so a crash can never leave a reset without its increment or
    vice versa.  Returns the locked row.
    """
    row = load_stats_for_update(session, user_id, at)
    result = apply_resets(row, at)
    if result:
        logger.debug(
            "Reset user %s (daily=%s monthly=%s) at %s",
            user_id, result.daily, result.monthly, at.isoformat(),
        )
    return row


def force_reset_all(engine: Engine, at: datetime | None = None) -> int:
    """Apply :func:`maybe_reset` to every user.  Returns users reset.

    Each user is handled in its own transaction so one bad row (or a
    concurrent writer holding a lock) never blocks the others.
    """
    at = ensure_utc(at or utc_now())
    try:
        with get_session(engine) as session:
            user_ids = session.scalars(
                select(UserStats.user_id).where(
                    (UserStats.last_daily_reset < start_of_utc_day(at))
                    | (UserStats.last_monthly_reset < start_of_utc_month(at))
                )
            ).all()
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to list users due for reset") from exc

    reset = 0
    for user_id in user_ids:
        try:
            with get_session(engine) as session:
                row = load_stats_for_update(session, user_id, at)
                if apply_resets(row, at):
                    reset += 1
        except SQLAlchemyError:
            logger.exception("Forced reset failed for user %s", user_id)

    if reset:
        logger.info("Forced reset pass: %d/%d users reset", reset, len(user_ids))
    return reset
