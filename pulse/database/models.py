"""
pulse.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- activity_sessions  — Append-only session log, one row per session segment
- user_stats         — Per-user daily/monthly counters + reset bookkeeping

Session rows are inserted ``active`` when a session opens and flipped to
``completed`` exactly once.  Completed rows are never updated or deleted.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from pulse.constants import METRICS, PERIODS


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Pulse ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ActivityKind(enum.StrEnum):
    """The activity tracks a user can have one open session on each."""
    ONLINE = "online"
    VOICE = "voice"
    GAME = "game"
    SPOTIFY = "spotify"


class SessionStatus(enum.StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    # Persist lowercase values ("voice"), not member names ("VOICE")
    return [member.value for member in enum_cls]


# SQLite only autoincrements INTEGER PRIMARY KEY
_SessionId = BigInteger().with_variant(Integer, "sqlite")


# ---------------------------------------------------------------------------
# ActivitySession — one contiguous segment of one activity
# ---------------------------------------------------------------------------
class ActivitySession(Base):
    __tablename__ = "activity_sessions"

    id: Mapped[int] = mapped_column(_SessionId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[ActivityKind] = mapped_column(
        Enum(ActivityKind, name="activity_kind", native_enum=False, length=16,
             values_callable=_enum_values),
        nullable=False,
    )
    label: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    detail: Mapped[str | None] = mapped_column(String(100), default=None)  # spotify artist
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    last_heartbeat: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=0)
    screen_share_minutes: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="session_status", native_enum=False, length=16,
             values_callable=_enum_values),
        nullable=False,
        default=SessionStatus.ACTIVE,
    )
    # Previous segment when this row was opened by a flush (not a new session)
    continues_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("activity_sessions.id"), default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_activity_sessions_user_start", "user_id", "start_time"),
        Index("ix_activity_sessions_status_kind", "status", "kind"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActivitySession id={self.id} user={self.user_id} "
            f"kind={self.kind} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# UserStats — one row per user, rolling daily + monthly counters
# ---------------------------------------------------------------------------
class UserStats(Base):
    __tablename__ = "user_stats"

    user_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    daily_online_minutes: Mapped[int] = mapped_column(Integer, default=0)
    daily_voice_minutes: Mapped[int] = mapped_column(Integer, default=0)
    daily_screen_share_minutes: Mapped[int] = mapped_column(Integer, default=0)
    daily_games_played: Mapped[int] = mapped_column(Integer, default=0)
    daily_games_minutes: Mapped[int] = mapped_column(Integer, default=0)
    daily_spotify_minutes: Mapped[int] = mapped_column(Integer, default=0)
    daily_spotify_songs: Mapped[int] = mapped_column(Integer, default=0)

    monthly_online_minutes: Mapped[int] = mapped_column(Integer, default=0)
    monthly_voice_minutes: Mapped[int] = mapped_column(Integer, default=0)
    monthly_screen_share_minutes: Mapped[int] = mapped_column(Integer, default=0)
    monthly_games_played: Mapped[int] = mapped_column(Integer, default=0)
    monthly_games_minutes: Mapped[int] = mapped_column(Integer, default=0)
    monthly_spotify_minutes: Mapped[int] = mapped_column(Integer, default=0)
    monthly_spotify_songs: Mapped[int] = mapped_column(Integer, default=0)

    last_daily_reset: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_monthly_reset: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def counters(self, period: str) -> dict[str, int]:
        """``{metric: value}`` for one period, e.g. ``counters("daily")``."""
        return {m: getattr(self, f"{period}_{m}") or 0 for m in METRICS}

    def zero(self, period: str) -> None:
        for metric in METRICS:
            setattr(self, f"{period}_{metric}", 0)

    def __repr__(self) -> str:
        return f"<UserStats user={self.user_id} daily_reset={self.last_daily_reset}>"


# Every counter column, for validation at the store boundary
COUNTER_COLUMNS: tuple[str, ...] = tuple(f"{p}_{m}" for p in PERIODS for m in METRICS)
