"""
pulse.engine.events — ActivityEvent, ActivityAction and Session
================================================================

The universal event envelope.  Every gateway delta is normalized into
zero or more :class:`ActivityEvent` values before the session manager
sees it; ``Session`` is the in-memory view of one open (or just closed)
session segment.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from pulse.constants import ensure_utc, minutes_between, utc_now
from pulse.database.models import ActivityKind, SessionStatus

__all__ = ["ActivityAction", "ActivityEvent", "ActivityKind", "Session", "SessionKey"]

# (user_id, kind) — the unit of serialization
SessionKey = tuple[int, ActivityKind]


class ActivityAction(enum.StrEnum):
    START = "start"
    HEARTBEAT = "heartbeat"
    END = "end"


# ---------------------------------------------------------------------------
# ActivityEvent — the universal event envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ActivityEvent:
    """Normalized presence change for one (user, kind).

    ``label`` is the channel, game or track name.  Source-specific extras
    (spotify artist, voice streaming flag) ride in ``metadata``.
    """

    user_id: int
    kind: ActivityKind
    action: ActivityAction
    label: str = ""
    timestamp: datetime = field(default_factory=utc_now)
    metadata: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Accept plain strings from the wire; reject anything unknown
        object.__setattr__(self, "kind", ActivityKind(self.kind))
        object.__setattr__(self, "action", ActivityAction(self.action))
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))

    @property
    def key(self) -> SessionKey:
        return (self.user_id, self.kind)

    @classmethod
    def from_dict(cls, raw: dict) -> ActivityEvent:
        """Build an event from the JSON wire shape
        ``{userId, kind, action, label?, timestamp}``.
        """
        return cls(
            user_id=int(raw["userId"]),
            kind=ActivityKind(raw["kind"]),
            action=ActivityAction(raw["action"]),
            label=raw.get("label") or "",
            timestamp=datetime.fromisoformat(raw["timestamp"].replace("Z", "+00:00")),
            metadata=dict(raw.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Session — in-memory state of one session segment
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Session:
    """One contiguous period of an activity.

    Mutable while active and owned by the session manager; once
    ``status`` is completed it is treated as an immutable fact.
    """

    id: int
    user_id: int
    kind: ActivityKind
    label: str
    start_time: datetime
    last_heartbeat: datetime
    detail: str | None = None
    end_time: datetime | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    continues_id: int | None = None
    # Screen-share bookkeeping (voice only)
    streaming_since: datetime | None = None
    screen_share_minutes: int = 0
    # Set when completion could not be persisted; retried by sweep/flush
    pending_end: datetime | None = None

    @property
    def key(self) -> SessionKey:
        return (self.user_id, self.kind)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def duration_minutes(self) -> int:
        """Final duration once completed; elapsed-so-far otherwise."""
        return self.elapsed_minutes(utc_now())

    def elapsed_minutes(self, now: datetime) -> int:
        if self.end_time is not None:
            return minutes_between(self.start_time, self.end_time)
        return minutes_between(self.start_time, now)

    def screen_share_until(self, at: datetime) -> int:
        """Accrued screen-share minutes including an ongoing stream."""
        total = self.screen_share_minutes
        if self.streaming_since is not None:
            total += minutes_between(self.streaming_since, at)
        return total

    def to_dict(self, now: datetime | None = None) -> dict:
        now = now or utc_now()
        return {
            "id": self.id,
            "user_id": str(self.user_id),
            "kind": self.kind.value,
            "label": self.label,
            "detail": self.detail,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "status": self.status.value,
            "duration_minutes": self.elapsed_minutes(now),
        }
