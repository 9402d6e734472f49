"""
pulse.engine.normalizer — Gateway Snapshot → ActivityEvent
===========================================================

Turns the raw member state the gateway hands us (presence status,
activity list, voice channel) into typed :class:`ActivityEvent` values.

The normalizer remembers the last :class:`PresenceSnapshot` per user and
emits only the *difference*, so duplicate delivery of an unchanged
snapshot yields no events.  It is pure and synchronous: no I/O, no
awaiting, safe to call straight from a gateway listener.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pulse.constants import (
    normalize_artist_name,
    normalize_game_name,
    normalize_track_name,
    utc_now,
)
from pulse.engine.events import ActivityAction, ActivityEvent, ActivityKind

logger = logging.getLogger(__name__)

# Discord activity type values (discord.ActivityType)
ACTIVITY_PLAYING = 0
ACTIVITY_LISTENING = 2

OFFLINE_STATUSES = frozenset({"offline", "invisible", ""})

# Order matters: online opens first and closes last
_KIND_ORDER: tuple[ActivityKind, ...] = (
    ActivityKind.ONLINE,
    ActivityKind.VOICE,
    ActivityKind.GAME,
    ActivityKind.SPOTIFY,
)


# ---------------------------------------------------------------------------
# RawActivity / PresenceSnapshot — gateway-agnostic input shapes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class RawActivity:
    """The handful of activity fields the normalizer looks at."""

    type: int
    name: str | None = None
    details: str | None = None  # spotify: track title
    state: str | None = None    # spotify: artist(s)


@dataclass(frozen=True, slots=True)
class PresenceSnapshot:
    """Everything known about one member at one instant.

    ``voice_channel`` is ``None`` when the member is not in voice (or sits
    in the AFK channel).  ``streaming`` is the Go Live / screen-share flag.
    """

    user_id: int
    status: str = "offline"
    activities: tuple[RawActivity, ...] = ()
    voice_channel: str | None = None
    streaming: bool = False
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class _Labels:
    """Per-kind labels derived from a snapshot (None = kind not present)."""

    online: str | None
    voice: str | None
    game: str | None
    spotify: str | None
    artist: str | None
    streaming: bool

    def get(self, kind: ActivityKind) -> str | None:
        return getattr(self, kind.value)


_EMPTY = _Labels(None, None, None, None, None, False)


def _extract_labels(snapshot: PresenceSnapshot) -> _Labels:
    if (snapshot.status or "offline") in OFFLINE_STATUSES:
        # Offline ends everything, whatever stale activity data says
        return _EMPTY

    game: str | None = None
    spotify: str | None = None
    artist: str | None = None
    for activity in snapshot.activities:
        name = (activity.name or "").strip()
        is_spotify = name.lower() == "spotify"
        if activity.type == ACTIVITY_PLAYING and name and not is_spotify:
            if game is None:
                game = normalize_game_name(name)
        elif activity.type == ACTIVITY_LISTENING and is_spotify and activity.details:
            if spotify is None:
                spotify = normalize_track_name(activity.details)
                artist = normalize_artist_name(activity.state or "Unknown Artist")
        # Anything else (custom status, streaming, watching, …) is ignored

    return _Labels(
        online=snapshot.status,
        voice=snapshot.voice_channel,
        game=game,
        spotify=spotify,
        artist=artist,
        streaming=bool(snapshot.voice_channel) and snapshot.streaming,
    )


def _metadata(kind: ActivityKind, labels: _Labels) -> dict[str, Any]:
    if kind is ActivityKind.SPOTIFY:
        return {"artist": labels.artist}
    if kind is ActivityKind.VOICE:
        return {"streaming": labels.streaming}
    if kind is ActivityKind.ONLINE:
        return {"status": labels.online}
    return {}


# ---------------------------------------------------------------------------
# EventNormalizer
# ---------------------------------------------------------------------------
class EventNormalizer:
    """Diffs successive presence snapshots into start/heartbeat/end events."""

    def __init__(self) -> None:
        self._last: dict[int, _Labels] = {}

    def normalize(self, snapshot: PresenceSnapshot) -> list[ActivityEvent]:
        """Return the events that move the user from the previous snapshot
        to *snapshot*.  Unchanged snapshots return ``[]``.
        """
        before = self._last.get(snapshot.user_id, _EMPTY)
        after = _extract_labels(snapshot)
        if after == before:
            return []
        self._last[snapshot.user_id] = after

        ts = snapshot.timestamp
        ends: list[ActivityEvent] = []
        starts: list[ActivityEvent] = []
        updates: list[ActivityEvent] = []

        for kind in _KIND_ORDER:
            old, new = before.get(kind), after.get(kind)
            # Status flips between online/idle/dnd are the same online session
            if kind is ActivityKind.ONLINE:
                old = "online" if old is not None else None
                new_label = "online" if new is not None else None
                if old == new_label:
                    continue
                new = new_label
            if old == new:
                if kind is ActivityKind.VOICE and new is not None and (
                    before.streaming != after.streaming
                ):
                    updates.append(self._event(snapshot.user_id, kind, ActivityAction.HEARTBEAT, new, ts, after))
                continue
            if old is not None:
                ends.append(self._event(snapshot.user_id, kind, ActivityAction.END, old, ts, before))
            if new is not None:
                starts.append(self._event(snapshot.user_id, kind, ActivityAction.START, new, ts, after))

        # Close before opening; online closes last and opens first
        ends.sort(key=lambda e: e.kind is ActivityKind.ONLINE)
        return ends + starts + updates

    def heartbeats(self, snapshot: PresenceSnapshot) -> list[ActivityEvent]:
        """One heartbeat per kind currently present in *snapshot*.

        Used by the periodic liveness loop; does not touch the diff state
        unless the snapshot differs, in which case the diff events come
        first so the heartbeat lands on the right session.
        """
        events = self.normalize(snapshot)
        labels = self._last.get(snapshot.user_id, _EMPTY)
        for kind in _KIND_ORDER:
            label = labels.get(kind)
            if label is None:
                continue
            if kind is ActivityKind.ONLINE:
                label = "online"
            events.append(self._event(
                snapshot.user_id, kind, ActivityAction.HEARTBEAT, label, snapshot.timestamp, labels,
            ))
        return events

    def forget(self, user_id: int) -> None:
        """Drop cached state for *user_id* (member left, bot resync)."""
        self._last.pop(user_id, None)

    def prime(self, snapshots: Iterable[PresenceSnapshot]) -> list[ActivityEvent]:
        """Normalize a batch (startup: every member currently visible)."""
        events: list[ActivityEvent] = []
        for snapshot in snapshots:
            events.extend(self.normalize(snapshot))
        return events

    @staticmethod
    def _event(
        user_id: int,
        kind: ActivityKind,
        action: ActivityAction,
        label: str,
        ts: datetime,
        labels: _Labels,
    ) -> ActivityEvent:
        return ActivityEvent(
            user_id=user_id,
            kind=kind,
            action=action,
            label=label,
            timestamp=ts,
            metadata=_metadata(kind, labels),
        )
