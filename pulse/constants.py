"""
pulse.constants — Shared Constants & Time Helpers
==================================================

Single source of truth for metric names, the kind → metric mapping, game
name aliases, and the UTC calendar helpers used by the reset protocol.
Import from here instead of duplicating in cogs, services, and the API.
"""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Metrics — each one has a daily_* and a monthly_* column on user_stats
# ---------------------------------------------------------------------------
METRICS: tuple[str, ...] = (
    "online_minutes",
    "voice_minutes",
    "screen_share_minutes",
    "games_played",
    "games_minutes",
    "spotify_minutes",
    "spotify_songs",
)

# Metrics that count occurrences rather than minutes
COUNT_METRICS: frozenset[str] = frozenset({"games_played", "spotify_songs"})

PERIODS: tuple[str, ...] = ("daily", "monthly")

# Minutes metric fed by a completed session of each kind
KIND_MINUTES_METRIC: dict[str, str] = {
    "online": "online_minutes",
    "voice": "voice_minutes",
    "game": "games_minutes",
    "spotify": "spotify_minutes",
}

# Count metric bumped once per session (first segment only)
KIND_COUNT_METRIC: dict[str, str] = {
    "game": "games_played",
    "spotify": "spotify_songs",
}


def counter_column(period: str, metric: str) -> str:
    """Column name on ``user_stats`` for *period* / *metric*.

    Raises ``ValueError`` for unknown periods or metrics so callers can
    never build arbitrary attribute names from user input.
    """
    if period not in PERIODS:
        raise ValueError(f"Unknown period: {period!r}")
    if metric not in METRICS:
        raise ValueError(f"Unknown metric: {metric!r}")
    return f"{period}_{metric}"


# ---------------------------------------------------------------------------
# Game name aliases (presence names → canonical names)
# ---------------------------------------------------------------------------
GAME_NAME_ALIASES: dict[str, str] = {
    "League of Legends (TM) Client": "League of Legends",
    "VALORANT": "Valorant",
    "CS2": "Counter-Strike 2",
    "Grand Theft Auto V": "GTA V",
}

MAX_TRACK_LENGTH = 200
MAX_ARTIST_LENGTH = 100

_WHITESPACE_RE = re.compile(r"\s+")
_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")
_BY_PREFIX_RE = re.compile(r"^by\s+", re.IGNORECASE)


def normalize_game_name(name: str) -> str:
    """Trim *name* and map well-known client names to their canonical title."""
    cleaned = name.strip()
    return GAME_NAME_ALIASES.get(cleaned, cleaned)


def normalize_track_name(name: str) -> str:
    """Collapse whitespace, drop zero-width characters, cap the length."""
    cleaned = _ZERO_WIDTH_RE.sub("", _WHITESPACE_RE.sub(" ", name.strip()))
    return cleaned[:MAX_TRACK_LENGTH]


def normalize_artist_name(name: str) -> str:
    """Like :func:`normalize_track_name`, also stripping a leading ``by ``."""
    cleaned = _ZERO_WIDTH_RE.sub("", _WHITESPACE_RE.sub(" ", name.strip()))
    return _BY_PREFIX_RE.sub("", cleaned)[:MAX_ARTIST_LENGTH]


# ---------------------------------------------------------------------------
# UTC calendar helpers — THE reset boundaries
# ---------------------------------------------------------------------------
def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``timezone=True`` columns;
    naive values are interpreted as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def start_of_utc_day(value: datetime) -> datetime:
    value = ensure_utc(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_utc_month(value: datetime) -> datetime:
    return start_of_utc_day(value).replace(day=1)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from *start* to *end*, rounded half up, clamped at zero
    (clock skew).
    """
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    if seconds <= 0:
        return 0
    return math.floor(seconds / 60 + 0.5)
