"""
tests/test_aggregator.py — Tests for the Stats Query Service
=============================================================

Tests for:
- get_user_stats live merge (manager and standalone store sources)
- Stale periods presented as zero without writing
- get_range from counters vs. from the clipped session log
- Leaderboards and degraded responses on persistence failure
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from conftest import T0
from sqlalchemy import update

from pulse.database.models import ActivityKind, UserStats
from pulse.errors import PersistenceError
from pulse.services.aggregator import StatsService

USER = 9001


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def mins(n, base=T0):
    return base + timedelta(minutes=n)


def complete(session_store, counters, kind, start, end, label="x", continues_id=None):
    session = session_store.open_session(
        user_id=USER, kind=kind, label=label, start_time=start, continues_id=continues_id,
    )
    session.end_time = end
    counters.record_completed_session(session)
    return session


@pytest.fixture
def standalone(counters, session_store):
    """StatsService without a session manager (API running on its own)."""
    return StatsService(counters, session_store)


class TestGetUserStats:
    def test_standalone_merges_active_rows(self, standalone, session_store):
        """Without a manager, open rows in the store count as live."""
        session_store.open_session(user_id=USER, kind=ActivityKind.VOICE, label="General", start_time=T0)
        stats = run_async(standalone.get_user_stats(USER, now=mins(15)))
        assert stats.daily["voice_minutes"] == 15
        assert stats.monthly["voice_minutes"] == 15
        assert stats.degraded is False

    def test_stale_day_presented_as_zero(self, standalone, counters):
        """Yesterday's counters read as zero today; the row is not rewritten."""
        counters.increment(USER, "voice_minutes", 40, at=T0)
        stats = run_async(standalone.get_user_stats(USER, now=mins(0, T0 + timedelta(days=1))))
        assert stats.daily["voice_minutes"] == 0
        assert stats.monthly["voice_minutes"] == 40
        assert counters.read(USER).daily["voice_minutes"] == 40

    def test_to_dict_shape(self, standalone, counters):
        counters.increment(USER, "games_played", 2, at=T0)
        body = run_async(standalone.get_user_stats(USER, now=mins(1))).to_dict()
        assert body["user_id"] == str(USER)
        assert body["daily_games_played"] == 2
        assert body["monthly_games_played"] == 2
        assert body["degraded"] is False

    def test_degraded_when_counters_unavailable(self, session_store):
        """A store outage yields live-only data flagged degraded, not an error."""
        session_store.open_session(user_id=USER, kind=ActivityKind.GAME, label="Minecraft", start_time=T0)
        broken = MagicMock()
        broken.read.side_effect = PersistenceError("database unavailable")
        stats = run_async(StatsService(broken, session_store).get_user_stats(USER, now=mins(8)))
        assert stats.degraded is True
        assert stats.daily["games_minutes"] == 8

    def test_degraded_when_counter_row_corrupt(self, standalone, counters, db_engine):
        """A row failing validation is served as degraded zeros, not an error."""
        counters.increment(USER, "voice_minutes", 5, at=T0)
        with db_engine.begin() as conn:
            conn.execute(update(UserStats).values(daily_voice_minutes=-1))
        stats = run_async(standalone.get_user_stats(USER, now=mins(1)))
        assert stats.degraded is True
        assert stats.daily["voice_minutes"] == 0


class TestGetRange:
    def test_history_clipped_to_range(self, standalone, session_store, counters):
        """Sessions overlapping the range only contribute the overlap."""
        complete(session_store, counters, ActivityKind.VOICE, T0, mins(60))
        result = run_async(standalone.get_range(
            USER, mins(30), mins(120), now=mins(600),
        ))
        assert result.source == "history"
        assert result.totals["voice_minutes"] == 30
        assert len(result.sessions) == 1

    def test_history_counts_plays_once_across_segments(self, standalone, session_store, counters):
        first = complete(session_store, counters, ActivityKind.GAME, T0, mins(30), label="Minecraft")
        complete(session_store, counters, ActivityKind.GAME, mins(30), mins(50),
                 label="Minecraft", continues_id=first.id)
        result = run_async(standalone.get_range(USER, T0 - timedelta(hours=1), mins(60), now=mins(600)))
        assert result.totals["games_minutes"] == 50
        assert result.totals["games_played"] == 1

    def test_aligned_day_served_from_counters(self, standalone, session_store, counters):
        complete(session_store, counters, ActivityKind.VOICE, T0, mins(42))
        day_start = datetime(2026, 3, 10, tzinfo=UTC)
        result = run_async(standalone.get_range(USER, day_start, mins(50), now=mins(50)))
        assert result.source == "daily"
        assert result.totals["voice_minutes"] == 42

    def test_history_includes_live_sessions(self, standalone, session_store):
        session_store.open_session(user_id=USER, kind=ActivityKind.VOICE, label="General", start_time=T0)
        result = run_async(standalone.get_range(USER, mins(-60), mins(20), now=mins(20)))
        assert result.totals["voice_minutes"] == 20
        assert [s.is_active for s in result.sessions] == [True]

    def test_empty_range_rejected(self, standalone):
        with pytest.raises(ValueError):
            run_async(standalone.get_range(USER, T0, T0))


class TestActiveAndLeaderboard:
    def test_list_active_filters_kind(self, standalone, session_store):
        session_store.open_session(user_id=1, kind=ActivityKind.VOICE, label="General", start_time=T0)
        session_store.open_session(user_id=2, kind=ActivityKind.GAME, label="Minecraft", start_time=T0)
        sessions, degraded = run_async(standalone.list_active_sessions(ActivityKind.GAME))
        assert [s.user_id for s in sessions] == [2]
        assert degraded is False

    def test_leaderboard_ranks_current_period(self, standalone, counters):
        counters.increment(1, "spotify_minutes", 5, at=T0)
        counters.increment(2, "spotify_minutes", 50, at=T0)
        counters.increment(3, "spotify_minutes", 500, at=T0 - timedelta(days=1))
        entries, degraded = run_async(standalone.leaderboard("spotify_minutes", "daily", 10, now=mins(1)))
        assert [(e.rank, e.user_id, e.value) for e in entries] == [(1, 2, 50), (2, 1, 5)]
        assert degraded is False

    def test_leaderboard_monthly_keeps_earlier_days(self, standalone, counters):
        counters.increment(3, "spotify_minutes", 500, at=T0 - timedelta(days=1))
        entries, _ = run_async(standalone.leaderboard("spotify_minutes", "monthly", 10, now=mins(1)))
        assert [e.user_id for e in entries] == [3]

    def test_leaderboard_unknown_metric(self, standalone):
        with pytest.raises(ValueError):
            run_async(standalone.leaderboard("xp", "daily"))
