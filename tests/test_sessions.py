"""
tests/test_sessions.py — Tests for the Session Manager
=======================================================

Tests for:
- start → heartbeat* → end lifecycle and duration math
- One active session per (user, kind), duplicate starts, orphan ends
- Day / month boundary scenarios through the counters
- Sweeper closing at the last heartbeat, idempotent re-sweeps
- Force flush segmentation, restart recovery, failed-completion retry
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest
from conftest import T0

from pulse.engine.events import ActivityAction, ActivityEvent, ActivityKind
from pulse.errors import PersistenceError
from pulse.services.aggregator import StatsService

USER = 4242


def run_async(coro):
    """Run an async coroutine in a new event loop."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def ev(action, kind=ActivityKind.VOICE, label="General", at=T0, user=USER, **metadata):
    return ActivityEvent(
        user_id=user,
        kind=kind,
        action=ActivityAction(action),
        label=label,
        timestamp=at,
        metadata=metadata,
    )


def mins(n, base=T0):
    return base + timedelta(minutes=n)


# ===========================================================================
# Lifecycle
# ===========================================================================
class TestLifecycle:
    @pytest.mark.parametrize("duration,expected", [
        (timedelta(minutes=42), 42),
        (timedelta(minutes=42, seconds=29), 42),
        (timedelta(minutes=42, seconds=30), 43),
        (timedelta(seconds=29), 0),
        (timedelta(hours=3), 180),
    ])
    def test_start_heartbeats_end_persists_one_session(self, manager, session_store, db_engine, duration, expected):
        """Exactly one completed row whose duration is end - start in whole minutes."""
        async def _inner():
            await manager.handle(ev("start"))
            for i in range(1, 4):
                await manager.handle(ev("heartbeat", at=T0 + duration * i / 4))
            return await manager.handle(ev("end", at=T0 + duration))

        done = run_async(_inner())
        history = session_store.history(USER, T0, T0 + duration + timedelta(days=1))
        assert len(history) == 1
        assert history[0].id == done.id
        assert history[0].duration_minutes == expected
        assert history[0].end_time == T0 + duration
        assert manager.get(USER, ActivityKind.VOICE) is None

    def test_heartbeat_never_moves_start(self, manager):
        async def _inner():
            await manager.handle(ev("start"))
            await manager.handle(ev("heartbeat", at=mins(5)))
        run_async(_inner())
        session = manager.get(USER, ActivityKind.VOICE)
        assert session.start_time == T0
        assert session.last_heartbeat == mins(5)

    def test_stale_heartbeat_ignored(self, manager):
        """Heartbeats only move last-seen forward."""
        async def _inner():
            await manager.handle(ev("start"))
            await manager.handle(ev("heartbeat", at=mins(8)))
            await manager.handle(ev("heartbeat", at=mins(3)))
        run_async(_inner())
        assert manager.get(USER, ActivityKind.VOICE).last_heartbeat == mins(8)

    def test_heartbeat_for_idle_key_reopens(self, manager, session_store):
        """A labelled heartbeat with nothing open starts a session at its time."""
        opened = run_async(manager.handle(ev("heartbeat", at=mins(4))))
        assert opened.start_time == mins(4)
        assert [s.id for s in session_store.list_active()] == [opened.id]

    def test_unlabelled_heartbeat_for_idle_key_ignored(self, manager, session_store):
        assert run_async(manager.handle(ev("heartbeat", label=""))) is None
        assert session_store.list_active() == []

    def test_tracking_resumes_after_outage_sweep(self, db_engine):
        """A member still in voice after an outage sweep is tracked again on the next heartbeat."""
        from pulse.engine.normalizer import PresenceSnapshot
        from pulse.services.tracker import ActivityTracker

        tracker = ActivityTracker(db_engine)

        async def _inner():
            tracker.observe(PresenceSnapshot(user_id=USER, status="online", voice_channel="General", timestamp=T0))
            await tracker.dispatcher.join()
            assert await tracker.manager.sweep(now=mins(15)) == 2
            tracker.heartbeat(PresenceSnapshot(
                user_id=USER, status="online", voice_channel="General", timestamp=mins(16),
            ))
            await tracker.dispatcher.join()
            active = tracker.manager.list_active()
            await tracker.close()
            return active

        active = run_async(_inner())
        assert sorted(s.kind for s in active) == [ActivityKind.ONLINE, ActivityKind.VOICE]
        assert all(s.start_time == mins(16) for s in active)

    def test_end_before_start_clamps_to_zero(self, manager, counters):
        """Clock skew never produces negative time."""
        async def _inner():
            await manager.handle(ev("start", at=mins(10)))
            return await manager.handle(ev("end", at=mins(2)))
        done = run_async(_inner())
        assert done.duration_minutes == 0
        assert counters.read(USER).daily["voice_minutes"] == 0

    def test_orphan_end_logged_and_ignored(self, manager, counters, caplog):
        """An end with no matching start changes nothing."""
        with caplog.at_level(logging.WARNING, logger="pulse.engine.sessions"):
            assert run_async(manager.handle(ev("end", at=mins(5)))) is None
        assert "End without matching start" in caplog.text
        assert counters.read(USER).daily["voice_minutes"] == 0

    def test_elapsed_minutes(self, manager):
        run_async(manager.handle(ev("start")))
        key = (USER, ActivityKind.VOICE)
        assert manager.elapsed_minutes(key, mins(7)) == 7
        assert manager.elapsed_minutes((USER, ActivityKind.GAME), mins(7)) == 0

    def test_screen_share_minutes_accrue(self, manager, counters):
        """Streaming windows inside a voice session become screen-share time."""
        async def _inner():
            await manager.handle(ev("start", streaming=False))
            await manager.handle(ev("heartbeat", at=mins(10), streaming=True))
            await manager.handle(ev("heartbeat", at=mins(25), streaming=False))
            await manager.handle(ev("end", at=mins(40)))
        run_async(_inner())
        stats = counters.read(USER)
        assert stats.daily["voice_minutes"] == 40
        assert stats.daily["screen_share_minutes"] == 15

    def test_game_counts_once(self, manager, counters):
        async def _inner():
            await manager.handle(ev("start", kind=ActivityKind.GAME, label="Minecraft"))
            await manager.handle(ev("end", kind=ActivityKind.GAME, label="Minecraft", at=mins(30)))
        run_async(_inner())
        stats = counters.read(USER)
        assert stats.daily["games_minutes"] == 30
        assert stats.daily["games_played"] == 1


# ===========================================================================
# One active session per key
# ===========================================================================
class TestSingleActivePerKey:
    def test_duplicate_start_closes_previous_at_last_heartbeat(self, manager, session_store):
        """A second start closes the first at its last heartbeat, never overwrites."""
        async def _inner():
            first = await manager.handle(ev("start"))
            await manager.handle(ev("heartbeat", at=mins(5)))
            second = await manager.handle(ev("start", label="Gaming", at=mins(20)))
            return first, second
        first, second = run_async(_inner())

        closed = session_store.get(first.id)
        assert closed.end_time == mins(5)
        assert closed.duration_minutes == 5
        assert [s.id for s in session_store.list_active()] == [second.id]

    def test_heartbeat_with_new_label_restarts(self, manager, session_store):
        """A heartbeat naming a different label means a missed end + start."""
        async def _inner():
            await manager.handle(ev("start", kind=ActivityKind.GAME, label="A"))
            await manager.handle(ev("heartbeat", kind=ActivityKind.GAME, label="B", at=mins(3)))
        run_async(_inner())
        active = session_store.list_active()
        assert [s.label for s in active] == ["B"]

    @pytest.mark.parametrize("seed", range(5))
    def test_random_interleavings_never_double_open(self, manager, session_store, seed):
        """Over arbitrary event sequences, each key has at most one active row."""
        rng = random.Random(seed)
        users = [1, 2]
        kinds = list(ActivityKind)

        async def _inner():
            at = T0
            for _ in range(80):
                at += timedelta(seconds=rng.randint(0, 180))
                event = ev(
                    rng.choice(["start", "heartbeat", "end"]),
                    kind=rng.choice(kinds),
                    label=rng.choice(["a", "b"]),
                    at=at,
                    user=rng.choice(users),
                )
                await manager.handle(event)
                keys = Counter(s.key for s in session_store.list_active())
                assert all(n == 1 for n in keys.values()), keys
                assert len(keys) == len(manager.list_active())

        run_async(_inner())


# ===========================================================================
# Counter scenarios
# ===========================================================================
class TestVoiceScenario:
    def test_daily_and_monthly_across_midnight(self, manager, counters, session_store):
        """42 + 10 minutes on day one, then 5 after midnight: daily 5, monthly 57."""
        stats = StatsService(counters, session_store, manager)
        day2 = datetime(2026, 3, 11, 0, 30, tzinfo=UTC)

        async def _inner():
            await manager.handle(ev("start"))
            await manager.handle(ev("end", at=mins(42)))
            first = await stats.get_user_stats(USER, now=mins(43))

            await manager.handle(ev("start", at=mins(60)))
            await manager.handle(ev("end", at=mins(70)))
            second = await stats.get_user_stats(USER, now=mins(71))

            await manager.handle(ev("start", at=day2))
            await manager.handle(ev("end", at=mins(5, day2)))
            third = await stats.get_user_stats(USER, now=mins(6, day2))
            return first, second, third

        first, second, third = run_async(_inner())
        assert first.daily["voice_minutes"] == 42
        assert second.daily["voice_minutes"] == 52
        assert third.daily["voice_minutes"] == 5
        assert third.monthly["voice_minutes"] == 57

    def test_live_elapsed_grows_without_end(self, manager, counters, session_store):
        """Open sessions show up in stats and grow between calls."""
        stats = StatsService(counters, session_store, manager)

        async def _inner():
            await manager.handle(ev("start"))
            a = await stats.get_user_stats(USER, now=mins(5))
            b = await stats.get_user_stats(USER, now=mins(9))
            return a, b

        a, b = run_async(_inner())
        assert a.daily["voice_minutes"] == 5
        assert b.daily["voice_minutes"] == 9
        assert b.live == {"voice_minutes": 9, "screen_share_minutes": 0}
        assert counters.read(USER).daily["voice_minutes"] == 0


# ===========================================================================
# Sweep
# ===========================================================================
class TestSweep:
    def test_closes_at_last_heartbeat_not_sweep_time(self, manager, session_store):
        async def _inner():
            started = await manager.handle(ev("start"))
            await manager.handle(ev("heartbeat", at=mins(3)))
            closed = await manager.sweep(now=mins(30))
            return started, closed
        started, closed = run_async(_inner())
        assert closed == 1
        row = session_store.get(started.id)
        assert row.end_time == mins(3)
        assert row.duration_minutes == 3

    def test_second_sweep_is_noop(self, manager, counters):
        async def _inner():
            await manager.handle(ev("start"))
            await manager.handle(ev("heartbeat", at=mins(3)))
            return await manager.sweep(now=mins(30)), await manager.sweep(now=mins(31))
        assert run_async(_inner()) == (1, 0)
        assert counters.read(USER).daily["voice_minutes"] == 3

    def test_fresh_sessions_survive(self, manager):
        async def _inner():
            await manager.handle(ev("start"))
            await manager.handle(ev("heartbeat", at=mins(25)))
            return await manager.sweep(now=mins(30))
        assert run_async(_inner()) == 0
        assert manager.get(USER, ActivityKind.VOICE) is not None


# ===========================================================================
# Flush
# ===========================================================================
class TestFlush:
    def test_flush_segments_and_counts_once(self, manager, counters, session_store):
        """Flush counts time so far; the continuation does not recount the game."""
        kind = ActivityKind.GAME

        async def _inner():
            first = await manager.handle(ev("start", kind=kind, label="Minecraft"))
            await manager.handle(ev("heartbeat", kind=kind, label="Minecraft", at=mins(25)))
            flushed = await manager.flush(now=mins(30))
            mid = counters.read(USER)
            cont = manager.get(USER, kind)
            await manager.handle(ev("end", kind=kind, label="Minecraft", at=mins(50)))
            return first, flushed, mid, cont

        first, flushed, mid, cont = run_async(_inner())
        assert flushed == 1
        assert mid.daily["games_minutes"] == 30
        assert mid.daily["games_played"] == 1
        assert cont.continues_id == first.id
        assert cont.start_time == mins(30)

        final = counters.read(USER)
        assert final.daily["games_minutes"] == 50
        assert final.daily["games_played"] == 1
        assert session_store.list_active() == []

    def test_flush_closes_stale_sessions_instead(self, manager, session_store):
        async def _inner():
            started = await manager.handle(ev("start"))
            flushed = await manager.flush(now=mins(45))
            return started, flushed
        started, flushed = run_async(_inner())
        assert flushed == 1
        assert session_store.get(started.id).end_time == T0
        assert manager.get(USER, ActivityKind.VOICE) is None

    def test_end_all(self, manager, session_store):
        async def _inner():
            await manager.handle(ev("start"))
            await manager.handle(ev("start", kind=ActivityKind.GAME, label="Minecraft"))
            return await manager.end_all(USER, at=mins(10))
        assert run_async(_inner()) == 2
        assert session_store.list_active() == []


# ===========================================================================
# Recovery and retry
# ===========================================================================
class TestRecovery:
    def _leftover(self, session_store):
        row = session_store.open_session(
            user_id=USER, kind=ActivityKind.VOICE, label="General", start_time=T0,
        )
        session_store.touch(row.id, mins(2))
        return row

    def test_matching_start_resumes(self, manager, session_store, counters):
        """A reconnecting feed resumes the adopted session instead of reopening."""
        leftover = self._leftover(session_store)

        async def _inner():
            assert await manager.recover() == 1
            resumed = await manager.handle(ev("start", at=mins(5)))
            await manager.handle(ev("end", at=mins(20)))
            return resumed
        resumed = run_async(_inner())
        assert resumed.id == leftover.id
        assert counters.read(USER).daily["voice_minutes"] == 20

    def test_different_label_closes_at_last_heartbeat(self, manager, session_store):
        leftover = self._leftover(session_store)

        async def _inner():
            await manager.recover()
            return await manager.handle(ev("start", label="Gaming", at=mins(5)))
        opened = run_async(_inner())
        assert opened.id != leftover.id
        assert session_store.get(leftover.id).end_time == mins(2)

    def test_late_start_does_not_resume(self, manager, session_store):
        """Outside the grace window the gap is not counted."""
        leftover = self._leftover(session_store)

        async def _inner():
            await manager.recover()
            return await manager.handle(ev("start", at=mins(90)))
        opened = run_async(_inner())
        assert opened.id != leftover.id
        assert session_store.get(leftover.id).duration_minutes == 2


class TestPersistenceFailure:
    def test_failed_completion_retried_exactly_once(self, manager, counters):
        """The session is parked on failure and counted once on retry."""
        real = counters.record_completed_session
        calls: list[int] = []

        def flaky(session):
            calls.append(session.id)
            if len(calls) == 1:
                raise PersistenceError("database unavailable")
            return real(session)

        async def _inner():
            await manager.handle(ev("start"))
            with patch.object(counters, "record_completed_session", side_effect=flaky):
                assert await manager.handle(ev("end", at=mins(12))) is None
                assert manager.pending_count == 1
                assert await manager.retry_pending() == 1
                assert await manager.retry_pending() == 0

        run_async(_inner())
        assert len(calls) == 2
        assert manager.pending_count == 0
        assert counters.read(USER).daily["voice_minutes"] == 12

    def test_key_free_while_completion_pending(self, manager, counters):
        async def _inner():
            await manager.handle(ev("start"))
            with patch.object(
                counters, "record_completed_session",
                side_effect=PersistenceError("database unavailable"),
            ):
                await manager.handle(ev("end", at=mins(12)))
            return await manager.handle(ev("start", at=mins(15)))
        assert run_async(_inner()) is not None
