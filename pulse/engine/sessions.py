"""
pulse.engine.sessions — Session State Machine
==============================================

One state machine per ``(user_id, kind)`` key::

    Idle ──start──▶ Active ──heartbeat──▶ Active ──end──▶ Completed
                      │                                      ▲
                      └──start (duplicate / missed end)──────┘ then reopen

Rules:

* At most one active session per key.  A ``start`` for a key that is
  already active first closes the stale session at its *last heartbeat*
  (never silently overwritten), then opens the new one.
* ``heartbeat`` only moves ``last_heartbeat`` forward; ``start_time`` is
  never touched.  A labelled heartbeat for an idle key (the session was
  swept during an outage, or its open/continue failed) opens a session at
  the heartbeat time, so a member who never changes state is picked up
  again.
* ``end`` fixes ``end_time`` and hands the segment to the counter store,
  which flips the durable row and counts it in one transaction.  If that
  fails the session is parked (``pending_end``) and retried later, so the
  time is counted exactly once.
* Transitions for one key are serialized by a per-key ``asyncio.Lock``;
  different keys never wait on each other.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta

from pulse.constants import KIND_MINUTES_METRIC, ensure_utc, minutes_between, utc_now
from pulse.database.engine import run_db
from pulse.database.models import ActivityKind, SessionStatus
from pulse.engine.events import ActivityAction, ActivityEvent, Session, SessionKey
from pulse.errors import PersistenceError
from pulse.services.counter_store import CounterStore
from pulse.services.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_GRACE = timedelta(minutes=10)


class SessionManager:
    """Owns every active session while it is active.

    Parameters
    ----------
    sessions:
        Durable session log (rows are inserted on open).
    counters:
        Counter store that receives completed segments.
    grace:
        Liveness window: sessions whose last heartbeat is older than this
        are closed by :meth:`sweep` and are not resumed after a restart.
    clock:
        Returns "now"; injectable for tests.
    """

    def __init__(
        self,
        sessions: SessionStore,
        counters: CounterStore,
        *,
        grace: timedelta = DEFAULT_GRACE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.sessions = sessions
        self.counters = counters
        self.grace = grace
        self.clock = clock
        self._active: dict[SessionKey, Session] = {}
        self._pending: dict[int, Session] = {}
        self._resumable: set[int] = set()
        self._locks: defaultdict[SessionKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending_lock = asyncio.Lock()

    # -------------------------------------------------------------------
    # Event entry point
    # -------------------------------------------------------------------
    async def handle(self, event: ActivityEvent) -> Session | None:
        """Apply one event to its key's state machine.

        Returns the session the event landed on (the opened, heartbeated
        or completed one), or ``None`` when the event was ignored.
        """
        async with self._locks[event.key]:
            if event.action is ActivityAction.START:
                return await self._start(event)
            if event.action is ActivityAction.HEARTBEAT:
                return await self._heartbeat(event)
            return await self._end(event)

    async def _start(self, event: ActivityEvent) -> Session | None:
        current = self._active.get(event.key)
        if current is not None:
            if self._can_resume(current, event):
                self._resumable.discard(current.id)
                logger.info(
                    "Resumed %s session %s for user %s (%s)",
                    current.kind, current.id, current.user_id, current.label,
                )
                await self._touch(current, event.timestamp)
                return current
            logger.warning(
                "Duplicate start for user %s kind %s; closing session %s at last heartbeat",
                event.user_id, event.kind, current.id,
            )
            await self._complete(current, current.last_heartbeat)

        session = await run_db(
            self.sessions.open_session,
            user_id=event.user_id,
            kind=event.kind,
            label=event.label,
            detail=event.metadata.get("artist"),
            start_time=event.timestamp,
        )
        if event.kind is ActivityKind.VOICE and event.metadata.get("streaming"):
            session.streaming_since = session.start_time
        self._active[event.key] = session
        logger.debug(
            "Opened %s session %s for user %s (%s)",
            session.kind, session.id, session.user_id, session.label,
        )
        return session

    def _can_resume(self, current: Session, event: ActivityEvent) -> bool:
        return (
            current.id in self._resumable
            and current.label == event.label
            and event.timestamp - current.last_heartbeat <= self.grace
        )

    async def _heartbeat(self, event: ActivityEvent) -> Session | None:
        current = self._active.get(event.key)
        if current is None:
            if not event.label:
                logger.debug("Unlabelled heartbeat for idle key %s ignored", event.key)
                return None
            logger.info(
                "Heartbeat for idle key %s; reopening %s session at %s",
                event.key, event.kind, event.timestamp.isoformat(),
            )
            return await self._start(event)
        if event.label and event.label != current.label:
            # Missed end + start: treat the drifted label as a fresh start
            return await self._start(event)
        if event.timestamp <= current.last_heartbeat:
            return current

        self._resumable.discard(current.id)
        if current.kind is ActivityKind.VOICE and "streaming" in event.metadata:
            _update_streaming(current, bool(event.metadata["streaming"]), event.timestamp)
        await self._touch(current, event.timestamp)
        return current

    async def _end(self, event: ActivityEvent) -> Session | None:
        current = self._active.get(event.key)
        if current is None:
            logger.warning(
                "End without matching start for user %s kind %s (%s); ignored",
                event.user_id, event.kind, event.label,
            )
            return None
        return await self._complete(current, event.timestamp)

    # -------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------
    async def _complete(self, session: Session, end_time: datetime) -> Session | None:
        """Close *session* at *end_time* and count it.  Caller holds the key lock.

        On persistence failure the session leaves the active map and is
        parked for :meth:`retry_pending`; the key is free for a new start.
        """
        end_time = max(ensure_utc(end_time), session.start_time)
        if self._active.get(session.key) is session:
            del self._active[session.key]
        self._resumable.discard(session.id)

        done = _completed_copy(session, end_time)
        try:
            counted = await run_db(self.counters.record_completed_session, done)
        except PersistenceError:
            logger.exception(
                "Could not persist completion of session %s; will retry", session.id,
            )
            session.pending_end = end_time
            self._pending[session.id] = session
            return None

        if counted:
            logger.debug(
                "Completed %s session %s for user %s: %d min",
                done.kind, done.id, done.user_id, done.duration_minutes,
            )
        return done

    async def retry_pending(self) -> int:
        """Resubmit parked completions.  Returns how many went through."""
        done = 0
        async with self._pending_lock:
            for session_id, session in list(self._pending.items()):
                assert session.pending_end is not None
                completed = _completed_copy(session, session.pending_end)
                try:
                    await run_db(self.counters.record_completed_session, completed)
                except PersistenceError:
                    logger.warning("Retry of session %s failed; still pending", session_id)
                    continue
                del self._pending[session_id]
                done += 1
        return done

    async def _touch(self, session: Session, at: datetime) -> None:
        session.last_heartbeat = max(session.last_heartbeat, at)
        try:
            await run_db(self.sessions.touch, session.id, session.last_heartbeat)
        except PersistenceError:
            # In-memory liveness is authoritative; the durable copy only
            # matters after a crash, so a missed touch is not fatal.
            logger.warning("Could not persist heartbeat for session %s", session.id)

    # -------------------------------------------------------------------
    # Maintenance entry points (sweeper / admin)
    # -------------------------------------------------------------------
    async def sweep(self, now: datetime | None = None) -> int:
        """Close sessions silent for longer than the grace window.

        Each candidate is re-checked under its key lock so a genuine
        ``end`` that arrived meanwhile wins.  ``end_time`` is the last
        heartbeat, not the sweep time.
        """
        now = ensure_utc(now or self.clock())
        closed = 0
        for key, session in list(self._active.items()):
            if now - session.last_heartbeat <= self.grace:
                continue
            async with self._locks[key]:
                current = self._active.get(key)
                if current is not session or now - current.last_heartbeat <= self.grace:
                    continue
                logger.info(
                    "Sweeping stale %s session %s for user %s (last heartbeat %s)",
                    current.kind, current.id, current.user_id,
                    current.last_heartbeat.isoformat(),
                )
                if await self._complete(current, current.last_heartbeat) is not None:
                    closed += 1
        return closed

    async def flush(self, now: datetime | None = None) -> int:
        """Snapshot every active session into the counters.

        Live sessions are completed at *now* and continue as a new segment
        starting at *now* (``continues_id`` links them, so per-session
        counts such as ``games_played`` are not repeated).  Stale sessions
        are closed at their last heartbeat instead.  Returns the number of
        sessions flushed.
        """
        now = ensure_utc(now or self.clock())
        flushed = 0
        for key in list(self._active):
            async with self._locks[key]:
                current = self._active.get(key)
                if current is None:
                    continue
                if now - current.last_heartbeat > self.grace:
                    if await self._complete(current, current.last_heartbeat) is not None:
                        flushed += 1
                    continue
                if await self._complete(current, now) is None:
                    continue
                flushed += 1
                await self._continue(current, now)
        return flushed

    async def _continue(self, previous: Session, now: datetime) -> None:
        try:
            nxt = await run_db(
                self.sessions.open_session,
                user_id=previous.user_id,
                kind=previous.kind,
                label=previous.label,
                detail=previous.detail,
                start_time=now,
                continues_id=previous.id,
            )
        except PersistenceError:
            logger.exception(
                "Could not open continuation of session %s; key %s is idle",
                previous.id, previous.key,
            )
            return
        # Liveness carries over: a flush is not a heartbeat
        nxt.last_heartbeat = previous.last_heartbeat
        if previous.streaming_since is not None:
            nxt.streaming_since = now
        self._active[previous.key] = nxt

    async def end_all(self, user_id: int, at: datetime | None = None) -> int:
        """End every open kind for *user_id* (member left the guild)."""
        at = ensure_utc(at or self.clock())
        ended = 0
        for kind in ActivityKind:
            if (user_id, kind) not in self._active:
                continue
            event = ActivityEvent(user_id=user_id, kind=kind, action=ActivityAction.END, timestamp=at)
            if await self.handle(event) is not None:
                ended += 1
        return ended

    async def recover(self) -> int:
        """Adopt ``active`` rows left by a previous process.

        Adopted sessions are *resumable*: a matching ``start`` within the
        grace window continues them; anything else closes them at their
        last heartbeat (the sweeper, or a start with a different label).
        Duplicate active rows for one key keep the newest; older ones are
        closed at their last heartbeat.
        """
        rows = await run_db(self.sessions.list_active)
        adopted = 0
        for session in rows:  # oldest first
            async with self._locks[session.key]:
                existing = self._active.get(session.key)
                if existing is not None:
                    if existing.id == session.id:
                        continue
                    logger.warning(
                        "Two active %s rows for user %s; closing older session %s",
                        session.kind, session.user_id, existing.id,
                    )
                    await self._complete(existing, existing.last_heartbeat)
                self._active[session.key] = session
                self._resumable.add(session.id)
                adopted += 1
        if adopted:
            logger.info("Recovered %d active session(s) from the store", adopted)
        return adopted

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def get(self, user_id: int, kind: ActivityKind) -> Session | None:
        return self._active.get((user_id, kind))

    def elapsed_minutes(self, key: SessionKey, now: datetime | None = None) -> int:
        session = self._active.get(key)
        if session is None:
            return 0
        return session.elapsed_minutes(ensure_utc(now or self.clock()))

    def list_active(self, kind: ActivityKind | None = None) -> list[Session]:
        sessions = [
            s for s in self._active.values()
            if kind is None or s.kind is kind
        ]
        return sorted(sessions, key=lambda s: (s.start_time, s.id))

    def active_for(self, user_id: int) -> list[Session]:
        return [s for (uid, _), s in self._active.items() if uid == user_id]

    def owns(self, session_id: int) -> bool:
        return session_id in self._pending or any(
            s.id == session_id for s in self._active.values()
        )

    @property
    def pending_count(self) -> int:
        return len(self._pending)


def live_increments(session: Session, now: datetime) -> dict[str, int]:
    """Metric → elapsed-so-far amount contributed by an open session."""
    amounts = {KIND_MINUTES_METRIC[session.kind]: session.elapsed_minutes(now)}
    if session.kind is ActivityKind.VOICE:
        amounts["screen_share_minutes"] = session.screen_share_until(now)
    return amounts


def _update_streaming(session: Session, streaming: bool, at: datetime) -> None:
    if streaming and session.streaming_since is None:
        session.streaming_since = at
    elif not streaming and session.streaming_since is not None:
        session.screen_share_minutes += minutes_between(session.streaming_since, at)
        session.streaming_since = None


def _completed_copy(session: Session, end_time: datetime) -> Session:
    return dataclasses.replace(
        session,
        end_time=end_time,
        status=SessionStatus.COMPLETED,
        pending_end=None,
    )
