"""
pulse.services.tracker — Engine Wiring
=======================================

:class:`ActivityTracker` builds the whole pipeline around one SQLAlchemy
engine and hands out the pieces::

    PresenceSnapshot ─▶ EventNormalizer ─▶ EventDispatcher ─▶ SessionManager
                                                               │
                                     CounterStore / SessionStore ◀┘
                                                               │
                          StatsService / ReconciliationSweeper ◀┘

The bot owns exactly one tracker; the API is given the same instance when
it runs in-process.  There is no module-level singleton.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import Engine

from pulse.constants import ensure_utc, utc_now
from pulse.database.models import ActivityKind
from pulse.engine.dispatcher import EventDispatcher
from pulse.engine.events import ActivityEvent
from pulse.engine.normalizer import EventNormalizer, PresenceSnapshot
from pulse.engine.sessions import DEFAULT_GRACE, SessionManager
from pulse.services.aggregator import StatsService
from pulse.services.counter_store import CounterStore
from pulse.services.reconciliation_service import ReconciliationSweeper
from pulse.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class ActivityTracker:
    """Owns the normalizer, dispatcher, session manager and query services."""

    def __init__(
        self,
        engine: Engine,
        *,
        grace: timedelta = DEFAULT_GRACE,
        idle_timeout: float = 60.0,
    ) -> None:
        self.engine = engine
        self.counters = CounterStore(engine)
        self.sessions = SessionStore(engine)
        self.manager = SessionManager(self.sessions, self.counters, grace=grace)
        self.normalizer = EventNormalizer()
        self.dispatcher = EventDispatcher(self.manager, idle_timeout=idle_timeout)
        self.stats = StatsService(self.counters, self.sessions, self.manager)
        self.sweeper = ReconciliationSweeper(self.counters, self.sessions, self.manager)

    # -------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------
    def observe(self, snapshot: PresenceSnapshot) -> int:
        """Diff *snapshot* against the last one and queue the events."""
        events = self.normalizer.normalize(snapshot)
        self.dispatcher.submit_many(events)
        return len(events)

    def observe_all(self, snapshots: Iterable[PresenceSnapshot]) -> int:
        events = self.normalizer.prime(snapshots)
        self.dispatcher.submit_many(events)
        return len(events)

    def heartbeat(self, snapshot: PresenceSnapshot) -> int:
        """Queue liveness heartbeats for every kind present in *snapshot*."""
        events = self.normalizer.heartbeats(snapshot)
        self.dispatcher.submit_many(events)
        return len(events)

    def submit(self, event: ActivityEvent) -> None:
        self.dispatcher.submit(event)

    def forget(self, user_id: int) -> None:
        self.normalizer.forget(user_id)

    # -------------------------------------------------------------------
    # Lifecycle / admin
    # -------------------------------------------------------------------
    async def start(self) -> int:
        """Adopt sessions left active by the previous process."""
        return await self.manager.recover()

    async def flush(self, now: datetime | None = None) -> int:
        """Force flush: apply queued events, then snapshot every open session."""
        await self.dispatcher.join()
        await self.manager.retry_pending()
        flushed = await self.manager.flush(now)
        logger.info("Force flush: %d session(s) flushed", flushed)
        return flushed

    async def sweep(self, now: datetime | None = None) -> dict:
        await self.dispatcher.join()
        return await self.sweeper.run_once(now)

    def health(self, now: datetime | None = None, stale_after: timedelta | None = None) -> dict:
        """Session diagnostics: open sessions per kind, how many have gone
        quiet for *stale_after* (default: the grace window), parked
        completions and queued events.
        """
        now = ensure_utc(now or utc_now())
        stale_after = stale_after or self.manager.grace
        active = self.manager.list_active()
        active_by_kind = dict.fromkeys((k.value for k in ActivityKind), 0)
        stale_by_kind = dict.fromkeys((k.value for k in ActivityKind), 0)
        for session in active:
            active_by_kind[session.kind.value] += 1
            if now - session.last_heartbeat > stale_after:
                stale_by_kind[session.kind.value] += 1

        warnings: list[str] = []
        stale_total = sum(stale_by_kind.values())
        if stale_total:
            warnings.append(
                f"{stale_total} session(s) without a heartbeat for over "
                f"{int(stale_after.total_seconds() // 60)} minutes"
            )
        if self.manager.pending_count:
            warnings.append(f"{self.manager.pending_count} completion(s) waiting to be persisted")

        return {
            "active": active_by_kind,
            "active_total": len(active),
            "active_users": len({s.user_id for s in active}),
            "stale": stale_by_kind,
            "stale_total": stale_total,
            "stale_after_minutes": int(stale_after.total_seconds() // 60),
            "pending_completions": self.manager.pending_count,
            "dispatcher_backlog": self.dispatcher.backlog,
            "warnings": warnings,
            "timestamp": now.isoformat(),
        }

    async def close(self) -> None:
        await self.dispatcher.close()
