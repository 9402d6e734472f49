"""
pulse.services.reconciliation_service — Stale Session Sweeper
==============================================================

Periodic job that bounds how long a dead connection can keep a session
open.

How it works:
    1. Retry completions that previously failed to persist.
    2. Ask the session manager to close every in-memory session whose last
       heartbeat is older than the grace window.  ``end_time`` is the last
       heartbeat, never the sweep time.
    3. Close *orphan* rows: ``active`` in the store but owned by nobody in
       memory (left behind by a crash before recovery ran).
    4. Run the forced reset pass so users idle across a day / month
       boundary read zero before their next event.

Every close goes through the conditional completion in
:meth:`CounterStore.record_completed_session`, so running the sweep twice,
or racing a genuine ``end``, never counts a session twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from pulse.constants import ensure_utc, utc_now
from pulse.database.engine import run_db
from pulse.engine.sessions import DEFAULT_GRACE, SessionManager
from pulse.errors import PersistenceError
from pulse.services.counter_store import CounterStore
from pulse.services.reset_scheduler import force_reset_all
from pulse.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class ReconciliationSweeper:
    """Closes stale sessions and applies due resets.

    ``manager`` is optional: without one (maintenance scripts, a process
    that does not own the gateway) only orphan rows and resets are handled.
    """

    def __init__(
        self,
        counters: CounterStore,
        sessions: SessionStore,
        manager: SessionManager | None = None,
        *,
        grace: timedelta = DEFAULT_GRACE,
    ) -> None:
        self.counters = counters
        self.sessions = sessions
        self.manager = manager
        self.grace = manager.grace if manager is not None else grace

    async def run_once(self, now: datetime | None = None) -> dict:
        """One sweep.

        Returns ``{"checked", "closed", "orphans_closed", "retried",
        "users_reset", "timestamp"}``.
        """
        now = ensure_utc(now or utc_now())
        checked = closed = retried = 0

        if self.manager is not None:
            retried = await self.manager.retry_pending()
            checked = len(self.manager.list_active())
            closed = await self.manager.sweep(now)

        orphans_closed, orphans_checked = await self._close_orphans(now)
        checked += orphans_checked

        try:
            users_reset = await run_db(force_reset_all, self.counters.engine, now)
        except PersistenceError:
            logger.exception("Forced reset pass failed")
            users_reset = 0

        summary = {
            "checked": checked,
            "closed": closed,
            "orphans_closed": orphans_closed,
            "retried": retried,
            "users_reset": users_reset,
            "timestamp": now.isoformat(),
        }
        if closed or orphans_closed or retried:
            logger.info("Sweep: %s", summary)
        else:
            logger.debug("Sweep: nothing stale (%d checked)", checked)
        return summary

    async def _close_orphans(self, now: datetime) -> tuple[int, int]:
        try:
            rows = await run_db(self.sessions.list_active)
        except PersistenceError:
            logger.exception("Could not list active sessions for orphan sweep")
            return 0, 0

        closed = checked = 0
        for session in rows:
            if self.manager is not None and self.manager.owns(session.id):
                continue
            checked += 1
            if now - session.last_heartbeat <= self.grace:
                continue
            session.end_time = max(session.last_heartbeat, session.start_time)
            try:
                if await run_db(self.counters.record_completed_session, session):
                    closed += 1
                    logger.info(
                        "Closed orphan %s session %s for user %s at %s",
                        session.kind, session.id, session.user_id,
                        session.end_time.isoformat(),
                    )
            except PersistenceError:
                logger.exception("Could not close orphan session %s", session.id)
        return closed, checked
