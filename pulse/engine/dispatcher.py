"""
pulse.engine.dispatcher — Per-Key Event Queues
===============================================

Gateway listeners must never wait on the database.  :meth:`submit` is
synchronous: it drops the event on the ``asyncio.Queue`` for its
``(user_id, kind)`` key and makes sure a worker task is draining that
queue.  One worker per key means events for a key are applied in arrival
order while different users (and different kinds of the same user) run
in parallel.

Idle workers exit after ``idle_timeout`` seconds so the task count tracks
the number of *recently active* keys, not every member ever seen.
"""

from __future__ import annotations

import asyncio
import logging

from pulse.engine.events import ActivityEvent, SessionKey
from pulse.engine.sessions import SessionManager

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Routes events to per-key worker tasks feeding a :class:`SessionManager`."""

    def __init__(self, manager: SessionManager, *, idle_timeout: float = 60.0) -> None:
        self.manager = manager
        self.idle_timeout = idle_timeout
        self._queues: dict[SessionKey, asyncio.Queue[ActivityEvent]] = {}
        self._workers: dict[SessionKey, asyncio.Task] = {}
        self._closed = False

    def submit(self, event: ActivityEvent) -> None:
        """Enqueue *event*; must be called from the running event loop."""
        if self._closed:
            logger.warning("Dispatcher closed; dropping %s %s for user %s",
                           event.kind, event.action, event.user_id)
            return
        key = event.key
        queue = self._queues.get(key)
        if queue is None:
            queue = self._queues[key] = asyncio.Queue()
        queue.put_nowait(event)
        worker = self._workers.get(key)
        if worker is None or worker.done():
            self._workers[key] = asyncio.get_running_loop().create_task(
                self._drain(key, queue), name=f"pulse-worker-{key[0]}-{key[1]}",
            )

    def submit_many(self, events: list[ActivityEvent]) -> None:
        for event in events:
            self.submit(event)

    async def _drain(self, key: SessionKey, queue: asyncio.Queue[ActivityEvent]) -> None:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
            except TimeoutError:
                # No await between the check and the removal: submit() cannot
                # interleave, so nothing is stranded in a dropped queue.
                if queue.empty():
                    self._queues.pop(key, None)
                    self._workers.pop(key, None)
                    return
                continue
            try:
                await self.manager.handle(event)
            except Exception:
                logger.exception(
                    "Failed to apply %s %s for user %s",
                    event.kind, event.action, event.user_id,
                )
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued event has been applied."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def close(self) -> None:
        """Drain what is queued, then stop all workers."""
        self._closed = True
        await self.join()
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()

    @property
    def backlog(self) -> int:
        return sum(q.qsize() for q in self._queues.values())
