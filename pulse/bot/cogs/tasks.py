"""
pulse.bot.cogs.tasks — Periodic Background Tasks
=================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Reconciliation sweep** — every ``sweep_interval_minutes`` (default 5):
  closes sessions silent past the grace window, closes orphan rows,
  retries failed completions and applies due day / month resets.
- **Periodic flush** — every ``flush_interval_minutes`` when non-zero:
  snapshots long-running sessions into the counters.

These tasks fire in the bot process so they act on the live tracker.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

if TYPE_CHECKING:
    from pulse.bot.core import PulseBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: PulseBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start task loops when the cog is loaded."""
        cfg = self.bot.cfg
        self.sweep_loop.change_interval(minutes=cfg.sweep_interval_minutes)
        self.sweep_loop.start()
        if cfg.flush_interval_minutes > 0:
            self.flush_loop.change_interval(minutes=cfg.flush_interval_minutes)
            self.flush_loop.start()

    async def cog_unload(self) -> None:
        """Cancel task loops on unload."""
        self.sweep_loop.cancel()
        self.flush_loop.cancel()

    # -------------------------------------------------------------------
    # Reconciliation sweep
    # -------------------------------------------------------------------
    @tasks.loop(minutes=5)
    async def sweep_loop(self) -> None:
        """Close stale sessions and apply due resets."""
        try:
            result = await self.bot.tracker.sweep()
            logger.info(
                "Sweep task complete: checked=%d closed=%d orphans=%d reset=%d",
                result["checked"], result["closed"],
                result["orphans_closed"], result["users_reset"],
            )
        except Exception:
            logger.exception("Sweep task failed", extra={"task": "sweep"})

    @sweep_loop.before_loop
    async def _wait_sweep(self) -> None:
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # Periodic flush
    # -------------------------------------------------------------------
    @tasks.loop(minutes=60)
    async def flush_loop(self) -> None:
        """Snapshot every open session into the counters."""
        try:
            flushed = await self.bot.tracker.flush()
            logger.info("Flush task complete: %d session(s)", flushed)
        except Exception:
            logger.exception("Flush task failed", extra={"task": "flush"})

    @flush_loop.before_loop
    async def _wait_flush(self) -> None:
        await self.bot.wait_until_ready()


async def setup(bot: PulseBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
