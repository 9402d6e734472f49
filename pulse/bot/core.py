"""
pulse.bot.core — Bot Instance & Cog Loader
===========================================

Defines :class:`PulseBot`, a ``commands.Bot`` subclass that:

1. Stores the shared config (``bot.cfg``), DB engine (``bot.engine``) and
   the :class:`~pulse.services.tracker.ActivityTracker` (``bot.tracker``)
   so every Cog can reach them.
2. Loads every Cog listed in :data:`EXTENSIONS`.
3. Recovers sessions left active by the previous process before the
   gateway connects.
4. Optionally serves the HTTP API on the same event loop, sharing the
   live tracker (``api_port`` in ``config.yaml``).

The bot holds no tracking logic of its own; the cogs translate gateway
objects into :class:`~pulse.engine.normalizer.PresenceSnapshot` values.
"""

from __future__ import annotations

import asyncio
import logging

import discord
from discord.ext import commands
from sqlalchemy import Engine

from pulse.config import PulseConfig
from pulse.services.tracker import ActivityTracker

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "pulse.bot.cogs.presence",
    "pulse.bot.cogs.tasks",
]


class PulseBot(commands.Bot):
    """Custom Bot subclass that carries project-wide state.

    Parameters
    ----------
    cfg:
        The parsed :class:`PulseConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    tracker:
        Pre-built tracker; one is created around *engine* if omitted.
    """

    def __init__(
        self,
        cfg: PulseConfig,
        engine: Engine,
        tracker: ActivityTracker | None = None,
    ) -> None:
        # Privileged intents (must enable in Developer Portal):
        #   GUILD_PRESENCES — status and activity list (games, Spotify)
        #   GUILD_MEMBERS   — member cache for the startup snapshot
        intents = discord.Intents.default()
        intents.presences = True
        intents.members = True
        intents.voice_states = True

        super().__init__(
            command_prefix=commands.when_mentioned,
            intents=intents,
            description=f"{cfg.community_name} activity tracker",
        )

        self.cfg = cfg
        self.engine = engine
        self.tracker = tracker or ActivityTracker(engine, grace=cfg.grace)

        # Filled in on_ready; members there count as not in voice
        self.afk_channel_ids: set[int] = set()
        self._api_task: asyncio.Task | None = None

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Called once before the bot connects to Discord.

        Recovers open sessions, loads the Cog extensions, then starts the
        in-process API if configured.  A broken Cog is logged and skipped.
        """
        recovered = await self.tracker.start()
        logger.info("Session recovery: %d active session(s) adopted", recovered)

        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

        if self.cfg.api_port:
            self._api_task = asyncio.create_task(self._serve_api(), name="pulse-api")

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info("Logged in as %s (ID: %s)", self.user.name, self.user.id)
        self._detect_afk_channels()

    async def close(self) -> None:
        """Graceful shutdown: drain queued events, stop the API."""
        logger.info("Bot shutting down…")
        await self.tracker.close()
        if self._api_task is not None:
            self._api_task.cancel()
        await super().close()

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------
    def tracked_guild(self) -> discord.Guild | None:
        return self.get_guild(self.cfg.guild_id)

    def _detect_afk_channels(self) -> None:
        """Auto-detect Discord's built-in AFK channel."""
        guild = self.tracked_guild()
        if guild is None:
            logger.warning("Tracked guild %d not found", self.cfg.guild_id)
            return
        self.afk_channel_ids = {guild.afk_channel.id} if guild.afk_channel else set()
        if guild.afk_channel:
            logger.info(
                "Detected AFK channel: #%s (ID: %d)",
                guild.afk_channel.name, guild.afk_channel.id,
            )

    async def _serve_api(self) -> None:
        import uvicorn

        from pulse.api.main import create_app

        config = uvicorn.Config(
            create_app(self.tracker),
            host="0.0.0.0",
            port=self.cfg.api_port,
            log_config=None,
        )
        server = uvicorn.Server(config)
        logger.info("Serving Pulse API on port %d", self.cfg.api_port)
        try:
            await server.serve()
        except Exception:
            logger.exception("Pulse API stopped unexpectedly")
