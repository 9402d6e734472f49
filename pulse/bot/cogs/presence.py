"""
pulse.bot.cogs.presence — Gateway → PresenceSnapshot Adapter
=============================================================

Listens to presence, voice-state and membership gateway events, turns the
affected ``discord.Member`` into a :class:`PresenceSnapshot` and hands it
to the tracker.  Everything after that (diffing, sessions, counters) is
the engine's job.

Also runs the liveness loop: every ``heartbeat_interval_seconds`` each
tracked member with something open gets heartbeats, which is what keeps
the sweeper from closing sessions of users who simply did not change.
Heartbeats pause while the gateway is disconnected so the sweeper can
bound sessions the bot can no longer observe.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

import discord
from discord.ext import commands, tasks

from pulse.constants import utc_now
from pulse.engine.normalizer import PresenceSnapshot, RawActivity

if TYPE_CHECKING:
    from pulse.bot.core import PulseBot

logger = logging.getLogger(__name__)


def _raw_activity(activity) -> RawActivity:
    activity_type = getattr(activity, "type", None)
    type_value = getattr(activity_type, "value", activity_type)
    if isinstance(activity, discord.Spotify):
        return RawActivity(type=int(type_value), name="Spotify", details=activity.title, state=activity.artist)
    return RawActivity(
        type=int(type_value) if type_value is not None else -1,
        name=getattr(activity, "name", None),
        details=getattr(activity, "details", None),
        state=getattr(activity, "state", None),
    )


def snapshot_from_member(
    member: discord.Member,
    afk_channel_ids: set[int] | frozenset[int] = frozenset(),
    voice: discord.VoiceState | None = None,
    now: datetime | None = None,
) -> PresenceSnapshot:
    """Build a :class:`PresenceSnapshot` from a gateway member.

    *voice* overrides ``member.voice`` (voice-state events carry the new
    state explicitly).  Members in an AFK channel count as not in voice.
    """
    voice = voice if voice is not None else member.voice
    channel = voice.channel if voice is not None else None
    in_voice = channel is not None and channel.id not in afk_channel_ids
    return PresenceSnapshot(
        user_id=member.id,
        status=str(member.status),
        activities=tuple(_raw_activity(a) for a in (member.activities or ())),
        voice_channel=channel.name if in_voice else None,
        streaming=bool(in_voice and voice is not None and voice.self_stream),
        timestamp=now or utc_now(),
    )


class Presence(commands.Cog, name="Presence"):
    """Feeds gateway member state into the activity tracker."""

    def __init__(self, bot: PulseBot) -> None:
        self.bot = bot
        self._connected = False

    async def cog_load(self) -> None:
        self.liveness_loop.change_interval(seconds=self.bot.cfg.heartbeat_interval_seconds)
        self.liveness_loop.start()

    async def cog_unload(self) -> None:
        self.liveness_loop.cancel()

    def _tracks(self, member: discord.Member) -> bool:
        return not member.bot and member.guild.id == self.bot.cfg.guild_id

    # -------------------------------------------------------------------
    # Connection state
    # -------------------------------------------------------------------
    @commands.Cog.listener()
    async def on_ready(self) -> None:
        """Snapshot every member so sessions match the guild as it is now."""
        self._connected = True
        guild = self.bot.tracked_guild()
        if guild is None:
            return
        try:
            snapshots = [
                snapshot_from_member(m, self.bot.afk_channel_ids)
                for m in guild.members if not m.bot
            ]
            queued = self.bot.tracker.observe_all(snapshots)
            logger.info("Startup snapshot: %d members, %d events queued", len(snapshots), queued)
        except Exception:
            logger.exception("Startup snapshot failed")

    @commands.Cog.listener()
    async def on_resumed(self) -> None:
        self._connected = True

    @commands.Cog.listener()
    async def on_disconnect(self) -> None:
        self._connected = False
        logger.warning("Gateway disconnected; pausing liveness heartbeats")

    # -------------------------------------------------------------------
    # Gateway events
    # -------------------------------------------------------------------
    @commands.Cog.listener()
    async def on_presence_update(self, before: discord.Member, after: discord.Member) -> None:
        """Status or activity list changed."""
        if not self._tracks(after):
            return
        try:
            self.bot.tracker.observe(snapshot_from_member(after, self.bot.afk_channel_ids))
        except Exception:
            logger.exception("Error processing presence update for user %s", after.id)

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        """Join / leave / move / stream toggle."""
        if not self._tracks(member):
            return
        logger.debug(
            "Gateway event: VOICE_STATE %s (%s → %s)",
            member.name,
            getattr(before.channel, "name", "None"),
            getattr(after.channel, "name", "None"),
        )
        try:
            self.bot.tracker.observe(
                snapshot_from_member(member, self.bot.afk_channel_ids, voice=after)
            )
        except Exception:
            logger.exception("Error processing voice state update for user %s", member.id)

    @commands.Cog.listener()
    async def on_member_remove(self, member: discord.Member) -> None:
        """A departed member is treated as going offline, then forgotten."""
        if not self._tracks(member):
            return
        try:
            self.bot.tracker.observe(PresenceSnapshot(user_id=member.id, status="offline"))
            self.bot.tracker.forget(member.id)
            logger.info("Member left: %s (ID: %d)", member.display_name, member.id)
        except Exception:
            logger.exception("Error processing member_leave for %s", member.id)

    # -------------------------------------------------------------------
    # Liveness
    # -------------------------------------------------------------------
    @tasks.loop(seconds=60)
    async def liveness_loop(self) -> None:
        """Heartbeat every open session of every visible member."""
        if not self._connected:
            return
        guild = self.bot.tracked_guild()
        if guild is None:
            return
        try:
            now = utc_now()
            sent = 0
            for member in guild.members:
                if member.bot:
                    continue
                snapshot = snapshot_from_member(member, self.bot.afk_channel_ids, now=now)
                sent += self.bot.tracker.heartbeat(snapshot)
            logger.debug("Liveness: %d heartbeat(s) queued", sent)
        except Exception:
            logger.exception("Liveness loop failed")

    @liveness_loop.before_loop
    async def _wait_liveness(self) -> None:
        await self.bot.wait_until_ready()


async def setup(bot: PulseBot) -> None:
    await bot.add_cog(Presence(bot))
