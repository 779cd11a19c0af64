"""
Scheduler cog: ties the sanction scheduler's lifecycle to the bot's.

Recovery needs a connected bot to apply reversals, so it runs on the first
``on_ready``. Later reconnects fire ``on_ready`` again but do not re-run it.

A member who leaves and rejoins loses their roles, so their active
sanctions are put back in force on ``on_member_join``.
"""

from __future__ import annotations

import discord
from discord.ext import commands

from sanctionkeeper.datatypes.discord_datatypes import GuildID, UserID
from sanctionkeeper.errors import StoreUnavailable
from sanctionkeeper.services.sanction_service import SanctionService
from sanctionkeeper.util.logger import get_logger

logger = get_logger("scheduler_cog")


class SanctionSchedulerCog(commands.Cog):
    """Starts recovery and the reconciliation sweep once the bot is ready."""

    def __init__(self, bot: discord.Bot, service: SanctionService) -> None:
        self.bot = bot
        self.service = service

    @commands.Cog.listener()
    async def on_ready(self) -> None:
        if self.service.started:
            return
        report = await self.service.start()
        if report is not None:
            logger.info(
                "[SCHEDULER] Ready: %d timers armed, %d overdue sanctions reversed, %d failed",
                report.scheduled, report.reversed, len(report.failed),
            )

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        try:
            report = await self.service.restore_member(GuildID.from_object(member.guild), UserID.from_object(member))
        except StoreUnavailable as exc:
            logger.error("[SCHEDULER] Could not restore sanctions of rejoining user %s: %s", member.id, exc)
            return
        if report.failed:
            logger.warning("[SCHEDULER] Sanctions %s of user %s could not be restored", report.failed, member.id)

    def cog_unload(self) -> None:
        self.bot.loop.create_task(self.service.shutdown())
        logger.info("[SCHEDULER] Stopped")


def setup(bot: discord.Bot, service: SanctionService) -> None:
    bot.add_cog(SanctionSchedulerCog(bot, service))
