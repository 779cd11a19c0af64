"""
Sanction commands cog: slash commands for timed mutes and timed role changes.

The commands are thin: they check the invoker's permissions, build a request,
hand it to :class:`SanctionService`, and report the outcome ephemerally.
Expected failures (bad duration, existing sanction, nothing to revoke) arrive
as :class:`SanctionError` and are shown to the moderator as-is; anything else
is logged and answered with a generic error.

Quick usage example
    service = SanctionService(connection, DiscordEffectApplier(bot), app_config)
    sanction_cmds.setup(bot, service)
"""

from typing import Awaitable, Callable

import discord
from discord import Option
from discord.ext import commands

from sanctionkeeper.datatypes.discord_datatypes import GuildID, RoleID, UserID
from sanctionkeeper.datatypes.sanction_datatypes import (
    ReversalOutcome,
    ReversalRequest,
    SanctionKind,
    SanctionRecord,
    SanctionRequest,
    SanctionStatus,
)
from sanctionkeeper.errors import EffectFailed, SanctionError
from sanctionkeeper.services.sanction_service import SanctionService
from sanctionkeeper.util.duration import format_remaining
from sanctionkeeper.util.logger import get_logger

logger = get_logger("sanction_commands")

DEFAULT_REASON = "No reason provided."


def has_permissions(application_context: discord.ApplicationContext, **required_permissions: bool) -> bool:
    """Return True if the invoking member holds every named guild permission."""
    if not isinstance(application_context.author, discord.Member):
        return False
    permissions = application_context.author.guild_permissions
    return all(getattr(permissions, name, False) for name in required_permissions)


def describe_expiry(record: SanctionRecord) -> str:
    if record.expires_at is None:
        return "permanently"
    return f"until <t:{int(record.expires_at.timestamp())}:F>"


def describe_status(status: SanctionStatus) -> str:
    """Render a status query result for a moderator."""
    record = status.record
    lines = [
        f"**Action ID:** `{record.action_id}`",
        f"**Kind:** {record.kind}",
        f"**Reason:** {record.reason}",
        f"**Issued by:** <@{record.moderator_id}> at <t:{int(record.issued_at.timestamp())}:F>",
    ]
    if status.expires_at is None:
        lines.append("**Expires:** never")
    else:
        lines.append(f"**Expires:** <t:{int(status.expires_at.timestamp())}:F>")
        lines.append(f"**Remaining:** {format_remaining(status.remaining)}")
    if status.expired_unprocessed:
        lines.append("⚠️ Expired but not yet processed; it will be reversed by the next sweep.")
    lines.append(f"**Timer armed:** {'yes' if status.timer_armed else 'no'}")
    return "\n".join(lines)


class SanctionCommandsCog(commands.Cog):
    """Slash commands backed by the sanction scheduler."""

    def __init__(self, discord_bot_instance: discord.Bot, service: SanctionService) -> None:
        self.discord_bot_instance = discord_bot_instance
        self.service = service
        logger.info("Sanction commands cog loaded")

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _guard(
        self,
        ctx: discord.ApplicationContext,
        permission_name: str,
        target: discord.Member | None = None,
    ) -> bool:
        """Defer, then run the shared pre-checks. Replies and returns False on refusal."""
        await ctx.defer(ephemeral=True)

        if ctx.guild is None:
            await ctx.send_followup("This command must be used in a server.", ephemeral=True)
            return False
        if not has_permissions(ctx, **{permission_name: True}):
            await ctx.send_followup("You do not have permission to use this command.", ephemeral=True)
            return False
        if target is not None:
            if not isinstance(target, discord.Member):
                await ctx.send_followup("The specified user is not a member of this server.", ephemeral=True)
                return False
            if target.id == ctx.user.id:
                await ctx.send_followup("You cannot sanction yourself.", ephemeral=True)
                return False
        return True

    async def _respond(
        self,
        ctx: discord.ApplicationContext,
        action: Callable[[], Awaitable[str]],
    ) -> None:
        """Run ``action`` and send its text, translating failures into replies."""
        try:
            content = await action()
        except EffectFailed as exc:
            logger.warning("[COMMANDS] %s", exc)
            note = "The sanction was rolled back." if exc.compensated else "Please check the sanction manually."
            content = f"❌ Discord rejected the change. {note} (action id `{exc.record.action_id}`)"
        except SanctionError as exc:
            content = f"❌ {exc}"
        except Exception:
            logger.exception("[COMMANDS] Unexpected error in /%s", ctx.command.name if ctx.command else "?")
            content = "An error occurred while processing the command."
        await ctx.send_followup(content, ephemeral=True)

    async def _issue(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member,
        kind: SanctionKind,
        duration: str,
        reason: str,
        role: discord.Role | None = None,
    ) -> str:
        request = SanctionRequest(
            guild_id=GuildID.from_object(ctx.guild),
            user_id=UserID.from_object(user),
            moderator_id=UserID.from_object(ctx.user),
            kind=kind,
            reason=reason,
            duration=duration,
            metadata={"role_id": str(RoleID.from_object(role))} if role is not None else {},
        )
        record = await self.service.issue(request)
        if not record.active:
            return f"ℹ️ `{record.action_id}` was ended while it was being applied; {user.mention} is not sanctioned."
        return (
            f"✅ {kind} issued for {user.mention} {describe_expiry(record)}.\n"
            f"Action ID: `{record.action_id}`"
        )

    async def _revoke(
        self,
        ctx: discord.ApplicationContext,
        user: discord.Member,
        kind: SanctionKind,
        reason: str,
    ) -> str:
        request = ReversalRequest(
            guild_id=GuildID.from_object(ctx.guild),
            user_id=UserID.from_object(user),
            kind=kind,
            reason=reason,
            executor_id=UserID.from_object(ctx.user),
        )
        record, outcome = await self.service.revoke(request)
        if outcome is ReversalOutcome.ALREADY_INACTIVE:
            return f"ℹ️ `{record.action_id}` had already ended."
        if outcome is ReversalOutcome.EFFECT_FAILED:
            return f"⚠️ `{record.action_id}` is closed, but Discord rejected the change. Please fix it manually."
        return f"✅ Ended {kind} `{record.action_id}` for {user.mention}."

    # ------------------------------------------------------------------
    # Mutes
    # ------------------------------------------------------------------

    @commands.slash_command(name="mute", description="Mute a user for a duration.")
    async def mute(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to mute.", required=True),  # type: ignore
        duration: Option(str, "Duration (e.g. 30m, 1h, 1d, forever).", required=True),  # type: ignore
        reason: Option(str, "Reason for the mute.", default=DEFAULT_REASON),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "moderate_members", user):
            return
        await self._respond(ctx, lambda: self._issue(ctx, user, SanctionKind.MUTE, duration, reason))

    @commands.slash_command(name="unmute", description="Unmute a user before their mute expires.")
    async def unmute(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to unmute.", required=True),  # type: ignore
        reason: Option(str, "Reason for the unmute.", default=DEFAULT_REASON),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "moderate_members", user):
            return
        await self._respond(ctx, lambda: self._revoke(ctx, user, SanctionKind.MUTE, reason))

    @commands.slash_command(name="checkmute", description="Show the active mute of a user.")
    async def checkmute(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to check.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "moderate_members"):
            return

        async def action() -> str:
            status = await self.service.inspect(
                GuildID.from_object(ctx.guild), UserID.from_object(user), SanctionKind.MUTE
            )
            if status is None:
                return f"{user.mention} is not muted."
            return describe_status(status)

        await self._respond(ctx, action)

    # ------------------------------------------------------------------
    # Timed roles
    # ------------------------------------------------------------------

    @commands.slash_command(name="addrole", description="Give a user a role for a duration.")
    async def addrole(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to give the role to.", required=True),  # type: ignore
        role: Option(discord.Role, "The role to give.", required=True),  # type: ignore
        duration: Option(str, "Duration (e.g. 1h, 7d, forever).", default="forever"),  # type: ignore
        reason: Option(str, "Reason.", default=DEFAULT_REASON),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "manage_roles", user):
            return
        await self._respond(
            ctx, lambda: self._issue(ctx, user, SanctionKind.TIMED_ROLE_GRANT, duration, reason, role)
        )

    @commands.slash_command(name="removerole", description="Take a role from a user for a duration.")
    async def removerole(
        self,
        ctx: discord.ApplicationContext,
        user: Option(discord.Member, "The user to take the role from.", required=True),  # type: ignore
        role: Option(discord.Role, "The role to take.", required=True),  # type: ignore
        duration: Option(str, "Duration (e.g. 1h, 7d, forever).", default="forever"),  # type: ignore
        reason: Option(str, "Reason.", default=DEFAULT_REASON),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "manage_roles", user):
            return
        await self._respond(
            ctx, lambda: self._issue(ctx, user, SanctionKind.TIMED_ROLE_REVOKE, duration, reason, role)
        )

    # ------------------------------------------------------------------
    # Diagnostics and edits
    # ------------------------------------------------------------------

    @commands.slash_command(name="cleanupexpiredmutes", description="Reverse every expired sanction now.")
    async def cleanupexpiredmutes(self, ctx: discord.ApplicationContext) -> None:
        if not await self._guard(ctx, "administrator"):
            return

        async def action() -> str:
            report = await self.service.force_reconcile()
            text = (
                f"Scanned {report.scanned} active sanctions: {report.reversed} reversed, "
                f"{report.effect_failed} effect failures, {report.already_inactive} already handled."
            )
            if report.errors:
                text += f"\nErrors on: {', '.join(f'`{action_id}`' for action_id in report.errors)}"
            return text

        await self._respond(ctx, action)

    @commands.slash_command(name="reasonedit", description="Change the reason of a sanction.")
    async def reasonedit(
        self,
        ctx: discord.ApplicationContext,
        punishment_id: Option(str, "The action ID of the sanction.", required=True),  # type: ignore
        new_reason: Option(str, "The new reason.", required=True),  # type: ignore
    ) -> None:
        if not await self._guard(ctx, "moderate_members"):
            return

        async def action() -> str:
            record = await self.service.edit_reason(punishment_id, new_reason)
            return f"✅ Reason of `{record.action_id}` updated."

        await self._respond(ctx, action)


def setup(discord_bot_instance: discord.Bot, service: SanctionService) -> None:
    """Register the sanction commands with the bot."""
    discord_bot_instance.add_cog(SanctionCommandsCog(discord_bot_instance, service))
