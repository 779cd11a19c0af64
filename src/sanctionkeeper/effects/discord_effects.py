"""
Effect applier that carries out sanctions against Discord through py-cord.

Every kind maps to a (forward, reversal) pair of role operations. Mutes also
disconnect the member from voice on the forward side. Errors are reported as
:class:`EffectOutcome` values; only programming errors escape.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, Tuple

import discord

from sanctionkeeper.datatypes.sanction_datatypes import EffectOutcome, SanctionKind, SanctionRecord
from sanctionkeeper.util.logger import get_logger

logger = get_logger("discord_effects")

UNKNOWN_MEMBER = 10007
UNKNOWN_ROLE = 10011

RoleOperation = Callable[[discord.Member, discord.abc.Snowflake, str], Awaitable[None]]


async def _add_role(member: discord.Member, role: discord.abc.Snowflake, reason: str) -> None:
    await member.add_roles(role, reason=reason)


async def _remove_role(member: discord.Member, role: discord.abc.Snowflake, reason: str) -> None:
    await member.remove_roles(role, reason=reason)


# kind -> (forward, reversal)
EFFECT_TABLE: Dict[SanctionKind, Tuple[RoleOperation, RoleOperation]] = {
    SanctionKind.MUTE: (_add_role, _remove_role),
    SanctionKind.TIMED_ROLE_GRANT: (_add_role, _remove_role),
    SanctionKind.TIMED_ROLE_REVOKE: (_remove_role, _add_role),
}


class DiscordEffectApplier:
    """
    Applies sanction effects to guild members.

    Args:
        bot: Connected bot used to resolve guilds and members.
    """

    def __init__(self, bot: discord.Bot) -> None:
        self._bot = bot

    async def apply_forward(self, record: SanctionRecord) -> EffectOutcome:
        forward, _ = EFFECT_TABLE[record.kind]
        outcome = await self._run(record, forward, f"{record.kind} issued: {record.reason}", "forward")
        if outcome is EffectOutcome.APPLIED and record.kind is SanctionKind.MUTE:
            await self._disconnect_voice(record)
        return outcome

    async def apply_reversal(self, record: SanctionRecord) -> EffectOutcome:
        _, reversal = EFFECT_TABLE[record.kind]
        return await self._run(record, reversal, f"{record.kind} {record.action_id} ended", "reversal")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _resolve_member(self, record: SanctionRecord) -> discord.Member | None:
        """
        Find the target member, from cache first.

        Returns None when the member has left. Raises ``LookupError`` if the
        bot cannot see the guild at all.
        """
        guild = self._bot.get_guild(record.guild_id.to_int())
        if guild is None:
            raise LookupError(f"guild {record.guild_id} is not available")

        member = guild.get_member(record.user_id.to_int())
        if member is not None:
            return member
        try:
            return await guild.fetch_member(record.user_id.to_int())
        except discord.NotFound:
            return None

    async def _run(
        self,
        record: SanctionRecord,
        operation: RoleOperation,
        audit_reason: str,
        stage: str,
    ) -> EffectOutcome:
        role_id = record.role_id
        if role_id is None:
            logger.error("[EFFECTS] %s has no role_id; cannot apply %s effect", record.action_id, stage)
            return EffectOutcome.FAILED

        try:
            member = await self._resolve_member(record)
        except LookupError as exc:
            logger.warning("[EFFECTS] %s %s effect failed: %s", record.action_id, stage, exc)
            return EffectOutcome.FAILED
        except discord.HTTPException as exc:
            logger.warning("[EFFECTS] Could not fetch member %s for %s: %s", record.user_id, record.action_id, exc)
            return EffectOutcome.FAILED

        if member is None:
            logger.info("[EFFECTS] User %s left guild %s; %s effect for %s is moot",
                        record.user_id, record.guild_id, stage, record.action_id)
            return EffectOutcome.MEMBER_ABSENT

        try:
            await operation(member, discord.Object(id=role_id.to_int()), audit_reason)
        except discord.NotFound as exc:
            if exc.code == UNKNOWN_MEMBER:
                return EffectOutcome.MEMBER_ABSENT
            if exc.code == UNKNOWN_ROLE and stage == "reversal" and operation is _remove_role:
                logger.info("[EFFECTS] Role %s no longer exists; nothing to remove for %s", role_id, record.action_id)
                return EffectOutcome.APPLIED
            logger.warning("[EFFECTS] %s effect for %s failed: %s", stage, record.action_id, exc)
            return EffectOutcome.FAILED
        except discord.Forbidden:
            logger.warning("[EFFECTS] Missing permissions for %s effect on %s (role %s)",
                           stage, record.action_id, role_id)
            return EffectOutcome.FAILED
        except discord.HTTPException as exc:
            logger.warning("[EFFECTS] %s effect for %s failed: %s", stage, record.action_id, exc)
            return EffectOutcome.FAILED

        logger.debug("[EFFECTS] Applied %s effect for %s (user %s, role %s)",
                     stage, record.action_id, record.user_id, role_id)
        return EffectOutcome.APPLIED

    async def _disconnect_voice(self, record: SanctionRecord) -> None:
        guild = self._bot.get_guild(record.guild_id.to_int())
        member = guild.get_member(record.user_id.to_int()) if guild is not None else None
        if member is None or member.voice is None or member.voice.channel is None:
            return
        try:
            await member.move_to(None, reason=f"Muted: {record.reason}")
        except discord.HTTPException as exc:
            logger.warning("[EFFECTS] Could not disconnect %s from voice: %s", record.user_id, exc)
