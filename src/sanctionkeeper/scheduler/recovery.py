"""
Startup recovery: rebuild the timer registry from persisted sanctions.

Timers live only in memory, so after a restart every active sanction is
re-read from the store. Expired ones are reversed at once, the rest get a
fresh timer, permanent ones are left alone.

The same store replay runs for a single member when they rejoin a guild.
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Callable, Iterable

from sanctionkeeper.datatypes.discord_datatypes import GuildID, UserID
from sanctionkeeper.datatypes.sanction_datatypes import (
    SCHEDULED_KINDS,
    EffectOutcome,
    RecoveryReport,
    RejoinReport,
    ReversalOutcome,
    SanctionKind,
    utc_now,
)
from sanctionkeeper.repositories.sanction_repo import SanctionRepo
from sanctionkeeper.scheduler.consistency_engine import ConsistencyEngine
from sanctionkeeper.scheduler.timer_registry import ScheduleResult, TimerRegistry
from sanctionkeeper.util.logger import get_logger

logger = get_logger("recovery")


class RecoveryManager:
    """Replays the store into the timer registry once per process start."""

    def __init__(
        self,
        repo: SanctionRepo,
        engine: ConsistencyEngine,
        timers: TimerRegistry,
        clock: Callable[[], datetime.datetime] = utc_now,
        kinds: Iterable[SanctionKind] = SCHEDULED_KINDS,
    ) -> None:
        self._repo = repo
        self._engine = engine
        self._timers = timers
        self._clock = clock
        self._kinds = tuple(kinds)

    async def recover_all(self) -> RecoveryReport:
        """
        Re-arm or reverse every active sanction.

        A failure on one record is logged with its action id and recorded in
        the report; the scan continues with the next record.

        Raises:
            StoreUnavailable: The store failed its health check or the initial scan.
        """
        await self._repo.ping()
        records = await self._repo.find_all_active(self._kinds)
        now = self._clock()
        report = RecoveryReport()
        logger.info("[RECOVERY] Found %d active sanctions", len(records))

        for record in records:
            try:
                if record.is_permanent:
                    report.skipped_permanent += 1
                elif record.is_expired(now):
                    outcome = await self._engine.reverse(record)
                    if outcome is ReversalOutcome.REVERSED:
                        report.reversed += 1
                    elif outcome is ReversalOutcome.EFFECT_FAILED:
                        report.failed.append(record.action_id)
                else:
                    result = await self._timers.schedule(record)
                    if result is ScheduleResult.ARMED:
                        report.scheduled += 1
                    elif result is ScheduleResult.FIRED_INLINE:
                        report.reversed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[RECOVERY] Failed to recover %s", record.action_id)
                report.failed.append(record.action_id)

        logger.info(
            "[RECOVERY] Done: %d scheduled, %d reversed, %d permanent, %d failed",
            report.scheduled, report.reversed, report.skipped_permanent, len(report.failed),
        )
        return report

    async def restore_member(self, guild_id: GuildID, user_id: UserID) -> RejoinReport:
        """
        Put a rejoining member's active sanctions back in force.

        Leaving the guild drops the member's roles, so each unexpired sanction
        gets its forward effect applied again. Sanctions that expired while the
        member was away are reversed instead.

        Raises:
            StoreUnavailable: The member's sanctions could not be read.
        """
        records = await self._repo.find_active_for_member(guild_id, user_id)
        now = self._clock()
        report = RejoinReport()

        for record in records:
            if record.kind not in self._kinds:
                continue
            try:
                if record.is_expired(now):
                    outcome = await self._engine.reverse(record)
                    if outcome is ReversalOutcome.EFFECT_FAILED:
                        report.failed.append(record.action_id)
                    elif outcome is ReversalOutcome.REVERSED:
                        report.reversed.append(record.action_id)
                else:
                    effect = await self._engine.reinstate(record)
                    if effect is EffectOutcome.APPLIED:
                        report.reinstated.append(record.action_id)
                    elif effect is not None:
                        report.failed.append(record.action_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[RECOVERY] Failed to restore %s for rejoining user %s", record.action_id, user_id)
                report.failed.append(record.action_id)

        if records:
            logger.info(
                "[RECOVERY] User %s rejoined guild %s: %d reinstated, %d reversed, %d failed",
                user_id, guild_id, len(report.reinstated), len(report.reversed), len(report.failed),
            )
        return report
