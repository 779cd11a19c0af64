"""
SanctionService: wires the scheduler components together and is the only
object the command layer talks to.

Responsibilities:
- Build one store, id generator, timer registry, engine, recovery manager and
  sweep per process, from an injected connection, effect applier and config
- Startup (recovery then the sweep loop) and orderly shutdown
- Issue and revoke sanctions on behalf of commands
- Re-apply active sanctions when a member rejoins
- Diagnostics: force a sweep, inspect the status of a sanction
"""

from __future__ import annotations

import datetime
from dataclasses import replace
from typing import Callable, Optional

from sanctionkeeper.configuration.app_configuration import AppConfig
from sanctionkeeper.database.db_connection import ConnectionManager
from sanctionkeeper.datatypes.discord_datatypes import GuildID, UserID
from sanctionkeeper.datatypes.sanction_datatypes import (
    RecoveryReport,
    RejoinReport,
    ReversalOutcome,
    ReversalRequest,
    SanctionKind,
    SanctionRecord,
    SanctionRequest,
    SanctionStatus,
    SweepReport,
    utc_now,
)
from sanctionkeeper.effects.base import EffectApplier
from sanctionkeeper.errors import SanctionError, SanctionNotFound, StoreUnavailable
from sanctionkeeper.repositories.sanction_repo import SanctionRepo
from sanctionkeeper.scheduler.consistency_engine import ConsistencyEngine
from sanctionkeeper.scheduler.identifier_generator import ActionIdGenerator
from sanctionkeeper.scheduler.reconciliation import ReconciliationSweep
from sanctionkeeper.scheduler.recovery import RecoveryManager
from sanctionkeeper.scheduler.timer_registry import TimerRegistry
from sanctionkeeper.util.logger import get_logger

logger = get_logger("sanction_service")


class SanctionService:
    """
    Facade over the sanction scheduler.

    Args:
        connection: Open connection manager for the sanction database.
        effects: Applies forward and reversal effects on the platform.
        config: Application configuration (mute role, intervals, retry budget).
        clock: Wall clock shared by every component.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        effects: EffectApplier,
        config: AppConfig,
        clock: Callable[[], datetime.datetime] = utc_now,
    ) -> None:
        self._config = config
        self._clock = clock
        self.repo = SanctionRepo(connection)
        self.timers = TimerRegistry(clock=clock, grace_seconds=config.timer_fire_grace_seconds)
        self.id_generator = ActionIdGenerator(self.repo, max_attempts=config.id_generation_max_attempts)
        self.engine = ConsistencyEngine(self.repo, effects, self.timers, self.id_generator, clock)
        self.recovery = RecoveryManager(self.repo, self.engine, self.timers, clock)
        self.sweep = ReconciliationSweep(
            self.repo, self.engine, interval_seconds=config.sweep_interval_seconds, clock=clock
        )
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> Optional[RecoveryReport]:
        """
        Recover pending sanctions from the store and start the periodic sweep.

        Runs once; later calls return None. If the store is unavailable the
        recovery is skipped and the sweep loop picks the sanctions up later.
        """
        if self._started:
            return None
        self._started = True

        report: Optional[RecoveryReport] = None
        try:
            report = await self.recovery.recover_all()
        except StoreUnavailable as exc:
            logger.error("[SANCTION SERVICE] Recovery skipped, store unavailable: %s", exc)

        self.sweep.start()
        return report

    async def shutdown(self) -> None:
        """Stop the sweep loop and disarm every timer. Records are untouched."""
        await self.sweep.shutdown()
        await self.timers.shutdown()
        self._started = False
        logger.info("[SANCTION SERVICE] Shutdown complete")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def issue(self, request: SanctionRequest) -> SanctionRecord:
        """Issue a sanction. Mutes use the configured mute role unless one is given."""
        if request.kind is SanctionKind.MUTE and "role_id" not in request.metadata:
            mute_role = self._config.mute_role_id
            if mute_role is None:
                raise SanctionError("No mute role is configured (sanctions.mute_role_id)")
            request = replace(request, metadata={**request.metadata, "role_id": str(mute_role)})
        return await self.engine.issue(request)

    async def revoke(self, request: ReversalRequest) -> tuple[SanctionRecord, ReversalOutcome]:
        return await self.engine.revoke(request)

    async def restore_member(self, guild_id: GuildID, user_id: UserID) -> RejoinReport:
        """Re-apply the active sanctions of a member who rejoined the guild."""
        return await self.recovery.restore_member(guild_id, user_id)

    async def edit_reason(self, action_id: str, reason: str) -> SanctionRecord:
        """Replace the reason of any sanction, active or not."""
        action_id = action_id.strip()
        if not await self.repo.update_reason(action_id, reason):
            raise SanctionNotFound(f"No sanction with action id {action_id}")
        record = await self.repo.find_one(action_id=action_id)
        if record is None:
            raise SanctionNotFound(f"No sanction with action id {action_id}")
        logger.info("[SANCTION SERVICE] Reason of %s changed", action_id)
        return record

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def force_reconcile(self) -> SweepReport:
        """Run one reconciliation sweep now."""
        logger.info("[SANCTION SERVICE] Manual reconciliation requested")
        return await self.sweep.sweep_once()

    async def inspect(self, guild_id: GuildID, user_id: UserID, kind: SanctionKind) -> Optional[SanctionStatus]:
        """Status of the user's active sanction of ``kind``, or None if there is none."""
        record = await self.repo.find_one(guild_id=guild_id, user_id=user_id, kind=kind, active=True)
        return self._status(record) if record is not None else None

    async def inspect_action(self, action_id: str) -> Optional[SanctionStatus]:
        """Status of any sanction by action id, or None if unknown."""
        record = await self.repo.find_one(action_id=action_id.strip())
        return self._status(record) if record is not None else None

    def _status(self, record: SanctionRecord) -> SanctionStatus:
        now = self._clock()
        return SanctionStatus(
            record=record,
            expires_at=record.expires_at,
            remaining=record.remaining(now),
            expired_unprocessed=record.active and record.is_expired(now),
            timer_armed=self.timers.is_armed(record.action_id),
        )
