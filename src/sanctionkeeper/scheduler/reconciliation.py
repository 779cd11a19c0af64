"""
Periodic reconciliation sweep.

Safety net for timers that never fired: lost with a crashed process, started
without recovery, or thrown off by a host clock jump. Every interval the sweep
reads all active sanctions and reverses the ones already past expiry. Because
``reverse`` is conditional it is safe alongside live timers and manual commands.
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Callable, Iterable

from sanctionkeeper.datatypes.sanction_datatypes import (
    SCHEDULED_KINDS,
    ReversalOutcome,
    SanctionKind,
    SweepReport,
    utc_now,
)
from sanctionkeeper.repositories.sanction_repo import SanctionRepo
from sanctionkeeper.scheduler.consistency_engine import ConsistencyEngine
from sanctionkeeper.util.logger import get_logger

logger = get_logger("reconciliation")


class ReconciliationSweep:
    """
    Scans the store for expired-but-active sanctions on a fixed interval.

    Args:
        repo: Sanction store.
        engine: Consistency engine used to reverse each expired record.
        interval_seconds: Delay between two sweeps of the background loop.
        clock: Wall clock returning aware UTC datetimes.
        kinds: Sanction kinds the sweep is responsible for.
    """

    def __init__(
        self,
        repo: SanctionRepo,
        engine: ConsistencyEngine,
        interval_seconds: float = 3600,
        clock: Callable[[], datetime.datetime] = utc_now,
        kinds: Iterable[SanctionKind] = SCHEDULED_KINDS,
    ) -> None:
        self._repo = repo
        self._engine = engine
        self._interval = interval_seconds
        self._clock = clock
        self._kinds = tuple(kinds)
        self._task: asyncio.Task | None = None
        self._sweep_lock = asyncio.Lock()

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> SweepReport:
        """
        Reverse every active sanction whose expiry has passed.

        Sweeps never overlap; a second caller waits for the running one.

        Raises:
            StoreUnavailable: The active sanctions could not be read.
        """
        async with self._sweep_lock:
            records = await self._repo.find_all_active(self._kinds)
            now = self._clock()
            report = SweepReport(scanned=len(records))

            for record in records:
                if not record.is_expired(now):
                    continue
                try:
                    outcome = await self._engine.reverse(record)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("[SWEEP] Failed to reverse %s", record.action_id)
                    report.errors.append(record.action_id)
                    continue

                if outcome is ReversalOutcome.REVERSED:
                    logger.info("[SWEEP] Reversed missed expiry of %s (expired %s)", record.action_id, record.expires_at)
                    report.reversed += 1
                elif outcome is ReversalOutcome.EFFECT_FAILED:
                    report.effect_failed += 1
                else:
                    report.already_inactive += 1

        if report.processed or report.errors:
            logger.info(
                "[SWEEP] Scanned %d: %d reversed, %d effect failures, %d already inactive, %d errors",
                report.scanned, report.reversed, report.effect_failed, report.already_inactive, len(report.errors),
            )
        else:
            logger.debug("[SWEEP] Scanned %d active sanctions; nothing expired", report.scanned)
        return report

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def _run_loop(self) -> None:
        """Sleep one interval, sweep, repeat."""
        logger.info("[SWEEP] Starting periodic sweep (interval=%.1fs)", self._interval)
        try:
            while True:
                await asyncio.sleep(self._interval)
                try:
                    await self.sweep_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("[SWEEP] Sweep failed: %s", exc)
        except asyncio.CancelledError:
            logger.info("[SWEEP] Periodic sweep cancelled")
            raise

    def start(self) -> None:
        """Start the background sweep task if not already running."""
        if self.is_running:
            logger.warning("[SWEEP] Sweep task already running")
            return
        self._task = asyncio.create_task(self._run_loop(), name="sanction-reconciliation-sweep")

    async def shutdown(self) -> None:
        """Stop the background task and wait for it to finish."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("[SWEEP] Sweep shutdown complete")
