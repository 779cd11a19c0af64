"""
Persistent storage for sanction records (the ``sanctions`` table).

Timestamps are stored as INTEGER unix milliseconds (UTC) so expiry
comparisons need no string parsing or timezone handling. ``metadata`` is a
JSON object. Rows are never deleted; an inactive row is the audit trail.

Every driver failure is re-raised as :class:`StoreUnavailable` so callers deal
with one error type regardless of what went wrong underneath.
"""

from __future__ import annotations

import datetime
import json
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sanctionkeeper.database.db_connection import ConnectionManager
from sanctionkeeper.datatypes.discord_datatypes import GuildID, UserID
from sanctionkeeper.datatypes.sanction_datatypes import SanctionKind, SanctionRecord
from sanctionkeeper.errors import DuplicateActionId, SanctionConflict, StoreUnavailable
from sanctionkeeper.util.logger import get_logger

logger = get_logger("sanction_repo")

_COLUMNS = (
    "action_id, guild_id, user_id, moderator_id, kind, reason, "
    "duration, issued_at, expires_at, active, metadata"
)

_FILTER_COLUMNS = {
    "action_id": "action_id",
    "guild_id": "guild_id",
    "user_id": "user_id",
    "kind": "kind",
    "active": "active",
}


def to_millis(moment: Optional[datetime.datetime]) -> Optional[int]:
    """Convert an aware datetime to unix milliseconds (None passes through)."""
    if moment is None:
        return None
    return int(round(moment.timestamp() * 1000))


def from_millis(value: Optional[int]) -> Optional[datetime.datetime]:
    """Convert unix milliseconds back to an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    return datetime.datetime.fromtimestamp(value / 1000, tz=datetime.timezone.utc)


def _filter_value(key: str, value: Any) -> Any:
    if key == "active":
        return 1 if value else 0
    if isinstance(value, SanctionKind):
        return value.value
    return str(value)


def row_to_record(row: Any) -> SanctionRecord:
    """Build a :class:`SanctionRecord` from a ``sanctions`` row."""
    metadata = json.loads(row["metadata"]) if row["metadata"] else {}
    return SanctionRecord(
        action_id=row["action_id"],
        guild_id=GuildID(row["guild_id"]),
        user_id=UserID(row["user_id"]),
        moderator_id=UserID(row["moderator_id"]),
        kind=SanctionKind(row["kind"]),
        reason=row["reason"],
        duration=row["duration"],
        issued_at=from_millis(row["issued_at"]),
        expires_at=from_millis(row["expires_at"]),
        active=bool(row["active"]),
        metadata=metadata if isinstance(metadata, dict) else {},
    )


class SanctionRepo:
    """Async CRUD over the ``sanctions`` table through a shared connection manager."""

    def __init__(self, connection: ConnectionManager) -> None:
        self._connection = connection

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (sqlite3.Error, RuntimeError, OSError, ValueError) as exc:
            logger.error("[SANCTION STORE] %s failed: %s", operation, exc)
            raise StoreUnavailable(operation, exc) from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, record: SanctionRecord) -> SanctionRecord:
        """
        Insert a new record.

        Raises:
            DuplicateActionId: The action id is already taken.
            SanctionConflict: The user already has an active record of this kind.
            StoreUnavailable: Any other store failure.
        """
        try:
            async with self._connection.transaction() as conn:
                await conn.execute(
                    f"INSERT INTO sanctions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.action_id,
                        str(record.guild_id),
                        str(record.user_id),
                        str(record.moderator_id),
                        record.kind.value,
                        record.reason,
                        record.duration,
                        to_millis(record.issued_at),
                        to_millis(record.expires_at),
                        1 if record.active else 0,
                        json.dumps(record.metadata),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise self._integrity_error(record, exc) from exc
        except (sqlite3.Error, RuntimeError, OSError, ValueError) as exc:
            logger.error("[SANCTION STORE] create failed for %s: %s", record.action_id, exc)
            raise StoreUnavailable("create", exc) from exc

        logger.debug(
            "[SANCTION STORE] Created %s %s for user %s (expires_at=%s)",
            record.kind, record.action_id, record.user_id, record.expires_at,
        )
        return record

    @staticmethod
    def _integrity_error(record: SanctionRecord, cause: sqlite3.IntegrityError) -> Exception:
        message = str(cause)
        if "sanctions.action_id" in message:
            return DuplicateActionId(record.action_id)
        return SanctionConflict(str(record.user_id), record.kind.value)

    async def conditional_deactivate(self, action_id: str) -> Optional[SanctionRecord]:
        """
        Set ``active = 0`` only if the record is currently active.

        The update and the read-back run in one serialised transaction, so
        among concurrent callers for the same id exactly one gets the record.

        Returns:
            SanctionRecord | None: The record (now inactive) if this call flipped
            the flag, otherwise None.
        """
        async with self._guard("conditional_deactivate"):
            async with self._connection.transaction() as conn:
                cursor = await conn.execute(
                    "UPDATE sanctions SET active = 0 WHERE action_id = ? AND active = 1",
                    (action_id,),
                )
                if cursor.rowcount != 1:
                    return None
                async with conn.execute(
                    f"SELECT {_COLUMNS} FROM sanctions WHERE action_id = ?", (action_id,)
                ) as select_cursor:
                    row = await select_cursor.fetchone()

        return row_to_record(row) if row is not None else None

    async def update_metadata(self, action_id: str, patch: Dict[str, Any]) -> Optional[SanctionRecord]:
        """Merge ``patch`` into the record's metadata. Returns the updated record or None."""
        async with self._guard("update_metadata"):
            async with self._connection.transaction() as conn:
                async with conn.execute(
                    "SELECT metadata FROM sanctions WHERE action_id = ?", (action_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    return None
                merged = json.loads(row["metadata"] or "{}")
                merged.update(patch)
                await conn.execute(
                    "UPDATE sanctions SET metadata = ? WHERE action_id = ?",
                    (json.dumps(merged), action_id),
                )
        return await self.find_one(action_id=action_id)

    async def update_reason(self, action_id: str, reason: str) -> bool:
        """Replace the free-text reason. Returns True if a record was updated."""
        async with self._guard("update_reason"):
            async with self._connection.transaction() as conn:
                cursor = await conn.execute(
                    "UPDATE sanctions SET reason = ? WHERE action_id = ?", (reason, action_id)
                )
                return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_one(self, **filters: Any) -> Optional[SanctionRecord]:
        """
        Return the newest record matching every given filter, or None.

        Supported filters: ``action_id``, ``guild_id``, ``user_id``, ``kind``, ``active``.
        """
        unknown = set(filters) - set(_FILTER_COLUMNS)
        if unknown:
            raise TypeError(f"Unsupported sanction filter(s): {', '.join(sorted(unknown))}")

        clauses = [f"{_FILTER_COLUMNS[key]} = ?" for key in filters]
        params = [_filter_value(key, value) for key, value in filters.items()]
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self._guard("find_one"):
            async with self._connection.read() as conn:
                async with conn.execute(
                    f"SELECT {_COLUMNS} FROM sanctions {where} ORDER BY issued_at DESC LIMIT 1",
                    params,
                ) as cursor:
                    row = await cursor.fetchone()

        return row_to_record(row) if row is not None else None

    async def find_all_active(self, kinds: Iterable[SanctionKind]) -> List[SanctionRecord]:
        """Return every active record of the given kinds, soonest expiry first."""
        kind_values = [kind.value for kind in kinds]
        if not kind_values:
            return []
        placeholders = ", ".join("?" for _ in kind_values)

        async with self._guard("find_all_active"):
            async with self._connection.read() as conn:
                async with conn.execute(
                    f"SELECT {_COLUMNS} FROM sanctions WHERE active = 1 AND kind IN ({placeholders}) "
                    "ORDER BY expires_at IS NULL, expires_at",
                    kind_values,
                ) as cursor:
                    rows = await cursor.fetchall()

        records: List[SanctionRecord] = []
        for row in rows:
            try:
                records.append(row_to_record(row))
            except (ValueError, TypeError, json.JSONDecodeError) as exc:
                logger.error("[SANCTION STORE] Skipping unreadable record %s: %s", row["action_id"], exc)
        return records

    async def find_active_for_member(self, guild_id: GuildID, user_id: UserID) -> List[SanctionRecord]:
        """Return every active record of one member in one guild, oldest first."""
        async with self._guard("find_active_for_member"):
            async with self._connection.read() as conn:
                async with conn.execute(
                    f"SELECT {_COLUMNS} FROM sanctions WHERE active = 1 AND guild_id = ? AND user_id = ? "
                    "ORDER BY issued_at",
                    (str(guild_id), str(user_id)),
                ) as cursor:
                    rows = await cursor.fetchall()
        return [row_to_record(row) for row in rows]

    async def exists(self, action_id: str) -> bool:
        """Return True if any record (active or not) uses ``action_id``."""
        async with self._guard("exists"):
            async with self._connection.read() as conn:
                async with conn.execute(
                    "SELECT 1 FROM sanctions WHERE action_id = ? LIMIT 1", (action_id,)
                ) as cursor:
                    return await cursor.fetchone() is not None

    async def ping(self) -> None:
        """Cheap round-trip used to confirm the store is healthy before recovery."""
        async with self._guard("ping"):
            async with self._connection.read() as conn:
                async with conn.execute("SELECT 1") as cursor:
                    await cursor.fetchone()
