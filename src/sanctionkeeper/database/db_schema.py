"""
Database schema initialization and version tracking for the sanction store.
"""

import aiosqlite
from sanctionkeeper.util.logger import get_logger

logger = get_logger("database_schema")

SCHEMA_VERSION = 1


class SchemaManager:
    """Creates the sanction tables and indexes. Every statement is idempotent."""

    @staticmethod
    async def initialize_schema(db: aiosqlite.Connection) -> None:
        """
        Create or update all tables and indexes, then commit.

        Args:
            db: Open database connection
        """
        await SchemaManager._create_tables(db)
        await SchemaManager._create_indexes(db)
        await SchemaManager._update_schema_version(db)
        await db.commit()
        logger.info("[SCHEMA] Database schema initialized (version %d)", SCHEMA_VERSION)

    @staticmethod
    async def _create_tables(db: aiosqlite.Connection) -> None:
        # action_id is the primary key: the store-level uniqueness guarantee
        # behind the identifier generator's probe.
        await db.execute("""
            CREATE TABLE IF NOT EXISTS sanctions (
                action_id TEXT PRIMARY KEY,
                guild_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                moderator_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                reason TEXT NOT NULL,
                duration TEXT,
                issued_at INTEGER NOT NULL,
                expires_at INTEGER,
                active INTEGER NOT NULL DEFAULT 1 CHECK (active IN (0, 1)),
                metadata TEXT NOT NULL DEFAULT '{}'
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

    @staticmethod
    async def _create_indexes(db: aiosqlite.Connection) -> None:
        # At most one active sanction per (guild, user, kind).
        await db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_sanctions_one_active "
            "ON sanctions(guild_id, user_id, kind) WHERE active = 1"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_sanctions_active_kind "
            "ON sanctions(kind, expires_at) WHERE active = 1"
        )
        await db.execute("CREATE INDEX IF NOT EXISTS idx_sanctions_user ON sanctions(user_id, kind)")

    @staticmethod
    async def _update_schema_version(db: aiosqlite.Connection) -> None:
        await db.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
