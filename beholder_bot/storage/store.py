from __future__ import annotations

from pathlib import Path

import aiosqlite

from .membership import MembershipCache, MembershipMixin
from .schema import MigrationStep, MigrationTable, SchemaManager
from .utils import ConnectionProvider
from .watch import WatchMixin


CORE_SCHEMA_NAME = "core"

CORE_MIGRATIONS = MigrationTable(
    [
        MigrationStep(
            1,
            (
                """
                CREATE TABLE IF NOT EXISTS core_channels (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel TEXT NOT NULL UNIQUE,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS watch_channels (
                    channel TEXT PRIMARY KEY,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """,
            ),
        ),
    ]
)


class ChannelRepository(MembershipMixin, WatchMixin):
    """Desired channel membership plus the independent watch set, stored in SQLite."""

    def __init__(self, db_path: Path | str, *, connections: ConnectionProvider | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.connections = connections or ConnectionProvider(self.db_path)
        self.schema = SchemaManager(self.connections)
        self.membership_cache = MembershipCache()

    async def prepare(self) -> int:
        async def _enable_wal(db: aiosqlite.Connection) -> None:
            # Shared by the bot and the control process.
            await db.execute("PRAGMA journal_mode=WAL")

        await self.connections.with_connection(_enable_wal)
        return await self.schema.ensure_schema(CORE_SCHEMA_NAME, CORE_MIGRATIONS)

    async def ping(self) -> None:
        async def _ping(db: aiosqlite.Connection) -> None:
            await db.execute("SELECT 1")

        await self.connections.with_connection(_ping)
