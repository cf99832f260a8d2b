from __future__ import annotations

from pathlib import Path

import aiosqlite

from .schema import MigrationStep, MigrationTable, SchemaManager
from .utils import ConnectionProvider, coerce_text


QUOTES_SCHEMA_NAME = "quotes"
QUOTE_MAX_CHARS = 400

QUOTES_MIGRATIONS = MigrationTable(
    [
        MigrationStep(
            1,
            (
                """
                CREATE TABLE IF NOT EXISTS quotes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    content TEXT NOT NULL
                )
                """,
            ),
        ),
    ]
)


class QuoteRepository:
    """Stores and fetches quotes. Versioned separately from the core schema."""

    def __init__(self, db_path: Path | str, *, connections: ConnectionProvider | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.connections = connections or ConnectionProvider(self.db_path)
        self.schema = SchemaManager(self.connections)

    async def prepare(self) -> int:
        return await self.schema.ensure_schema(QUOTES_SCHEMA_NAME, QUOTES_MIGRATIONS)

    async def add_quote(self, raw: str | bytes) -> int:
        content = " ".join(coerce_text(raw).split())[:QUOTE_MAX_CHARS]
        if not content:
            raise ValueError("quote cannot be empty")

        async def _insert(db: aiosqlite.Connection) -> int:
            cursor = await db.execute("INSERT INTO quotes (content) VALUES (?)", (content,))
            return int(cursor.lastrowid or 0)

        return await self.connections.with_connection(_insert)

    async def get_quote(self, search_term: str | bytes | None = None) -> str | None:
        sql = "SELECT content FROM quotes"
        params: tuple[str, ...] = ()
        if search_term is not None:
            sql += " WHERE content LIKE ?"
            params = (f"%{coerce_text(search_term)}%",)
        sql += " ORDER BY RANDOM() LIMIT 1"

        async def _select(db: aiosqlite.Connection) -> str | None:
            async with db.execute(sql, params) as cursor:
                row = await cursor.fetchone()
            return None if row is None else str(row[0])

        return await self.connections.with_connection(_select)
