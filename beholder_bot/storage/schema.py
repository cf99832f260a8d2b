from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterable, Sequence

import aiosqlite

from ..errors import SchemaMismatchError
from .utils import ConnectionProvider


logger = logging.getLogger("beholder_bot")


@dataclass(frozen=True, slots=True)
class MigrationStep:
    version: int
    statements: tuple[str, ...]

    def __post_init__(self) -> None:
        if isinstance(self.version, bool) or not isinstance(self.version, int) or self.version < 1:
            raise ValueError(f"Migration version must be a positive integer, got {self.version!r}")
        if isinstance(self.statements, (str, bytes)):
            raise ValueError(f"Migration v{self.version} statements must be a sequence of SQL strings, not one string")
        statements = tuple(self.statements)
        if not statements:
            raise ValueError(f"Migration v{self.version} has no statements")
        for statement in statements:
            if not isinstance(statement, str) or not statement.strip():
                raise ValueError(f"Migration v{self.version} has an empty or non-text statement: {statement!r}")
        object.__setattr__(self, "statements", statements)


class MigrationTable:
    """Ordered migration steps for one logical schema."""

    def __init__(self, steps: Iterable[MigrationStep]) -> None:
        ordered = tuple(steps)
        if not ordered:
            raise ValueError("Migration table must contain at least one step")
        previous = 0
        for step in ordered:
            if step.version <= previous:
                raise ValueError(
                    f"Migration versions must be strictly increasing (v{step.version} follows v{previous})"
                )
            previous = step.version
        self.steps = ordered

    @property
    def latest_version(self) -> int:
        return self.steps[-1].version

    def pending(self, after_version: int) -> tuple[MigrationStep, ...]:
        return tuple(step for step in self.steps if step.version > after_version)

    def __len__(self) -> int:
        return len(self.steps)


class SchemaManager:
    META_TABLE = "schema_meta"

    def __init__(self, connections: ConnectionProvider) -> None:
        self.connections = connections

    async def ensure_schema(
        self,
        schema_name: str,
        migrations: MigrationTable | Sequence[MigrationStep],
    ) -> int:
        """Bring ``schema_name`` up to the newest step in ``migrations``.

        Returns the number of statements executed; zero when the stored marker
        already matches. Each step commits together with its marker, so a failed
        run resumes from the last recorded version next time.
        """
        table = migrations if isinstance(migrations, MigrationTable) else MigrationTable(migrations)
        return await self.connections.with_connection(
            lambda db: self._ensure_schema(db, schema_name, table)
        )

    async def get_version(self, schema_name: str) -> int | None:
        async def _read(db: aiosqlite.Connection) -> int | None:
            await self._ensure_meta_table(db)
            return await self._read_marker(db, schema_name)

        return await self.connections.with_connection(_read)

    async def _ensure_schema(self, db: aiosqlite.Connection, schema_name: str, table: MigrationTable) -> int:
        await self._ensure_meta_table(db)
        stored = await self._read_marker(db, schema_name)
        latest = table.latest_version

        if stored is not None and stored > latest:
            raise SchemaMismatchError(schema_name, stored, latest)
        if stored == latest:
            logger.debug("Schema '%s' is up to date (v%s)", schema_name, latest)
            return 0

        executed = 0
        for step in table.pending(stored or 0):
            executed += await self.connections.with_transaction(
                db,
                lambda conn, step=step: self._apply_step(conn, schema_name, step),
                immediate=True,
            )
        logger.info("Schema '%s' migrated from v%s to v%s", schema_name, stored or 0, latest)
        return executed

    async def _has_meta_table(self, db: aiosqlite.Connection) -> bool:
        async with db.execute(
            """
            SELECT 1
            FROM sqlite_master
            WHERE type = 'table'
              AND name = ?
            LIMIT 1
            """,
            (self.META_TABLE,),
        ) as cursor:
            row = await cursor.fetchone()
        return bool(row)

    async def _ensure_meta_table(self, db: aiosqlite.Connection) -> None:
        if await self._has_meta_table(db):
            return
        try:
            await db.execute(
                f"""
                CREATE TABLE {self.META_TABLE} (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
        except aiosqlite.OperationalError:
            # Another process may have created it between the check and the create.
            if not await self._has_meta_table(db):
                raise
            logger.debug("%s was created concurrently; continuing", self.META_TABLE)

    async def _read_marker(self, db: aiosqlite.Connection, schema_name: str) -> int | None:
        async with db.execute(
            f"SELECT value FROM {self.META_TABLE} WHERE key = ?",
            (schema_name,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return int(row[0])

    async def _write_marker(self, db: aiosqlite.Connection, schema_name: str, version: int) -> None:
        await db.execute(
            f"""
            INSERT INTO {self.META_TABLE} (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (schema_name, int(version), int(time.time())),
        )

    async def _apply_step(self, db: aiosqlite.Connection, schema_name: str, step: MigrationStep) -> int:
        # Re-read under the write lock: a concurrent process may already have applied this step.
        current = await self._read_marker(db, schema_name)
        if current is not None and current >= step.version:
            return 0
        for statement in step.statements:
            await db.execute(statement)
        await self._write_marker(db, schema_name, step.version)
        logger.info("Applied schema '%s' migration v%s (%s statements)", schema_name, step.version, len(step.statements))
        return len(step.statements)
