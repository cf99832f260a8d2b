from __future__ import annotations

import logging
import time
from typing import List

import aiosqlite

from .utils import ConnectionProvider, coerce_params, normalize_channel


logger = logging.getLogger("beholder_bot")


class WatchMixin:
    # Watch reads always hit the store; they are not on the reconciliation path.
    connections: ConnectionProvider

    async def list_watch(self) -> List[str]:
        return await self.connections.with_connection(self._fetch_watch)

    async def add_watch(self, channel: str | bytes) -> List[str]:
        params = coerce_params({"channel": normalize_channel(channel), "now": int(time.time())})

        async def _insert(db: aiosqlite.Connection) -> List[str]:
            await db.execute(
                """
                INSERT INTO watch_channels (channel, created_at, updated_at)
                VALUES (:channel, :now, :now)
                ON CONFLICT(channel) DO UPDATE SET
                    updated_at = excluded.updated_at
                """,
                params,
            )
            return await self._fetch_watch(db)

        return await self.connections.with_connection(_insert)

    async def remove_watch(self, channel: str | bytes) -> List[str]:
        params = coerce_params({"channel": normalize_channel(channel)})

        async def _delete(db: aiosqlite.Connection) -> List[str]:
            await db.execute("DELETE FROM watch_channels WHERE channel = :channel", params)
            return await self._fetch_watch(db)

        return await self.connections.with_connection(_delete)

    async def _fetch_watch(self, db: aiosqlite.Connection) -> List[str]:
        async with db.execute("SELECT channel FROM watch_channels ORDER BY channel") as cursor:
            rows = await cursor.fetchall()
        channels: List[str] = []
        for row in rows:
            try:
                channels.append(normalize_channel(str(row[0])))
            except ValueError:
                logger.warning("Skipping stored watch channel with an invalid name: %r", row[0])
        return channels
