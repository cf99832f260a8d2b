from __future__ import annotations

import logging
import time
from typing import Dict

import aiosqlite

from .utils import ConnectionProvider, coerce_params, normalize_channel


logger = logging.getLogger("beholder_bot")


class MembershipCache:
    """Last known desired membership, keyed by row id. ``None`` means "reload on next read"."""

    def __init__(self) -> None:
        self._entries: Dict[int, str] | None = None

    @property
    def populated(self) -> bool:
        return self._entries is not None

    def get(self) -> Dict[int, str] | None:
        if self._entries is None:
            return None
        return dict(self._entries)

    def replace(self, entries: Dict[int, str]) -> Dict[int, str]:
        self._entries = dict(entries)
        return dict(entries)

    def invalidate(self) -> None:
        self._entries = None


class MembershipMixin:
    connections: ConnectionProvider
    membership_cache: MembershipCache

    async def list_membership(self) -> Dict[int, str]:
        cached = self.membership_cache.get()
        if cached is not None:
            return cached
        return await self.refresh_membership()

    async def refresh_membership(self) -> Dict[int, str]:
        self.membership_cache.invalidate()
        entries = await self.connections.with_connection(self._fetch_membership)
        return self.membership_cache.replace(entries)

    async def add_membership(self, channel: str | bytes) -> Dict[int, str]:
        params = coerce_params({"channel": normalize_channel(channel), "now": int(time.time())})

        async def _insert(db: aiosqlite.Connection) -> None:
            await db.execute(
                """
                INSERT INTO core_channels (channel, created_at, updated_at)
                VALUES (:channel, :now, :now)
                ON CONFLICT(channel) DO UPDATE SET
                    updated_at = excluded.updated_at
                """,
                params,
            )

        self.membership_cache.invalidate()
        await self.connections.with_connection(_insert)
        return await self.refresh_membership()

    async def remove_membership(self, channel: str | bytes) -> Dict[int, str]:
        params = coerce_params({"channel": normalize_channel(channel)})

        async def _delete(db: aiosqlite.Connection) -> None:
            await db.execute("DELETE FROM core_channels WHERE channel = :channel", params)

        self.membership_cache.invalidate()
        await self.connections.with_connection(_delete)
        return await self.refresh_membership()

    async def _fetch_membership(self, db: aiosqlite.Connection) -> Dict[int, str]:
        entries: Dict[int, str] = {}
        async with db.execute("SELECT id, channel FROM core_channels ORDER BY id") as cursor:
            async for row in cursor:
                try:
                    entries[int(row[0])] = normalize_channel(str(row[1]))
                except ValueError:
                    logger.warning("Skipping stored channel with an invalid name: %r", row[1])
        return entries
