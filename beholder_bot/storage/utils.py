from __future__ import annotations

import asyncio
import logging
import os
import re
import warnings
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Mapping, TypeVar

import aiosqlite

from ..errors import ConnectivityError, EncodingRepairWarning, QueryError


logger = logging.getLogger("beholder_bot")

T = TypeVar("T")

CHANNEL_MARKER = "#"

# Bytes 0x81, 0x8D, 0x8F, 0x90 and 0x9D have no Windows-1252 mapping; ISO-8859-1 takes over for them.
_CP1252_UNDEFINED = frozenset({0x81, 0x8D, 0x8F, 0x90, 0x9D})

# RFC 2812 chanstring: no whitespace, comma, colon, BELL or other control characters.
_INVALID_CHANNEL_CHARS = re.compile(r"[\s,:\x00-\x1f\x7f]")


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _busy_timeout_ms(raw: int | None = None) -> int:
    if raw is None:
        env = os.getenv("DB_BUSY_TIMEOUT_MS", "5000").strip()
        try:
            raw = int(env)
        except ValueError:
            raw = 5000
    return _clamp(int(raw), 0, 60000)


def _decode_legacy(raw: bytes) -> str:
    try:
        return raw.decode("cp1252")
    except UnicodeDecodeError:
        return "".join(
            chr(byte) if byte in _CP1252_UNDEFINED else bytes((byte,)).decode("cp1252")
            for byte in raw
        )


def coerce_text(value: str | bytes) -> str:
    """Return ``value`` as text that is guaranteed to encode as UTF-8.

    Valid input passes through untouched. Anything else is reinterpreted as
    Windows-1252 (the usual culprit for smart quotes arriving from IRC clients)
    and converted, with an :class:`EncodingRepairWarning`.
    """
    if isinstance(value, str):
        try:
            value.encode("utf-8")
            return value
        except UnicodeEncodeError:
            pass
        try:
            raw = value.encode("utf-8", "surrogateescape")
        except UnicodeEncodeError:
            repaired = value.encode("utf-8", "replace").decode("utf-8")
            _report_repair(value, repaired)
            return repaired
    else:
        raw = bytes(value)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            pass

    repaired = _decode_legacy(raw)
    _report_repair(raw, repaired)
    return repaired


def _report_repair(original: object, repaired: str) -> None:
    logger.warning("Repaired non-UTF-8 input %r -> %r", original, repaired)
    warnings.warn(
        f"Input was not valid UTF-8 and was reinterpreted as Windows-1252: {repaired!r}",
        EncodingRepairWarning,
        stacklevel=3,
    )


def coerce_params(params: Mapping[str, object]) -> dict[str, object]:
    return {
        key: coerce_text(value) if isinstance(value, (str, bytes)) else value
        for key, value in params.items()
    }


def normalize_channel(name: str | bytes) -> str:
    cleaned = coerce_text(name).strip().lstrip(CHANNEL_MARKER).strip()
    if not cleaned:
        raise ValueError("channel name cannot be empty")
    if _INVALID_CHANNEL_CHARS.search(cleaned):
        raise ValueError(f"channel name contains characters IRC does not allow: {cleaned!r}")
    return CHANNEL_MARKER + cleaned.lower()


class ConnectionProvider:
    """Hands out one SQLite connection per logical operation, retrying transient open failures."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        max_attempts: int = 12,
        retry_delay_seconds: float = 5.0,
        busy_timeout_ms: int | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.db_path = Path(db_path)
        self.max_attempts = int(max_attempts)
        self.retry_delay_seconds = max(0.0, float(retry_delay_seconds))
        self.busy_timeout_ms = _busy_timeout_ms(busy_timeout_ms)

    async def _configure(self, db: aiosqlite.Connection) -> None:
        await db.execute("PRAGMA foreign_keys=ON")
        if self.busy_timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")

    async def connect(self) -> aiosqlite.Connection:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                logger.info("Connecting to database (attempt %s of %s)", attempt, self.max_attempts)
            db: aiosqlite.Connection | None = None
            try:
                # Autocommit mode: transactions are opened explicitly with BEGIN.
                db = await aiosqlite.connect(self.db_path, isolation_level=None)
                await self._configure(db)
                return db
            except aiosqlite.Error as exc:
                last_error = exc
                if db is not None:
                    await db.close()
                logger.warning("Database connection attempt %s failed: %s", attempt, exc)
            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_delay_seconds)

        raise ConnectivityError(
            f"Could not connect to database at {self.db_path} after {self.max_attempts} attempts"
        ) from last_error

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        db = await self.connect()
        try:
            yield db
        finally:
            await db.close()

    async def with_connection(self, fn: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async with self.connection() as db:
            try:
                return await fn(db)
            except aiosqlite.Error as exc:
                raise QueryError(str(exc)) from exc

    @staticmethod
    async def with_transaction(
        db: aiosqlite.Connection,
        fn: Callable[[aiosqlite.Connection], Awaitable[T]],
        *,
        immediate: bool = False,
    ) -> T:
        # IMMEDIATE takes the write lock up front so a second process waits instead of racing.
        await db.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        try:
            result = await fn(db)
        except Exception:
            await db.execute("ROLLBACK")
            raise
        await db.execute("COMMIT")
        return result
