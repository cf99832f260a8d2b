from __future__ import annotations

import asyncio
import sqlite3
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import beholder_bot.storage.utils as utils_mod  # noqa: E402
from beholder_bot.errors import ConnectivityError, QueryError  # noqa: E402
from beholder_bot.storage.utils import ConnectionProvider  # noqa: E402


def test_connect_gives_up_after_max_attempts(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls: list[int] = []
    sleeps: list[float] = []

    async def _refuse(*args, **kwargs):
        calls.append(1)
        raise sqlite3.OperationalError("unable to open database file")

    async def _no_sleep(delay: float) -> None:
        sleeps.append(delay)

    monkeypatch.setattr(utils_mod.aiosqlite, "connect", _refuse)
    monkeypatch.setattr(utils_mod.asyncio, "sleep", _no_sleep)

    provider = ConnectionProvider(tmp_path / "bot.db", max_attempts=3, retry_delay_seconds=5.0)
    with pytest.raises(ConnectivityError) as excinfo:
        asyncio.run(provider.connect())

    assert len(calls) == 3
    assert sleeps == [5.0, 5.0]
    assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)


def test_connect_recovers_from_transient_failures(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    real_connect = utils_mod.aiosqlite.connect
    calls: list[int] = []

    async def _flaky(*args, **kwargs):
        calls.append(1)
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return await real_connect(*args, **kwargs)

    monkeypatch.setattr(utils_mod.aiosqlite, "connect", _flaky)
    provider = ConnectionProvider(tmp_path / "bot.db", max_attempts=12, retry_delay_seconds=0)

    async def _probe() -> int:
        async with provider.connection() as db:
            async with db.execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
        return int(row[0])

    assert asyncio.run(_probe()) == 1
    assert len(calls) == 3


def test_connection_is_closed_even_when_the_operation_fails(tmp_path: Path) -> None:
    closed: list[int] = []

    class _SpyProvider(ConnectionProvider):
        async def connect(self):
            db = await super().connect()
            original_close = db.close

            async def _close() -> None:
                closed.append(1)
                await original_close()

            db.close = _close
            return db

    provider = _SpyProvider(tmp_path / "bot.db", max_attempts=1)

    async def _explode(db) -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(provider.with_connection(_explode))
    assert closed == [1]


def test_statement_failure_surfaces_as_query_error(tmp_path: Path) -> None:
    provider = ConnectionProvider(tmp_path / "bot.db", max_attempts=1)

    async def _bad(db) -> None:
        await db.execute("SELECT * FROM no_such_table")

    with pytest.raises(QueryError) as excinfo:
        asyncio.run(provider.with_connection(_bad))
    assert isinstance(excinfo.value.__cause__, sqlite3.OperationalError)


def test_transaction_rolls_back_on_error(tmp_path: Path) -> None:
    db_path = tmp_path / "bot.db"
    provider = ConnectionProvider(db_path, max_attempts=1)

    async def _setup(db) -> None:
        await db.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")

    async def _insert_then_fail(db) -> None:
        await db.execute("INSERT INTO t (id) VALUES (1)")
        raise RuntimeError("abort")

    async def _run() -> None:
        await provider.with_connection(_setup)
        await provider.with_connection(
            lambda db: ConnectionProvider.with_transaction(db, _insert_then_fail)
        )

    with pytest.raises(RuntimeError, match="abort"):
        asyncio.run(_run())

    with sqlite3.connect(db_path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0


def test_busy_timeout_is_clamped(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    assert ConnectionProvider(tmp_path / "a.db", busy_timeout_ms=10**9).busy_timeout_ms == 60000
    assert ConnectionProvider(tmp_path / "a.db", busy_timeout_ms=-5).busy_timeout_ms == 0

    monkeypatch.setenv("DB_BUSY_TIMEOUT_MS", "not-a-number")
    assert ConnectionProvider(tmp_path / "a.db").busy_timeout_ms == 5000

    with pytest.raises(ValueError):
        ConnectionProvider(tmp_path / "a.db", max_attempts=0)
