from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

from .client.bot import BeholderBot
from .config import Settings
from .storage.quotes import QuoteRepository
from .storage.store import ChannelRepository
from .storage.utils import ConnectionProvider

logger = logging.getLogger("beholder_bot")


def configure_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if lock_path.exists():
        stale_pid = 0
        with contextlib.suppress(Exception):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and _is_process_alive(stale_pid):
            raise RuntimeError(f"The bot is already running (pid={stale_pid}).")
        with contextlib.suppress(Exception):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(Exception):
        if lock_path.exists():
            lock_path.unlink()


def build_connections(settings: Settings) -> ConnectionProvider:
    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return ConnectionProvider(
        settings.sqlite_path,
        max_attempts=settings.db_connect_attempts,
        retry_delay_seconds=settings.db_connect_retry_seconds,
        busy_timeout_ms=settings.db_busy_timeout_ms,
    )


def build_bot(settings: Settings) -> BeholderBot:
    connections = build_connections(settings)
    return BeholderBot(
        settings=settings,
        repository=ChannelRepository(settings.sqlite_path, connections=connections),
        quotes=QuoteRepository(settings.sqlite_path, connections=connections),
    )


async def _run_bot(settings: Settings) -> None:
    bot = build_bot(settings)
    try:
        await bot.start()
    finally:
        await bot.close()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.debug_mode)
    settings.validate()
    lock_path = settings.sqlite_path.parent / "beholder_bot.pid"
    _acquire_instance_lock(lock_path)
    try:
        asyncio.run(_run_bot(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)
