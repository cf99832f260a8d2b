from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

from dotenv import load_dotenv


load_dotenv()

T = TypeVar("T")

_TRUTHY = frozenset({"1", "true", "yes", "y", "on"})


def _env_raw(name: str) -> str | None:
    # A .env saved with a UTF-8 BOM prefixes the first key with it.
    for key in (name, "\ufeff" + name):
        value = os.environ.get(key)
        if value is not None:
            return value.strip()
    return None


def _env_typed(name: str, default: T, convert: Callable[[str], T]) -> T:
    raw = _env_raw(name)
    if raw is None:
        return default
    try:
        return convert(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    return _env_typed(name, default, lambda raw: raw.lower() in _TRUTHY)


def _env_int(name: str, default: int) -> int:
    return _env_typed(name, default, int)


def _env_float(name: str, default: float) -> float:
    return _env_typed(name, default, float)


def _env_str(name: str, default: str) -> str:
    return _env_raw(name) or default


def _env_optional_str(name: str) -> str | None:
    return _env_raw(name) or None


@dataclass(slots=True)
class Settings:
    bot_nick: str
    bot_username: str
    bot_realname: str

    server_host: str
    server_port: int
    use_tls: bool
    irc_reconnect_seconds: float

    bot_admin_nick: str | None
    debug_mode: bool

    sqlite_path: Path
    db_connect_attempts: int
    db_connect_retry_seconds: float
    db_busy_timeout_ms: int

    reconcile_interval_seconds: float

    signal_host: str
    signal_port: int
    signal_timeout_seconds: float

    api_host: str
    api_port: int
    api_key: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            bot_nick=_env_str("BOT_NICK", "beholder"),
            bot_username=_env_str("BOT_USERNAME", "beholder"),
            bot_realname=_env_str("BOT_REALNAME", "Beholder - IRC Channel Stats Aggregator"),
            server_host=_env_str("SERVER_HOSTNAME", "irc.example.net"),
            server_port=_env_int("SERVER_PORT", 6667),
            use_tls=_env_bool("USE_TLS", False),
            irc_reconnect_seconds=_env_float("IRC_RECONNECT_SECONDS", 10.0),
            bot_admin_nick=_env_optional_str("BOT_ADMIN_NICK"),
            debug_mode=_env_bool("DEBUG", False),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/beholder.db")).expanduser(),
            db_connect_attempts=_env_int("DB_CONNECT_ATTEMPTS", 12),
            db_connect_retry_seconds=_env_float("DB_CONNECT_RETRY_SECONDS", 5.0),
            db_busy_timeout_ms=_env_int("DB_BUSY_TIMEOUT_MS", 5000),
            reconcile_interval_seconds=_env_float("RECONCILE_INTERVAL_SECONDS", 2.0),
            signal_host=_env_str("BOT_SIGNAL_HOST", "127.0.0.1"),
            signal_port=_env_int("BOT_SIGNAL_PORT", 0),
            signal_timeout_seconds=_env_float("BOT_SIGNAL_TIMEOUT_SECONDS", 3.0),
            api_host=_env_str("API_HOST", "0.0.0.0"),
            api_port=_env_int("API_PORT", 8080),
            api_key=_env_str("API_KEY", ""),
        )

    def validate(self) -> None:
        if not self.bot_nick:
            raise ValueError("BOT_NICK cannot be empty")
        if not self.server_host:
            raise ValueError("SERVER_HOSTNAME cannot be empty")
        if not 1 <= self.server_port <= 65535:
            raise ValueError("SERVER_PORT must be in [1, 65535]")
        if self.irc_reconnect_seconds < 1.0:
            raise ValueError("IRC_RECONNECT_SECONDS must be >= 1")

        if self.db_connect_attempts < 1:
            raise ValueError("DB_CONNECT_ATTEMPTS must be >= 1")
        if self.db_connect_retry_seconds < 0:
            raise ValueError("DB_CONNECT_RETRY_SECONDS must be >= 0")
        if self.db_busy_timeout_ms < 0:
            raise ValueError("DB_BUSY_TIMEOUT_MS must be >= 0")

        if self.reconcile_interval_seconds <= 0:
            raise ValueError("RECONCILE_INTERVAL_SECONDS must be > 0")

        if not 0 <= self.signal_port <= 65535:
            raise ValueError("BOT_SIGNAL_PORT must be in [0, 65535] (0 disables the signal)")
        if self.signal_timeout_seconds <= 0:
            raise ValueError("BOT_SIGNAL_TIMEOUT_SECONDS must be > 0")

    def validate_control(self) -> None:
        self.validate()
        if not self.api_key:
            raise ValueError("API_KEY is required for the control API")
        if not 1 <= self.api_port <= 65535:
            raise ValueError("API_PORT must be in [1, 65535]")
