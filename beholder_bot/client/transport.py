from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
from typing import Any, Callable, Coroutine

from ..storage.utils import coerce_text
from .common import IrcMessage, parse_irc_line


logger = logging.getLogger("beholder_bot")


class IrcTransport:
    """Just enough of an IRC session to join and part channels.

    Registers, answers PING, reports numeric 001 as "session established",
    forwards private messages and notices when the bot is removed from a
    channel. Reconnects after ``reconnect_seconds`` when the link drops.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        nick: str,
        username: str,
        realname: str,
        use_tls: bool = False,
        reconnect_seconds: float = 10.0,
        on_session_established: Callable[[], Coroutine[Any, Any, None]] | None = None,
        on_private_message: Callable[[str, str], Coroutine[Any, Any, None]] | None = None,
        on_removed_from_channel: Callable[[str], None] | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.desired_nick = nick
        self.nick = nick
        self.username = username
        self.realname = realname
        self.use_tls = use_tls
        self.reconnect_seconds = float(reconnect_seconds)
        self.on_session_established = on_session_established
        self.on_private_message = on_private_message
        self.on_removed_from_channel = on_removed_from_channel

        self._writer: asyncio.StreamWriter | None = None
        self._registered = False
        self._closing = False
        self._handler_tasks: set[asyncio.Task[None]] = set()

    @property
    def connected(self) -> bool:
        return self._writer is not None and self._registered

    async def join(self, channel: str) -> None:
        logger.debug("[OUT] JOIN %s", channel)
        await self._send(f"JOIN {channel}", require_registration=True)

    async def part(self, channel: str) -> None:
        logger.debug("[OUT] PART %s", channel)
        await self._send(f"PART {channel}", require_registration=True)

    async def privmsg(self, target: str, text: str) -> None:
        if not target or any(ch.isspace() for ch in target):
            raise ValueError(f"invalid message target: {target!r}")
        await self._send(f"PRIVMSG {target} :{text}", require_registration=True)

    async def run(self) -> None:
        while not self._closing:
            try:
                await self._run_session()
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.IncompleteReadError) as exc:
                logger.warning("IRC connection to %s:%s failed: %s", self.host, self.port, exc)
            if self._closing:
                break
            logger.info("Disconnected. Reconnecting in %.0fs", self.reconnect_seconds)
            await asyncio.sleep(self.reconnect_seconds)

    async def close(self) -> None:
        self._closing = True
        writer = self._writer
        if writer is not None:
            with contextlib.suppress(Exception):
                writer.write(b"QUIT :shutting down\r\n")
                await writer.drain()
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
        for task in list(self._handler_tasks):
            task.cancel()

    async def _run_session(self) -> None:
        ssl_context = ssl.create_default_context() if self.use_tls else None
        reader, writer = await asyncio.open_connection(self.host, self.port, ssl=ssl_context)
        self._writer = writer
        self._registered = False
        self.nick = self.desired_nick
        logger.info("Connected to %s:%s, registering as %s", self.host, self.port, self.nick)
        try:
            await self._send(f"NICK {self.nick}")
            await self._send(f"USER {self.username} 0 * :{self.realname}")
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                line = coerce_text(raw.rstrip(b"\r\n"))
                logger.debug("[RAW-IN] %s", line)
                message = parse_irc_line(line)
                if message is not None:
                    await self._dispatch(message)
        finally:
            self._writer = None
            self._registered = False
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _dispatch(self, message: IrcMessage) -> None:
        command = message.command
        if command == "PING":
            await self._send(f"PONG :{message.param(-1)}")
        elif command == "001":
            self._registered = True
            self.nick = message.param(0, self.nick)
            logger.info("Session established as %s", self.nick)
            if self.on_session_established is not None:
                self._spawn(self.on_session_established(), name="session-established")
        elif command == "433" and not self._registered:
            # Nick in use during registration.
            self.nick = f"{self.nick}_"
            await self._send(f"NICK {self.nick}")
        elif command == "PRIVMSG":
            target, text = message.param(0), message.param(1)
            if target.casefold() == self.nick.casefold() and self.on_private_message is not None:
                self._spawn(self.on_private_message(message.nick, text), name="private-message")
        elif command == "KICK":
            if message.param(1).casefold() == self.nick.casefold():
                logger.warning("Kicked from %s by %s", message.param(0), message.nick)
                self._removed_from(message.param(0))
        elif command == "PART":
            if message.nick.casefold() == self.nick.casefold():
                self._removed_from(message.param(0))

    def _removed_from(self, channel: str) -> None:
        if self.on_removed_from_channel is not None and channel:
            self.on_removed_from_channel(channel)

    def _spawn(self, coro: Coroutine[Any, Any, None], *, name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._handler_tasks.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("IRC event handler %s failed", task.get_name(), exc_info=exc)

    async def _send(self, line: str, *, require_registration: bool = False) -> None:
        writer = self._writer
        if writer is None or (require_registration and not self._registered):
            raise ConnectionError("IRC session is not established")
        text = coerce_text(line)
        if "\r" in text or "\n" in text or "\x00" in text:
            raise ValueError(f"refusing to send a line with embedded line breaks: {text!r}")
        writer.write(text.encode("utf-8") + b"\r\n")
        await writer.drain()
