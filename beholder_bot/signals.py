from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Callable


logger = logging.getLogger("beholder_bot")

RECHECK_EVENT = "recheck_desired_state"
_ACK = b"ok\n"
_NACK = b"error\n"
_MAX_LINE_BYTES = 1024


def encode_event(event: str) -> bytes:
    return (json.dumps({"event": event}, separators=(",", ":")) + "\n").encode("utf-8")


def decode_event(line: bytes) -> str | None:
    try:
        payload = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    event = payload.get("event")
    return event if isinstance(event, str) else None


class DesiredStateFlag:
    """One bit: "desired channel state changed, recheck". Repeated sets collapse into one."""

    def __init__(self) -> None:
        self._pending = False

    def set(self) -> None:
        self._pending = True

    def is_set(self) -> bool:
        return self._pending

    def consume(self) -> bool:
        pending = self._pending
        self._pending = False
        return pending


class CrossProcessSignal:
    """Raiser side: tells the bot process to recheck desired state.

    The target is configured up front. Port 0 means no target is known, in which
    case raising is a no-op (the control API may be running on its own).
    """

    def __init__(self, host: str, port: int, *, timeout_seconds: float = 3.0) -> None:
        self.host = host
        self.port = int(port)
        self.timeout_seconds = float(timeout_seconds)

    @property
    def enabled(self) -> bool:
        return self.port > 0

    async def raise_signal(self) -> bool:
        if not self.enabled:
            logger.debug("No bot signal target configured; skipping recheck signal")
            return False
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("Could not reach bot process at %s:%s: %s", self.host, self.port, exc)
            return False

        try:
            writer.write(encode_event(RECHECK_EVENT))
            await writer.drain()
            ack = await asyncio.wait_for(reader.readline(), timeout=self.timeout_seconds)
        except (OSError, asyncio.TimeoutError) as exc:
            logger.warning("Recheck signal to %s:%s was not acknowledged: %s", self.host, self.port, exc)
            return False
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

        if ack != _ACK:
            logger.warning("Bot process rejected recheck signal (reply=%r)", ack[:40])
            return False
        return True


class SignalListener:
    """Receiver side, run inside the bot's event loop.

    ``on_raised`` is called for every accepted signal and must only flip state;
    the periodic tick does the real work.
    """

    def __init__(self, host: str, port: int, on_raised: Callable[[], None], *, read_timeout: float = 5.0) -> None:
        self.host = host
        self.port = int(port)
        self.on_raised = on_raised
        self.read_timeout = float(read_timeout)
        self._server: asyncio.AbstractServer | None = None

    @property
    def bound_port(self) -> int:
        if self._server is None or not self._server.sockets:
            return 0
        return int(self._server.sockets[0].getsockname()[1])

    async def start(self) -> int:
        if self._server is None:
            self._server = await asyncio.start_server(
                self._handle_client,
                host=self.host,
                port=self.port,
                limit=_MAX_LINE_BYTES,
            )
            logger.info("Listening for channel recheck signals on %s:%s", self.host, self.bound_port)
        return self.bound_port

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.read_timeout)
            event = decode_event(line)
            if event == RECHECK_EVENT:
                self.on_raised()
                writer.write(_ACK)
            else:
                logger.warning("Ignoring unknown control signal: %r", line[:120])
                writer.write(_NACK)
            await writer.drain()
        except (OSError, ValueError, asyncio.TimeoutError) as exc:
            # ValueError covers lines longer than the stream limit.
            logger.debug("Signal connection dropped: %s", exc)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
