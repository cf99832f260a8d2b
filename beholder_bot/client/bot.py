from __future__ import annotations

import asyncio
import contextlib
import logging

from ..config import Settings
from ..signals import DesiredStateFlag, SignalListener
from ..storage.quotes import QuoteRepository
from ..storage.store import ChannelRepository
from .mixins import AdminMixin, WorkersMixin
from .reconcile import ChannelTransport, ReconciliationLoop
from .transport import IrcTransport

logger = logging.getLogger("beholder_bot")


class BeholderBot(
    AdminMixin,
    WorkersMixin,
):
    def __init__(
        self,
        settings: Settings,
        repository: ChannelRepository,
        quotes: QuoteRepository | None = None,
        transport: ChannelTransport | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.quotes = quotes
        self.desired_state = DesiredStateFlag()

        self.irc: IrcTransport | None = None
        if transport is None:
            self.irc = IrcTransport(
                host=settings.server_host,
                port=settings.server_port,
                nick=settings.bot_nick,
                username=settings.bot_username,
                realname=settings.bot_realname,
                use_tls=settings.use_tls,
                reconnect_seconds=settings.irc_reconnect_seconds,
                on_session_established=self.on_session_established,
                on_private_message=self.on_private_message,
                on_removed_from_channel=self.on_removed_from_channel,
            )
            transport = self.irc
        self.transport = transport
        self.reconciler = ReconciliationLoop(repository, transport, self.desired_state)

        self.signal_listener: SignalListener | None = None
        if settings.signal_port > 0:
            self.signal_listener = SignalListener(settings.signal_host, settings.signal_port, self.desired_state.set)

        self.reconcile_task: asyncio.Task[None] | None = None
        self.irc_task: asyncio.Task[None] | None = None

    async def setup(self) -> None:
        await self.repository.prepare()
        if self.quotes is not None:
            await self.quotes.prepare()
        channels = await self.repository.list_membership()
        logger.info("Loaded %s desired channel(s)", len(channels))

        if self.signal_listener is not None:
            await self.signal_listener.start()
        else:
            logger.info("BOT_SIGNAL_PORT is not set; changes from the control API wait for a restart")

        self.reconcile_task = asyncio.create_task(self._reconcile_worker(), name="reconcile-worker")

    async def start(self) -> None:
        await self.setup()
        if self.irc is None:
            return
        self.irc_task = asyncio.create_task(self.irc.run(), name="irc-session")
        await self.irc_task

    async def close(self) -> None:
        await self._cancel_task(self.reconcile_task)
        if self.irc is not None:
            await self._run_shutdown_step("irc.close", self.irc.close(), timeout=6.0)
        await self._cancel_task(self.irc_task)
        if self.signal_listener is not None:
            await self._run_shutdown_step("signal_listener.close", self.signal_listener.close(), timeout=3.0)

    async def _run_shutdown_step(self, label: str, coro: object, *, timeout: float) -> None:
        try:
            await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
        except asyncio.TimeoutError:
            logger.warning("Shutdown step timed out: %s", label)
        except Exception as exc:
            logger.warning("Shutdown step failed: %s (%s)", label, exc)

    async def _cancel_task(self, task: asyncio.Task[None] | None) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
