from __future__ import annotations

import asyncio
import logging

from ..reconcile import ReconcileResult


logger = logging.getLogger("beholder_bot")


class WorkersMixin:
    async def _reconcile_worker(self) -> None:
        interval = self.settings.reconcile_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                result = await self.reconciler.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Deferred channel sync failed; retrying on the next tick")
                continue
            if result is None or not result.changed:
                continue
            await self._report_deferred_reload(result)

    async def _report_deferred_reload(self, result: ReconcileResult) -> None:
        summary = (
            f"Channel list reloaded (deferred): joined={len(result.joined)} "
            f"parted={len(result.parted)} failed={len(result.failed)}"
        )
        logger.info(summary)

        admin = self.settings.bot_admin_nick
        privmsg = getattr(self.transport, "privmsg", None)
        if not admin or privmsg is None:
            return
        try:
            await privmsg(admin, summary)
        except (ConnectionError, OSError, ValueError) as exc:
            logger.warning("Could not notify %s about the reload: %s", admin, exc)

    async def on_session_established(self) -> None:
        try:
            result = await self.reconciler.on_session_established()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Initial channel join failed; waiting for the next recheck")
            self.desired_state.set()
            return
        logger.info("Joined %s channel(s) after session start", len(result.joined))

    def on_removed_from_channel(self, channel: str) -> None:
        self.reconciler.mark_parted(channel)
