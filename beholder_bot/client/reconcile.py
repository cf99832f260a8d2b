from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Protocol

from ..signals import DesiredStateFlag
from ..storage.utils import normalize_channel


logger = logging.getLogger("beholder_bot")


class ChannelTransport(Protocol):
    async def join(self, channel: str) -> None: ...

    async def part(self, channel: str) -> None: ...


class MembershipSource(Protocol):
    async def list_membership(self) -> Dict[int, str]: ...

    async def refresh_membership(self) -> Dict[int, str]: ...


class ReconcileState(str, Enum):
    IDLE = "idle"
    RECONCILING = "reconciling"


@dataclass(slots=True)
class ReconcileResult:
    joined: list[str] = field(default_factory=list)
    parted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.joined or self.parted or self.failed)


class ReconciliationLoop:
    """Keeps the channels this process has joined in line with the persisted desired set.

    ``currently_joined`` is this process's own record of sessions it actually
    joined; it can drift from the store (a kick, a failed join) and is only
    corrected by a cycle.
    """

    def __init__(self, repository: MembershipSource, transport: ChannelTransport, flag: DesiredStateFlag) -> None:
        self.repository = repository
        self.transport = transport
        self.flag = flag
        self.currently_joined: set[str] = set()
        self.state = ReconcileState.IDLE
        self.cycles = 0
        # Cycles await I/O; the lock stops a tick and a session (re)start from interleaving.
        self._lock = asyncio.Lock()

    async def tick(self) -> ReconcileResult | None:
        if not self.flag.consume():
            return None
        try:
            return await self.reconcile(refresh=True)
        except Exception:
            # The store could not be read; keep the request so the next tick retries.
            self.flag.set()
            raise

    async def reconcile(self, *, refresh: bool = True) -> ReconcileResult:
        async with self._lock:
            return await self._reconcile_locked(refresh=refresh)

    async def on_session_established(self) -> ReconcileResult:
        async with self._lock:
            # A fresh session has joined nothing yet.
            self.currently_joined.clear()
            return await self._reconcile_locked(refresh=False)

    def mark_parted(self, channel: str) -> None:
        try:
            self.currently_joined.discard(normalize_channel(channel))
        except ValueError:
            return

    async def _reconcile_locked(self, *, refresh: bool) -> ReconcileResult:
        self.state = ReconcileState.RECONCILING
        try:
            if refresh:
                entries = await self.repository.refresh_membership()
            else:
                entries = await self.repository.list_membership()
            desired = set(entries.values())

            result = ReconcileResult()
            for channel in sorted(desired - self.currently_joined):
                try:
                    await self.transport.join(channel)
                except ConnectionError as exc:
                    logger.warning("Could not join %s: %s", channel, exc)
                    result.failed.append(channel)
                    continue
                except Exception:
                    logger.exception("Failed to join %s; will retry on a later cycle", channel)
                    result.failed.append(channel)
                    continue
                self.currently_joined.add(channel)
                result.joined.append(channel)

            for channel in sorted(self.currently_joined - desired):
                try:
                    await self.transport.part(channel)
                except ConnectionError as exc:
                    logger.warning("Could not part %s: %s", channel, exc)
                    result.failed.append(channel)
                    continue
                except Exception:
                    logger.exception("Failed to part %s; will retry on a later cycle", channel)
                    result.failed.append(channel)
                    continue
                self.currently_joined.discard(channel)
                result.parted.append(channel)

            self.cycles += 1
            if result.failed:
                self.flag.set()
            return result
        finally:
            self.state = ReconcileState.IDLE
