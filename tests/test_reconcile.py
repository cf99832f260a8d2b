from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from beholder_bot.client.reconcile import ReconcileState, ReconciliationLoop  # noqa: E402
from beholder_bot.errors import QueryError  # noqa: E402
from beholder_bot.signals import DesiredStateFlag  # noqa: E402


class _FakeRepository:
    def __init__(self, *channels: str) -> None:
        self.channels = list(channels)
        self.list_calls = 0
        self.refresh_calls = 0
        self.fail_refresh = False

    def _entries(self) -> dict[int, str]:
        return {index: name for index, name in enumerate(self.channels, start=1)}

    async def list_membership(self) -> dict[int, str]:
        self.list_calls += 1
        return self._entries()

    async def refresh_membership(self) -> dict[int, str]:
        self.refresh_calls += 1
        if self.fail_refresh:
            raise QueryError("database is locked")
        return self._entries()


class _FakeTransport:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.joins: list[str] = []
        self.parts: list[str] = []
        self.loop: ReconciliationLoop | None = None
        self.states: list[ReconcileState] = []

    async def join(self, channel: str) -> None:
        if self.loop is not None:
            self.states.append(self.loop.state)
        if channel in self.failing:
            raise ConnectionError(f"cannot join {channel}")
        self.joins.append(channel)

    async def part(self, channel: str) -> None:
        if channel in self.failing:
            raise ConnectionError(f"cannot part {channel}")
        self.parts.append(channel)


def test_cycle_joins_missing_and_parts_extra_channels() -> None:
    repo = _FakeRepository("#a", "#b")
    transport = _FakeTransport()
    loop = ReconciliationLoop(repo, transport, DesiredStateFlag())
    loop.currently_joined = {"#b", "#c"}

    result = asyncio.run(loop.reconcile())

    assert transport.joins == ["#a"]
    assert transport.parts == ["#c"]
    assert result.joined == ["#a"]
    assert result.parted == ["#c"]
    assert loop.currently_joined == {"#a", "#b"}
    assert loop.cycles == 1


def test_converged_cycle_issues_no_commands() -> None:
    repo = _FakeRepository("#a")
    transport = _FakeTransport()
    loop = ReconciliationLoop(repo, transport, DesiredStateFlag())
    loop.currently_joined = {"#a"}

    result = asyncio.run(loop.reconcile())

    assert not result.changed
    assert transport.joins == []
    assert transport.parts == []


def test_one_failing_channel_does_not_stop_the_cycle() -> None:
    repo = _FakeRepository("#a", "#bad", "#c")
    transport = _FakeTransport(failing={"#bad", "#gone"})
    flag = DesiredStateFlag()
    loop = ReconciliationLoop(repo, transport, flag)
    loop.currently_joined = {"#gone", "#old"}

    result = asyncio.run(loop.reconcile())

    assert transport.joins == ["#a", "#c"]
    assert transport.parts == ["#old"]
    assert sorted(result.failed) == ["#bad", "#gone"]
    assert loop.currently_joined == {"#a", "#c", "#gone"}
    # Failures leave the request pending so a later tick retries them.
    assert flag.is_set()


def test_tick_without_pending_change_does_nothing() -> None:
    repo = _FakeRepository("#a")
    loop = ReconciliationLoop(repo, _FakeTransport(), DesiredStateFlag())

    assert asyncio.run(loop.tick()) is None
    assert repo.refresh_calls == 0
    assert loop.cycles == 0


def test_repeated_signals_before_a_tick_collapse_into_one_cycle() -> None:
    repo = _FakeRepository("#a")
    transport = _FakeTransport()
    flag = DesiredStateFlag()
    loop = ReconciliationLoop(repo, transport, flag)

    flag.set()
    flag.set()
    first = asyncio.run(loop.tick())
    second = asyncio.run(loop.tick())

    assert first is not None and first.joined == ["#a"]
    assert second is None
    assert loop.cycles == 1
    assert repo.refresh_calls == 1


def test_tick_keeps_the_request_when_the_store_cannot_be_read() -> None:
    repo = _FakeRepository("#a")
    repo.fail_refresh = True
    flag = DesiredStateFlag()
    loop = ReconciliationLoop(repo, _FakeTransport(), flag)
    flag.set()

    with pytest.raises(QueryError):
        asyncio.run(loop.tick())

    assert flag.is_set()
    assert loop.state is ReconcileState.IDLE
    assert loop.cycles == 0


def test_session_established_rejoins_from_cached_membership() -> None:
    repo = _FakeRepository("#a", "#b")
    transport = _FakeTransport()
    loop = ReconciliationLoop(repo, transport, DesiredStateFlag())
    loop.currently_joined = {"#a", "#stale"}

    result = asyncio.run(loop.on_session_established())

    # The previous session's channels are gone; nothing is parted.
    assert transport.joins == ["#a", "#b"]
    assert transport.parts == []
    assert result.joined == ["#a", "#b"]
    assert loop.currently_joined == {"#a", "#b"}
    assert repo.list_calls == 1
    assert repo.refresh_calls == 0


def test_state_is_reconciling_only_during_a_cycle() -> None:
    repo = _FakeRepository("#a")
    transport = _FakeTransport()
    loop = ReconciliationLoop(repo, transport, DesiredStateFlag())
    transport.loop = loop

    assert loop.state is ReconcileState.IDLE
    asyncio.run(loop.reconcile())

    assert transport.states == [ReconcileState.RECONCILING]
    assert loop.state is ReconcileState.IDLE


def test_concurrent_cycles_do_not_interleave() -> None:
    repo = _FakeRepository("#a", "#b")
    active: list[int] = []
    overlaps: list[int] = []

    class _SlowTransport(_FakeTransport):
        async def join(self, channel: str) -> None:
            active.append(1)
            if len(active) > 1:
                overlaps.append(1)
            await asyncio.sleep(0)
            active.pop()
            await super().join(channel)

    transport = _SlowTransport()
    loop = ReconciliationLoop(repo, transport, DesiredStateFlag())

    async def _run() -> None:
        await asyncio.gather(loop.reconcile(), loop.on_session_established())

    asyncio.run(_run())

    assert overlaps == []
    assert loop.cycles == 2
    assert loop.currently_joined == {"#a", "#b"}


def test_mark_parted_makes_the_next_cycle_rejoin() -> None:
    repo = _FakeRepository("#a")
    transport = _FakeTransport()
    loop = ReconciliationLoop(repo, transport, DesiredStateFlag())
    loop.currently_joined = {"#a"}

    loop.mark_parted("#A")
    loop.mark_parted("   ")
    asyncio.run(loop.reconcile())

    assert transport.joins == ["#a"]


def test_link_down_failures_are_warnings_without_tracebacks(caplog: pytest.LogCaptureFixture) -> None:
    repo = _FakeRepository("#a", "#b")
    transport = _FakeTransport(failing={"#a", "#b", "#old"})
    loop = ReconciliationLoop(repo, transport, DesiredStateFlag())
    loop.currently_joined = {"#old"}

    with caplog.at_level("WARNING", logger="beholder_bot"):
        result = asyncio.run(loop.reconcile())

    assert sorted(result.failed) == ["#a", "#b", "#old"]
    failures = [record for record in caplog.records if record.name == "beholder_bot"]
    assert len(failures) == 3
    assert all(record.levelname == "WARNING" for record in failures)
    assert all(record.exc_info is None for record in failures)


def test_unexpected_transport_errors_keep_their_traceback(caplog: pytest.LogCaptureFixture) -> None:
    class _BrokenTransport(_FakeTransport):
        async def join(self, channel: str) -> None:
            raise RuntimeError("socket state corrupted")

    loop = ReconciliationLoop(_FakeRepository("#a"), _BrokenTransport(), DesiredStateFlag())

    with caplog.at_level("WARNING", logger="beholder_bot"):
        asyncio.run(loop.reconcile())

    errors = [record for record in caplog.records if record.levelname == "ERROR"]
    assert len(errors) == 1
    assert errors[0].exc_info is not None
