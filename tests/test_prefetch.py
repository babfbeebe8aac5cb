"""Tests for PrefetchManager buffering, single-flight fetching and control."""

from __future__ import annotations

import asyncio

import pytest

from tracegen.errors import NetworkError
from tracegen.events.bus import TracegenEvent
from tracegen.models.config import PrefetchConfig
from tracegen.models.state import PrefetchState
from tracegen.prefetch.manager import PrefetchManager
from tests.conftest import FakeRowSource, events_of


def _manager(source: FakeRowSource, total: int, concurrency: int = 5, **kwargs) -> PrefetchManager:
    config = kwargs.pop("config", PrefetchConfig(prefetch_batches=2, prefetch_threshold=0.3))
    return PrefetchManager(
        source, total_requested=total, concurrency=concurrency, config=config, **kwargs
    )


async def _drain(manager: PrefetchManager) -> list[dict]:
    rows = []
    while (row := await manager.get_next_item()) is not None:
        rows.append(row)
    return rows


class TestSizing:
    def test_ideal_size_and_threshold(self) -> None:
        manager = _manager(FakeRowSource(), total=20)
        assert manager.ideal_buffer_size == 10
        assert manager.refetch_threshold == 3

    def test_rejects_bad_arguments(self) -> None:
        with pytest.raises(ValueError):
            PrefetchManager(FakeRowSource(), total_requested=-1, concurrency=1)
        with pytest.raises(ValueError):
            PrefetchManager(FakeRowSource(), total_requested=1, concurrency=0)


class TestBuffering:
    async def test_initial_prefetch_fills_ideal_buffer(self) -> None:
        source = FakeRowSource(20)
        manager = _manager(source, total=20)
        await manager.initial_prefetch()
        assert source.calls == [(0, 10)]
        assert manager.state.buffer_size == 10

    async def test_refetch_starts_at_threshold(self) -> None:
        source = FakeRowSource(20)
        manager = _manager(source, total=20)
        await manager.initial_prefetch()

        for _ in range(6):
            await manager.get_next_item()
        assert manager.state.buffer_size == 4
        assert not manager.state.is_fetching

        await manager.get_next_item()
        assert manager.state.is_fetching
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert source.calls == [(0, 10), (10, 10)]

    async def test_delivers_rows_in_order(self) -> None:
        source = FakeRowSource(20)
        rows = await _drain(_manager(source, total=20))
        assert [r["question"] for r in rows] == [f"question {i}" for i in range(20)]

    async def test_never_delivers_more_than_requested(self) -> None:
        source = FakeRowSource(50)
        manager = _manager(source, total=7)
        rows = await _drain(manager)
        assert len(rows) == 7
        assert manager.state.total_delivered == 7
        assert sum(limit for _, limit in source.calls) == 7

    async def test_short_page_marks_complete(self) -> None:
        manager = _manager(FakeRowSource(3), total=10)
        rows = await _drain(manager)
        assert len(rows) == 3
        assert manager.state.is_complete
        assert await manager.get_next_item() is None

    async def test_skip_rows_sets_start_offset(self) -> None:
        source = FakeRowSource(20)
        manager = _manager(source, total=2, skip_rows=5)
        rows = await _drain(manager)
        assert [r["question"] for r in rows] == ["question 5", "question 6"]


class TestSingleFlight:
    async def test_concurrent_callers_share_one_fetch(self) -> None:
        source = FakeRowSource(30, delay=0.01)
        manager = _manager(source, total=30, concurrency=3)

        rows = await asyncio.gather(*(manager.get_next_item() for _ in range(12)))

        assert source.max_in_flight == 1
        assert all(r is not None for r in rows)
        assert len({r["question"] for r in rows}) == 12

    async def test_draining_with_many_consumers(self) -> None:
        source = FakeRowSource(40, delay=0.005)
        manager = _manager(source, total=40, concurrency=4)
        collected: list[dict] = []

        async def consumer() -> None:
            collected.extend(await _drain(manager))

        await asyncio.gather(*(consumer() for _ in range(4)))
        assert source.max_in_flight == 1
        assert sorted(r["question"] for r in collected) == sorted(f"question {i}" for i in range(40))


class TestFailures:
    async def test_fetch_error_reaches_waiting_caller(self) -> None:
        manager = _manager(FakeRowSource(10, fail_times=1), total=10)
        with pytest.raises(NetworkError, match="503"):
            await manager.get_next_item()
        assert not manager.state.is_fetching

        row = await manager.get_next_item()
        assert row == {"question": "question 0", "answer": "answer 0"}

    async def test_abort_releases_waiters(self) -> None:
        manager = _manager(FakeRowSource(10, delay=0.5), total=10)
        waiter = asyncio.create_task(manager.get_next_item())
        await asyncio.sleep(0.01)

        manager.abort()

        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert await manager.get_next_item() is None
        assert not manager.state.is_fetching

    async def test_reset_restarts_from_offset(self) -> None:
        manager = _manager(FakeRowSource(20), total=20)
        await manager.get_next_item()
        manager.reset(skip_rows=2, total_requested=3)

        rows = await _drain(manager)
        assert [r["question"] for r in rows] == ["question 2", "question 3", "question 4"]
        assert manager.state.total_delivered == 3


class TestPeekAndReconfigure:
    async def test_peek_does_not_consume(self) -> None:
        manager = _manager(FakeRowSource(20), total=20)
        peeked = await manager.peek(3)
        assert [r["question"] for r in peeked] == ["question 0", "question 1", "question 2"]
        assert manager.state.total_delivered == 0
        assert (await manager.get_next_item())["question"] == "question 0"

    async def test_update_concurrency_resizes_buffer(self) -> None:
        manager = _manager(FakeRowSource(100), total=100, concurrency=2)
        assert manager.ideal_buffer_size == 4
        manager.update_concurrency(8)
        assert manager.ideal_buffer_size == 16
        with pytest.raises(ValueError):
            manager.update_concurrency(0)

    async def test_state_changes_are_published(self, event_bus) -> None:
        snapshots: list[PrefetchState] = []
        manager = _manager(
            FakeRowSource(5), total=5, event_bus=event_bus, on_state_change=snapshots.append
        )
        await _drain(manager)

        assert snapshots
        assert snapshots[-1].total_delivered == 5
        published = events_of(event_bus, TracegenEvent.PREFETCH_STATE_CHANGED)
        assert published[-1]["total_delivered"] == 5
        assert published[-1]["config"]["prefetch_batches"] == 2

    async def test_state_is_a_snapshot(self) -> None:
        manager = _manager(FakeRowSource(5), total=5)
        before = manager.state
        await manager.get_next_item()
        assert before.total_delivered == 0
