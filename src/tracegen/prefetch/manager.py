"""Rate-limit-aware producer/consumer buffer over a paginated row source.

The manager keeps ``prefetch_batches × concurrency`` rows in flight ahead of
the worker pool. Whenever the buffer drains to ``prefetch_threshold`` of that
ideal size, the next page is requested in the background so workers rarely
wait on the network.

Single-flight: at most one fetch task exists at a time. Concurrent callers
that find the buffer empty all await the same task. Every check-then-pop
sequence runs without an intervening ``await``, so it is atomic under
asyncio's cooperative scheduling.
"""

from __future__ import annotations

import asyncio
import math
from collections import deque
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.models.config import PrefetchConfig
from tracegen.models.state import PrefetchState


class RowSource(Protocol):
    """A paginated remote dataset."""

    async def fetch_rows(self, offset: int, limit: int) -> list[dict[str, Any]]:
        """Return up to *limit* rows starting at *offset*. Fewer rows means exhausted."""
        ...


class PrefetchManager:
    """
    Buffered, single-flight dataset reader shared by all scheduler workers.

    Example::

        manager = PrefetchManager(source, total_requested=1_000, concurrency=8)
        await manager.initial_prefetch()
        while (row := await manager.get_next_item()) is not None:
            ...
    """

    def __init__(
        self,
        source: RowSource,
        *,
        total_requested: int,
        concurrency: int,
        config: PrefetchConfig | None = None,
        skip_rows: int = 0,
        event_bus: EventBus | None = None,
        on_state_change: Callable[[PrefetchState], None] | None = None,
    ) -> None:
        if total_requested < 0:
            raise ValueError("total_requested must be >= 0")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._source = source
        self._config = config or PrefetchConfig()
        self._concurrency = concurrency
        self._event_bus = event_bus
        self._on_state_change = on_state_change
        self._logger = structlog.get_logger("tracegen.prefetch")

        self._buffer: deque[dict[str, Any]] = deque()
        self._offset = skip_rows
        self._total_requested = total_requested
        self._total_delivered = 0
        self._is_complete = False
        self._is_fetching = False
        self._aborted = False
        self._fetch_task: asyncio.Task[None] | None = None

    # ── Sizing ─────────────────────────────────────────────────────────────────

    @property
    def ideal_buffer_size(self) -> int:
        return self._config.prefetch_batches * self._concurrency

    @property
    def refetch_threshold(self) -> int:
        return math.floor(self.ideal_buffer_size * self._config.prefetch_threshold)

    @property
    def total_requested(self) -> int:
        return self._total_requested

    @property
    def state(self) -> PrefetchState:
        """A detached snapshot of the current state."""
        return PrefetchState(
            buffer_size=len(self._buffer),
            current_offset=self._offset,
            total_requested=self._total_requested,
            total_delivered=self._total_delivered,
            is_complete=self._is_complete,
            is_fetching=self._is_fetching,
            concurrency=self._concurrency,
            config=self._config.model_copy(),
        )

    def should_prefetch(self) -> bool:
        """True when idle, not exhausted, owed rows, and the buffer is at or below threshold."""
        return (
            not self._is_fetching
            and not self._is_complete
            and not self._aborted
            and self._total_delivered < self._total_requested
            and len(self._buffer) <= self.refetch_threshold
        )

    def _prefetch_size(self) -> int:
        remaining = self._total_requested - self._total_delivered - len(self._buffer)
        return min(self.ideal_buffer_size, remaining)

    # ── Fetching ───────────────────────────────────────────────────────────────

    def _start_fetch(self) -> asyncio.Task[None]:
        """Return the in-flight fetch task, creating one if none is running."""
        if self._fetch_task is not None and not self._fetch_task.done():
            return self._fetch_task
        self._is_fetching = True
        self._notify()
        self._fetch_task = asyncio.create_task(self._fetch())
        self._fetch_task.add_done_callback(self._on_fetch_done)
        return self._fetch_task

    async def _fetch(self) -> None:
        try:
            size = self._prefetch_size()
            if size <= 0:
                self._is_complete = True
                return
            offset = self._offset
            self._logger.debug("prefetch_started", offset=offset, size=size)
            rows = await self._source.fetch_rows(offset, size)
            if self._aborted:
                return
            self._buffer.extend(rows)
            self._offset = offset + len(rows)
            if len(rows) < size:
                self._is_complete = True
            self._logger.debug(
                "prefetch_completed",
                offset=offset,
                received=len(rows),
                buffer=len(self._buffer),
                complete=self._is_complete,
            )
        finally:
            self._is_fetching = False
            self._notify()

    def _on_fetch_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("prefetch_failed", offset=self._offset, error=str(exc))

    async def trigger_prefetch(self) -> None:
        """Start a fetch (or join the running one) and wait for it. Fetch errors propagate."""
        await asyncio.shield(self._start_fetch())

    async def initial_prefetch(self) -> None:
        """Prime the buffer before workers start."""
        if self.should_prefetch():
            await self.trigger_prefetch()

    async def peek(self, count: int) -> list[dict[str, Any]]:
        """Return up to *count* buffered rows without delivering them, priming the buffer first."""
        if not self._buffer:
            await self.initial_prefetch()
        return [self._buffer[i] for i in range(min(count, len(self._buffer)))]

    # ── Consumption ────────────────────────────────────────────────────────────

    async def get_next_item(self) -> dict[str, Any] | None:
        """
        Return the next row, or None once the requested count is delivered or
        the source is exhausted.

        Raises:
            Exception: Whatever the row source raised, when this caller had to
                wait on the failing fetch.
        """
        if self._aborted:
            return None
        if self.should_prefetch():
            self._start_fetch()

        while not self._buffer and not self._is_complete:
            if self._aborted or self._total_delivered >= self._total_requested:
                break
            task = self._start_fetch()
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if self._aborted and task.cancelled():
                    return None
                raise

        if self._aborted or self._total_delivered >= self._total_requested or not self._buffer:
            return None

        row = self._buffer.popleft()
        self._total_delivered += 1
        self._notify()
        if self.should_prefetch():
            self._start_fetch()
        return row

    # ── Reconfiguration ────────────────────────────────────────────────────────

    def update_concurrency(self, concurrency: int, *, refetch: bool = True) -> None:
        """Resize the buffer. With ``refetch=False`` no fetch is started here."""
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._concurrency = concurrency
        self._notify()
        if refetch and self.should_prefetch():
            self._start_fetch()

    def update_config(self, config: PrefetchConfig) -> None:
        self._config = config
        self._notify()
        if self.should_prefetch():
            self._start_fetch()

    def abort(self) -> None:
        """Stop delivering rows and cancel any in-flight fetch."""
        self._aborted = True
        if self._fetch_task is not None and not self._fetch_task.done():
            self._fetch_task.cancel()
        self._is_fetching = False
        self._notify()

    def reset(self, skip_rows: int = 0, total_requested: int | None = None) -> None:
        """Discard buffered rows and start over from *skip_rows*."""
        self.abort()
        self._buffer.clear()
        self._offset = skip_rows
        if total_requested is not None:
            self._total_requested = total_requested
        self._total_delivered = 0
        self._is_complete = False
        self._aborted = False
        self._fetch_task = None
        self._notify()

    def _notify(self) -> None:
        if self._on_state_change is not None:
            self._on_state_change(self.state)
        if self._event_bus is not None:
            self._event_bus.publish_lazy(
                TracegenEvent.PREFETCH_STATE_CHANGED, lambda: self.state.model_dump(mode="json")
            )
