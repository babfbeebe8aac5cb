"""Bounded worker pool that drives items through an :class:`ItemRunner`.

Workers pull from either a pre-materialised list (FIFO) or a shared
:class:`~tracegen.prefetch.manager.PrefetchManager`. At most ``concurrency``
items are in flight. One item's failure never stops the pool. Every
terminal result is appended to the sink as soon as it is produced and
yielded to the caller in completion order.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from tracegen.cancellation import CancellationToken
from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.models.config import SchedulerConfig
from tracegen.models.work import (
    ErrorKind,
    GenerationResult,
    GenerationStatus,
    Progress,
    WorkItem,
)
from tracegen.prefetch.manager import PrefetchManager

if TYPE_CHECKING:
    from tracegen.engine.retry import ItemRunner
    from tracegen.prompts import PromptSet
    from tracegen.sinks.base import ResultSink


def _default_id_generator(prefix: str) -> str:
    from tracegen.session import make_id

    return make_id(prefix)


class PauseFlag:
    """Shared pause switch. Workers finish their current item, then wait."""

    def __init__(self) -> None:
        self._paused = False

    @property
    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    async def wait_if_paused(self, cancel: CancellationToken, poll_interval: float = 0.2) -> None:
        """Block while paused. Returns early when *cancel* fires."""
        while self._paused and not cancel.cancelled:
            await asyncio.sleep(poll_interval)


@dataclass
class BatchSummary:
    """Outcome counts for one batch. Aborted items are excluded from the failure rate."""

    results: list[GenerationResult] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    aborted: int = 0

    @classmethod
    def from_results(cls, results: list[GenerationResult]) -> BatchSummary:
        summary = cls(results=results)
        for result in results:
            if result.status == GenerationStatus.DONE:
                summary.succeeded += 1
            elif result.status == GenerationStatus.ABORTED:
                summary.aborted += 1
            else:
                summary.failed += 1
        return summary

    @property
    def failure_rate(self) -> float:
        attempted = self.succeeded + self.failed
        return self.failed / attempted if attempted else 0.0


class GenerationScheduler:
    """
    Concurrency-bounded batch driver.

    Example::

        scheduler = GenerationScheduler(runner, config=SchedulerConfig(concurrency=8), sink=sink)
        async for result in scheduler.run(items):
            print(result.id, result.status)
    """

    def __init__(
        self,
        runner: ItemRunner,
        *,
        config: SchedulerConfig | None = None,
        sink: ResultSink | None = None,
        event_bus: EventBus | None = None,
        input_columns: list[str] | None = None,
        source: str | None = None,
        id_generator: Callable[[str], str] | None = None,
    ) -> None:
        self._runner = runner
        self._config = config or SchedulerConfig()
        self._sink = sink
        self._event_bus = event_bus
        self._input_columns = input_columns
        self._source = source
        self._id_generator = id_generator or _default_id_generator
        self._logger = structlog.get_logger("tracegen.scheduler")

        self._batch: CancellationToken | None = None
        self._prefetch: PrefetchManager | None = None
        self._pause = PauseFlag()
        self._progress = Progress()

    # ── Control ────────────────────────────────────────────────────────────────

    @property
    def progress(self) -> Progress:
        return self._progress.model_copy()

    @property
    def pause_flag(self) -> PauseFlag:
        return self._pause

    @property
    def is_running(self) -> bool:
        return self._batch is not None and not self._batch.cancelled

    def pause(self) -> None:
        self._pause.pause()
        self._logger.info("batch_paused")

    def resume(self) -> None:
        self._pause.resume()
        self._logger.info("batch_resumed")

    def stop(self) -> None:
        """Cancel every in-flight item and stop pulling new ones."""
        if self._batch is not None:
            self._batch.cancel()
        if self._prefetch is not None:
            self._prefetch.abort()
        self._logger.info("batch_stop_requested")

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def update_concurrency(self, concurrency: int) -> None:
        """
        Apply a new worker count to the next batch and to the prefetch buffer sizing.

        Raises:
            pydantic.ValidationError: *concurrency* is outside the configured bounds.
                Nothing is changed in that case.
        """
        self._config = SchedulerConfig.model_validate(
            {**self._config.model_dump(), "concurrency": concurrency}
        )
        if self._prefetch is not None:
            self._prefetch.update_concurrency(concurrency)

    # ── Running ────────────────────────────────────────────────────────────────

    async def run_all(
        self,
        source: Sequence[WorkItem] | PrefetchManager,
        *,
        prompt_set: PromptSet | None = None,
        cancel: CancellationToken | None = None,
    ) -> BatchSummary:
        """Drain :meth:`run` and summarise the outcome."""
        results = [r async for r in self.run(source, prompt_set=prompt_set, cancel=cancel)]
        return BatchSummary.from_results(results)

    async def run(
        self,
        source: Sequence[WorkItem] | PrefetchManager,
        *,
        prompt_set: PromptSet | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[GenerationResult]:
        """
        Process every item from *source*, yielding results as they complete.

        Args:
            source: A list of work items, or a prefetch manager over a remote dataset.
            prompt_set: Prompt set applied to every item. None = the generator's default.
            cancel: Optional parent token. Cancelling it is equivalent to :meth:`stop`.
        """
        batch = cancel.child() if cancel is not None else CancellationToken()
        self._batch = batch
        next_item, total = self._make_feed(source)
        worker_count = self._config.concurrency if self._prefetch else min(self._config.concurrency, total)
        self._progress = Progress(total=total)
        stopped = False
        emitted = 0

        self._publish(
            TracegenEvent.BATCH_STARTED,
            {
                "total": total,
                "concurrency": worker_count,
                "prompt_set": prompt_set.name if prompt_set is not None else None,
            },
        )
        self._logger.info("batch_started", total=total, workers=worker_count)

        if self._prefetch is not None:
            try:
                await self._prefetch.initial_prefetch()
            except Exception as exc:
                self._logger.warning("initial_prefetch_failed", error=str(exc))

        queue: asyncio.Queue[GenerationResult | None] = asyncio.Queue()
        workers = [
            asyncio.create_task(self._worker(n, next_item, queue, batch, prompt_set))
            for n in range(worker_count)
        ]
        finished = 0
        try:
            while finished < worker_count:
                result = await queue.get()
                if result is None:
                    finished += 1
                    continue
                emitted += 1
                yield result
        finally:
            stopped = batch.cancelled
            if any(not w.done() for w in workers):
                batch.cancel()
                stopped = True
            await asyncio.gather(*workers, return_exceptions=True)
            batch.detach()
            self._publish(
                TracegenEvent.BATCH_COMPLETED,
                {"total": total, "completed": emitted, "stopped": stopped},
            )
            self._logger.info("batch_completed", total=total, completed=emitted, stopped=stopped)
            self._batch = None
            self._prefetch = None

    def _make_feed(
        self, source: Sequence[WorkItem] | PrefetchManager
    ) -> tuple[Callable[[], Awaitable[WorkItem | None]], int]:
        if isinstance(source, PrefetchManager):
            self._prefetch = source
            source.update_concurrency(self._config.concurrency, refetch=False)
            columns = self._input_columns

            async def _next_remote() -> WorkItem | None:
                raw: dict[str, Any] | None = await source.get_next_item()
                return WorkItem.from_row(raw, columns) if raw is not None else None

            return _next_remote, source.total_requested

        self._prefetch = None
        pending = deque(source)

        async def _next_local() -> WorkItem | None:
            return pending.popleft() if pending else None

        return _next_local, len(pending)

    async def _worker(
        self,
        n: int,
        next_item: Callable[[], Awaitable[WorkItem | None]],
        queue: asyncio.Queue[GenerationResult | None],
        batch: CancellationToken,
        prompt_set: PromptSet | None,
    ) -> None:
        log = self._logger.bind(worker=n)
        poll = self._config.pause_poll_interval
        source_errors = 0
        try:
            while not batch.cancelled:
                await self._pause.wait_if_paused(batch, poll)
                if batch.cancelled:
                    break
                try:
                    item = await next_item()
                except Exception as exc:
                    source_errors += 1
                    log.warning("source_fetch_failed", error=str(exc), consecutive=source_errors)
                    await self._emit(
                        GenerationResult.failure(
                            self._id_generator("gen"),
                            None,
                            status=GenerationStatus.ERROR,
                            error=str(exc) or type(exc).__name__,
                            error_kind=ErrorKind.NETWORK,
                            source=self._source,
                        ),
                        queue,
                        persist=False,
                    )
                    if source_errors >= self._config.max_source_errors:
                        log.error("worker_exiting", reason="source_errors")
                        break
                    continue
                source_errors = 0
                if item is None or batch.cancelled:
                    break

                await self._pause.wait_if_paused(batch, poll)
                if batch.cancelled:
                    break
                self._progress.active_workers += 1
                self._publish_progress()
                try:
                    result = await self._runner.run(
                        item,
                        item_id=self._id_generator("gen"),
                        batch_token=batch,
                        prompt_set=prompt_set,
                    )
                finally:
                    self._progress.active_workers -= 1
                await self._emit(result, queue)

                if self._config.sleep_ms and not batch.cancelled:
                    await _sleep_unless_cancelled(self._config.sleep_ms / 1000, batch)
        finally:
            queue.put_nowait(None)

    async def _emit(
        self,
        result: GenerationResult,
        queue: asyncio.Queue[GenerationResult | None],
        *,
        persist: bool = True,
    ) -> None:
        """
        Record a terminal result and hand it to the consumer.

        Source failures pass ``persist=False``: they have no item behind them,
        so they are yielded but neither stored nor counted towards progress.
        """
        if persist:
            self._progress.current += 1
            self._publish_progress()
        if persist and self._sink is not None:
            try:
                await self._sink.append(result)
            except Exception as exc:
                self._logger.error("sink_append_failed", item_id=result.id, error=str(exc))
                self._publish(TracegenEvent.SINK_FAILED, {"id": result.id, "error": str(exc)})
        self._publish(
            TracegenEvent.ITEM_COMPLETED,
            {"id": result.id, "status": result.status.value, "duration_ms": result.duration_ms},
        )
        queue.put_nowait(result)

    def _publish_progress(self) -> None:
        self._publish(TracegenEvent.PROGRESS_UPDATED, self._progress.model_dump())

    def _publish(self, event: TracegenEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)


async def _sleep_unless_cancelled(seconds: float, batch: CancellationToken) -> None:
    try:
        await asyncio.wait_for(batch.wait(), timeout=seconds)
    except TimeoutError:
        pass
