"""Per-item deadlines, terminal status classification and bulk retry."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import structlog

from tracegen.cancellation import CancellationToken, CancelReason
from tracegen.errors import AbortedError, ItemTimeoutError, ValidationError
from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.models.work import ErrorKind, GenerationResult, GenerationStatus, WorkItem

if TYPE_CHECKING:
    from tracegen.prompts import PromptLibrary, PromptSet
    from tracegen.sinks.base import ResultSink


class Generator(Protocol):
    async def generate(
        self,
        item: WorkItem,
        *,
        item_id: str,
        cancel: CancellationToken,
        prompt_set: PromptSet | None = None,
    ) -> GenerationResult: ...


class ItemRunner:
    """
    Runs one generation under a deadline and turns every outcome into a result.

    The runner never raises for item-level failures. A deadline miss cancels
    the item token with :attr:`CancelReason.TIMEOUT` and yields a ``timeout``
    record; a user cancel yields ``aborted``; parse failures and collaborator
    exceptions yield ``error``. Only cancellation of the calling task itself
    propagates.

    Example::

        runner = ItemRunner(generator, timeout_seconds=300)
        result = await runner.run(item, item_id="gen_1", batch_token=batch)
    """

    def __init__(
        self,
        generator: Generator,
        *,
        timeout_seconds: float = 300.0,
        source: str | None = None,
    ) -> None:
        self._generator = generator
        self._timeout = timeout_seconds
        self._source = source
        self._logger = structlog.get_logger("tracegen.runner")

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    @timeout_seconds.setter
    def timeout_seconds(self, value: float) -> None:
        self._timeout = value

    async def run(
        self,
        item: WorkItem,
        *,
        item_id: str,
        batch_token: CancellationToken,
        prompt_set: PromptSet | None = None,
    ) -> GenerationResult:
        started = time.monotonic()
        token = batch_token.child()
        task = asyncio.create_task(
            self._generator.generate(item, item_id=item_id, cancel=token, prompt_set=prompt_set)
        )
        cancel_wait = asyncio.create_task(token.wait())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_wait},
                timeout=self._timeout or None,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if task in done:
                return self._settle(task, item, item_id, token, started)

            if not done:
                token.cancel(CancelReason.TIMEOUT)
            await _drain(task)
            if token.reason == CancelReason.TIMEOUT:
                return self._timed_out(item, item_id, started)
            return self._aborted(item, item_id, started, "Halted by user")
        except asyncio.CancelledError:
            token.cancel(CancelReason.USER)
            await _drain(task)
            raise
        finally:
            cancel_wait.cancel()
            token.detach()

    def _settle(
        self,
        task: asyncio.Task[GenerationResult],
        item: WorkItem,
        item_id: str,
        token: CancellationToken,
        started: float,
    ) -> GenerationResult:
        if task.cancelled():
            return self._aborted(item, item_id, started, "Halted by user")
        exc = task.exception()
        if exc is None:
            return task.result()

        log = self._logger.bind(item_id=item_id)
        if isinstance(exc, ItemTimeoutError) or token.reason == CancelReason.TIMEOUT:
            return self._timed_out(item, item_id, started)
        if isinstance(exc, AbortedError) or token.cancelled:
            return self._aborted(item, item_id, started, str(exc) or "Halted by user")
        kind = ErrorKind.VALIDATION if isinstance(exc, ValidationError) else ErrorKind.NETWORK
        log.warning("item_failed", error=str(exc), error_kind=kind.value)
        return GenerationResult.failure(
            item_id,
            item,
            status=GenerationStatus.ERROR,
            error=str(exc) or type(exc).__name__,
            error_kind=kind,
            duration_ms=_elapsed_ms(started),
            source=self._source,
        )

    def _timed_out(self, item: WorkItem, item_id: str, started: float) -> GenerationResult:
        self._logger.warning("item_timed_out", item_id=item_id, timeout_seconds=self._timeout)
        return GenerationResult.failure(
            item_id,
            item,
            status=GenerationStatus.TIMEOUT,
            error=str(ItemTimeoutError(self._timeout)),
            error_kind=ErrorKind.TIMEOUT,
            duration_ms=_elapsed_ms(started),
            source=self._source,
        )

    def _aborted(self, item: WorkItem, item_id: str, started: float, reason: str) -> GenerationResult:
        self._logger.debug("item_aborted", item_id=item_id)
        return GenerationResult.failure(
            item_id,
            item,
            status=GenerationStatus.ABORTED,
            error=reason,
            error_kind=ErrorKind.ABORTED,
            duration_ms=_elapsed_ms(started),
            source=self._source,
        )


async def _drain(task: asyncio.Task[GenerationResult]) -> None:
    """Give a cancelled generation a chance to unwind, then hard-cancel it."""
    if not task.done():
        await asyncio.wait({task}, timeout=0.05)
    if not task.done():
        task.cancel()
    await asyncio.gather(task, return_exceptions=True)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass
class RetryReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[GenerationResult] = field(default_factory=list)


class BulkRetrier:
    """
    Re-runs failed results with bounded concurrency.

    Each retried result keeps its id. The sink's record is replaced as soon
    as that item finishes, so a retry never duplicates an entry.
    """

    def __init__(
        self,
        runner: ItemRunner,
        sink: ResultSink,
        *,
        concurrency: int = 4,
        prompts: PromptLibrary | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._runner = runner
        self._sink = sink
        self._concurrency = concurrency
        self._prompts = prompts
        self._event_bus = event_bus
        self._retrying: set[str] = set()
        self._logger = structlog.get_logger("tracegen.retry")

    @property
    def retrying(self) -> frozenset[str]:
        """Ids currently being retried."""
        return frozenset(self._retrying)

    async def retry_item(
        self,
        result: GenerationResult,
        *,
        cancel: CancellationToken | None = None,
        prompt_set: PromptSet | None = None,
    ) -> GenerationResult:
        """Retry a single result and write the outcome back to the sink."""
        report = await self.retry_all_failed(
            [result], cancel=cancel, prompt_set=prompt_set, only_failed=False
        )
        return report.results[0] if report.results else result

    async def retry_all_failed(
        self,
        results: Iterable[GenerationResult],
        *,
        cancel: CancellationToken | None = None,
        prompt_set: PromptSet | None = None,
        only_failed: bool = True,
    ) -> RetryReport:
        """
        Retry every ``error``/``timeout`` result in *results*.

        Results already being retried are skipped, as are results with nothing
        to regenerate from (``retryable=False``). Aborted and done results
        are skipped unless ``only_failed=False``.
        """
        targets = [
            r
            for r in results
            if r.retryable
            and (r.is_failure or not only_failed)
            and r.id not in self._retrying
        ]
        report = RetryReport(attempted=len(targets))
        if not targets:
            return report

        batch = cancel if cancel is not None else CancellationToken()
        ids = [r.id for r in targets]
        self._retrying.update(ids)
        self._publish(TracegenEvent.RETRY_STARTED, {"ids": ids})
        self._logger.info("retry_started", count=len(targets), concurrency=self._concurrency)

        queue: asyncio.Queue[GenerationResult] = asyncio.Queue()
        for target in targets:
            queue.put_nowait(target)

        async def _worker() -> None:
            while not batch.cancelled:
                try:
                    previous = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    fresh = await self._runner.run(
                        previous.to_work_item(),
                        item_id=previous.id,
                        batch_token=batch,
                        prompt_set=prompt_set or self._original_prompt_set(previous),
                    )
                    await self._persist(fresh)
                    report.results.append(fresh)
                    if fresh.status == GenerationStatus.DONE:
                        report.succeeded += 1
                    else:
                        report.failed += 1
                    self._publish(
                        TracegenEvent.ITEM_COMPLETED,
                        {
                            "id": fresh.id,
                            "status": fresh.status.value,
                            "duration_ms": fresh.duration_ms,
                            "retry": True,
                        },
                    )
                finally:
                    self._retrying.discard(previous.id)

        workers = [
            asyncio.create_task(_worker()) for _ in range(min(self._concurrency, len(targets)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            self._retrying.difference_update(ids)

        self._publish(
            TracegenEvent.RETRY_COMPLETED,
            {"attempted": report.attempted, "succeeded": report.succeeded, "failed": report.failed},
        )
        self._logger.info(
            "retry_completed",
            attempted=report.attempted,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report

    async def _persist(self, result: GenerationResult) -> None:
        try:
            await self._sink.update_by_id(result.id, result)
        except Exception as exc:
            self._logger.error("sink_update_failed", item_id=result.id, error=str(exc))
            self._publish(TracegenEvent.SINK_FAILED, {"id": result.id, "error": str(exc)})

    def _original_prompt_set(self, result: GenerationResult) -> PromptSet | None:
        if self._prompts is None or result.prompt_set is None or result.prompt_set not in self._prompts:
            return None
        return self._prompts.get(result.prompt_set)

    def _publish(self, event: TracegenEvent, payload: dict[str, object]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)
