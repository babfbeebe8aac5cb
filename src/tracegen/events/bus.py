"""In-process pub/sub event bus for tracegen run lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["TracegenEvent", dict[str, Any]], None | Awaitable[None]]


class TracegenEvent(StrEnum):
    """All event types published by tracegen components.

    Typed payload definitions for each event live in
    :mod:`tracegen.events.payloads`.

    **Payload schemas by event:**

    ``PREFETCH_STATE_CHANGED``
        :class:`~tracegen.events.payloads.PrefetchStateChangedPayload`:
        a ``PrefetchState.model_dump()``.

    ``STREAM_UPDATED``, ``STREAM_CLEARED``
        :class:`~tracegen.events.payloads.StreamUpdatedPayload`,
        :class:`~tracegen.events.payloads.StreamClearedPayload`. High-frequency;
        one ``STREAM_UPDATED`` per parsed chunk.

    ``PROGRESS_UPDATED``
        :class:`~tracegen.events.payloads.ProgressUpdatedPayload`:
        ``current``, ``total``, ``active_workers``.

    ``BATCH_STARTED``, ``ITEM_COMPLETED``, ``BATCH_COMPLETED``
        Scheduler lifecycle.

    ``RETRY_STARTED``, ``RETRY_COMPLETED``
        Bulk retry lifecycle.

    ``ROUTE_SELECTED``
        :class:`~tracegen.events.payloads.RouteSelectedPayload`.

    ``COMPACTION_COMPLETED``, ``COMPACTION_FAILED``
        Conversation compaction outcomes.

    ``SINK_FAILED``
        A result could not be persisted. The batch continues.
    """

    PREFETCH_STATE_CHANGED = "prefetch.state_changed"

    STREAM_UPDATED = "stream.updated"
    STREAM_CLEARED = "stream.cleared"

    PROGRESS_UPDATED = "progress.updated"
    BATCH_STARTED = "batch.started"
    ITEM_COMPLETED = "batch.item_completed"
    BATCH_COMPLETED = "batch.completed"

    RETRY_STARTED = "retry.started"
    RETRY_COMPLETED = "retry.completed"

    ROUTE_SELECTED = "route.selected"

    COMPACTION_COMPLETED = "compaction.completed"
    COMPACTION_FAILED = "compaction.failed"

    SINK_FAILED = "sink.failed"


class EventBus:
    """
    In-process pub/sub for one generation run.

    Sync handlers run inline inside :meth:`publish`. Async handlers are
    scheduled on the running loop and tracked until they finish; their
    failures are logged from a done-callback. A handler that raises never
    reaches the publisher, so a broken observer cannot stall a worker.

    ``STREAM_UPDATED`` fires once per parsed chunk. Publishers of large or
    frequent payloads use :meth:`publish_lazy` so nothing is serialised when
    no one is listening.

    Example::

        bus = EventBus()
        bus.subscribe(
            TracegenEvent.PROGRESS_UPDATED,
            lambda event, p: print(f"{p['current']}/{p['total']}"),
        )
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[TracegenEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._pending: set[asyncio.Task[None]] = set()
        self._logger = logger or structlog.get_logger("tracegen.events")

    def subscribe(self, event: TracegenEvent, handler: Handler) -> None:
        """
        Register a handler for one event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        self._global_handlers.append(handler)

    def unsubscribe(self, event: TracegenEvent, handler: Handler) -> None:
        """Remove a handler registered for *event*. No-op if not found."""
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def unsubscribe_all(self, handler: Handler) -> None:
        if handler in self._global_handlers:
            self._global_handlers.remove(handler)

    def has_subscribers(self, event: TracegenEvent) -> bool:
        return bool(self._global_handlers or self._handlers.get(event))

    def publish_lazy(self, event: TracegenEvent, build: Callable[[], dict[str, Any]]) -> None:
        """Build the payload and publish it only when *event* has subscribers."""
        if self.has_subscribers(event):
            self.publish(event, build())

    def publish(self, event: TracegenEvent, payload: dict[str, Any]) -> None:
        """
        Deliver *payload* to every handler for *event*, then to global handlers.

        Exceptions from handlers are logged and swallowed.
        """
        for handler in [*self._handlers.get(event, ()), *self._global_handlers]:
            try:
                outcome = handler(event, payload)
            except Exception as exc:
                self._log_failure(event, handler, exc)
                continue
            if asyncio.iscoroutine(outcome):
                self._schedule(event, handler, outcome)

    async def drain(self) -> None:
        """Wait for every scheduled async handler to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, event: TracegenEvent, handler: Handler, coro: Coroutine[Any, Any, None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to run it on
            coro.close()
            self._logger.debug("event_handler_dropped", event_type=event.value)
            return
        task = loop.create_task(coro)
        self._pending.add(task)

        def _done(finished: asyncio.Task[None]) -> None:
            self._pending.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                self._log_failure(event, handler, finished.exception())

        task.add_done_callback(_done)

    def _log_failure(self, event: TracegenEvent, handler: Handler, exc: BaseException | None) -> None:
        self._logger.error(
            "event_handler_error",
            event_type=event.value,
            handler=getattr(handler, "__qualname__", repr(handler)),
            error=str(exc),
        )
