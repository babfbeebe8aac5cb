"""Typed payload definitions for each TracegenEvent.

Usage example::

    from tracegen.events.bus import EventBus, TracegenEvent
    from tracegen.events.payloads import ProgressUpdatedPayload

    def on_progress(event: TracegenEvent, payload: ProgressUpdatedPayload) -> None:
        print(f"{payload['current']}/{payload['total']} ({payload['active_workers']} active)")

    bus.subscribe(TracegenEvent.PROGRESS_UPDATED, on_progress)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import Any, NotRequired, TypedDict

# ── Prefetch ──────────────────────────────────────────────────────────────────


class PrefetchStateChangedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.PREFETCH_STATE_CHANGED`."""

    buffer_size: int
    current_offset: int
    total_requested: int
    total_delivered: int
    is_complete: bool
    is_fetching: bool
    concurrency: int
    config: dict[str, Any]


# ── Streaming ─────────────────────────────────────────────────────────────────


class StreamUpdatedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.STREAM_UPDATED`.

    A ``StreamingState.model_dump()``.
    """

    id: str
    phase: str
    current_message_index: int
    total_messages: int
    completed_messages: list[dict[str, Any]]
    current_user_message: str | None
    current_reasoning: str
    current_answer: str
    raw_accumulated: str
    is_single_prompt: bool


class StreamClearedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.STREAM_CLEARED`."""

    id: str


# ── Scheduler ─────────────────────────────────────────────────────────────────


class ProgressUpdatedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.PROGRESS_UPDATED`."""

    current: int
    total: int
    active_workers: int


class BatchStartedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.BATCH_STARTED`."""

    total: int
    concurrency: int
    prompt_set: str


class ItemCompletedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.ITEM_COMPLETED`."""

    id: str
    status: str
    duration_ms: int
    retry: NotRequired[bool]


class BatchCompletedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.BATCH_COMPLETED`."""

    total: int
    completed: int
    stopped: bool


# ── Retry ─────────────────────────────────────────────────────────────────────


class RetryStartedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.RETRY_STARTED`."""

    ids: list[str]


class RetryCompletedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.RETRY_COMPLETED`."""

    attempted: int
    succeeded: int
    failed: int


# ── Routing ───────────────────────────────────────────────────────────────────


class RouteSelectedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.ROUTE_SELECTED`."""

    task_type: str
    confidence: float
    prompt_set: str
    applied: bool


# ── Compaction ────────────────────────────────────────────────────────────────


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.COMPACTION_COMPLETED`."""

    compaction_type: str
    original_tokens: int
    final_tokens: int
    removed_messages: int


class CompactionFailedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.COMPACTION_FAILED`."""

    strategy: str
    error: str
    fallback: str


# ── Sinks ─────────────────────────────────────────────────────────────────────


class SinkFailedPayload(TypedDict):
    """Payload for :attr:`TracegenEvent.SINK_FAILED`."""

    id: str
    error: str
