"""tracegen event bus."""

from tracegen.events.bus import EventBus, Handler, TracegenEvent
from tracegen.events.payloads import (
    BatchCompletedPayload,
    BatchStartedPayload,
    CompactionCompletedPayload,
    CompactionFailedPayload,
    ItemCompletedPayload,
    PrefetchStateChangedPayload,
    ProgressUpdatedPayload,
    RetryCompletedPayload,
    RetryStartedPayload,
    RouteSelectedPayload,
    SinkFailedPayload,
    StreamClearedPayload,
    StreamUpdatedPayload,
)

__all__ = [
    "BatchCompletedPayload",
    "BatchStartedPayload",
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "EventBus",
    "Handler",
    "ItemCompletedPayload",
    "PrefetchStateChangedPayload",
    "ProgressUpdatedPayload",
    "RetryCompletedPayload",
    "RetryStartedPayload",
    "RouteSelectedPayload",
    "SinkFailedPayload",
    "StreamClearedPayload",
    "StreamUpdatedPayload",
    "TracegenEvent",
]
