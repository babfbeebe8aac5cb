"""tracegen data models."""

from tracegen.models.config import (
    ClassifierMethod,
    CompactionConfig,
    CompactionStrategy,
    GenerationConfig,
    ModelInfo,
    OutputMode,
    PrefetchConfig,
    RetryConfig,
    RoutingConfig,
    SchedulerConfig,
    SinkConfig,
    TracegenConfig,
)
from tracegen.models.message import (
    ChatMessage,
    ChatRole,
    CompactionResult,
    ContextStatus,
    ModelResponse,
    TokenUsage,
)
from tracegen.models.state import PrefetchState, StreamingPhase, StreamingState
from tracegen.models.work import (
    ChatRow,
    ErrorKind,
    GenerationResult,
    GenerationStatus,
    Progress,
    RecordRow,
    RowPayload,
    WorkItem,
    row_from_raw,
)

__all__ = [
    "ChatMessage",
    "ChatRole",
    "ChatRow",
    "ClassifierMethod",
    "CompactionConfig",
    "CompactionResult",
    "CompactionStrategy",
    "ContextStatus",
    "ErrorKind",
    "GenerationConfig",
    "GenerationResult",
    "GenerationStatus",
    "ModelInfo",
    "ModelResponse",
    "OutputMode",
    "PrefetchConfig",
    "PrefetchState",
    "Progress",
    "RecordRow",
    "RetryConfig",
    "RoutingConfig",
    "RowPayload",
    "SchedulerConfig",
    "SinkConfig",
    "StreamingPhase",
    "StreamingState",
    "TokenUsage",
    "TracegenConfig",
    "WorkItem",
    "row_from_raw",
]
