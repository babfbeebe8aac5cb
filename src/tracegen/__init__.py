"""
tracegen — bounded-concurrency orchestration for streaming LLM reasoning-trace generation.

Primary entry point::

    from tracegen import GenerationSession, TracegenConfig

    session = GenerationSession(TracegenConfig())
    async for result in session.run(["Why is the sky blue?"]):
        print(result.status, result.reasoning, result.answer)
"""

from tracegen.session import GenerationSession, make_id
from tracegen.cancellation import CancellationToken, CancelReason
from tracegen.errors import (
    AbortedError,
    ItemTimeoutError,
    NetworkError,
    SummarizationError,
    TracegenError,
    ValidationError,
)
from tracegen.models import (
    TracegenConfig,
    GenerationConfig,
    SchedulerConfig,
    PrefetchConfig,
    CompactionConfig,
    RoutingConfig,
    RetryConfig,
    SinkConfig,
    ModelInfo,
    OutputMode,
    CompactionStrategy,
    ClassifierMethod,
    ChatMessage,
    ChatRole,
    WorkItem,
    GenerationResult,
    GenerationStatus,
    ErrorKind,
    Progress,
    StreamingState,
    StreamingPhase,
    PrefetchState,
    CompactionResult,
    TokenUsage,
)
from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.engine import (
    BatchSummary,
    BulkRetrier,
    GenerationScheduler,
    ItemGenerator,
    ItemRunner,
    PauseFlag,
    RetryReport,
)
from tracegen.prefetch import HuggingFaceRowSource, PrefetchManager, RowSource
from tracegen.compaction import ContextCompactor
from tracegen.routing import TaskAutoRouter, TaskType
from tracegen.streaming import StreamingExtractor, StreamingTracker
from tracegen.sinks import InMemoryResultSink, ResultSink, SQLiteResultSink
from tracegen.llm import LiteLLMModelCall, ModelCall
from tracegen.prompts import PromptLibrary, PromptSet
from tracegen.tokens.estimator import TokenEstimator

__version__ = "0.1.0"

__all__ = [
    # Core
    "GenerationSession",
    "make_id",
    "CancellationToken",
    "CancelReason",
    # Errors
    "TracegenError",
    "NetworkError",
    "ItemTimeoutError",
    "AbortedError",
    "ValidationError",
    "SummarizationError",
    # Config
    "TracegenConfig",
    "GenerationConfig",
    "SchedulerConfig",
    "PrefetchConfig",
    "CompactionConfig",
    "RoutingConfig",
    "RetryConfig",
    "SinkConfig",
    "ModelInfo",
    "OutputMode",
    "CompactionStrategy",
    "ClassifierMethod",
    # Models
    "ChatMessage",
    "ChatRole",
    "WorkItem",
    "GenerationResult",
    "GenerationStatus",
    "ErrorKind",
    "Progress",
    "StreamingState",
    "StreamingPhase",
    "PrefetchState",
    "CompactionResult",
    "TokenUsage",
    # Events
    "EventBus",
    "TracegenEvent",
    # Engine
    "BatchSummary",
    "BulkRetrier",
    "GenerationScheduler",
    "ItemGenerator",
    "ItemRunner",
    "PauseFlag",
    "RetryReport",
    # Components
    "HuggingFaceRowSource",
    "PrefetchManager",
    "RowSource",
    "ContextCompactor",
    "TaskAutoRouter",
    "TaskType",
    "StreamingExtractor",
    "StreamingTracker",
    "InMemoryResultSink",
    "ResultSink",
    "SQLiteResultSink",
    "LiteLLMModelCall",
    "ModelCall",
    "PromptLibrary",
    "PromptSet",
    "TokenEstimator",
]
