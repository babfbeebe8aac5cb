"""Result sinks: where terminal generation results are persisted."""

from tracegen.sinks.base import InMemoryResultSink, ResultSink
from tracegen.sinks.sqlite import SinkNotInitializedError, SQLiteResultSink

__all__ = ["InMemoryResultSink", "ResultSink", "SQLiteResultSink", "SinkNotInitializedError"]
