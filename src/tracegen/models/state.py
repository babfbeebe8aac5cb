"""Observable state snapshots: streaming extraction and dataset prefetch."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from tracegen.models.config import PrefetchConfig
from tracegen.models.message import ChatMessage

MAX_STREAM_RAW_CHARS = 5000


class StreamingPhase(StrEnum):
    WAITING_FOR_RESPONSE = "waiting_for_response"
    EXTRACTING_REASONING = "extracting_reasoning"
    EXTRACTING_ANSWER = "extracting_answer"
    MESSAGE_COMPLETE = "message_complete"
    COMPLETE = "complete"
    ERROR = "error"


PHASE_ORDER: dict[StreamingPhase, int] = {
    StreamingPhase.WAITING_FOR_RESPONSE: 0,
    StreamingPhase.EXTRACTING_REASONING: 1,
    StreamingPhase.EXTRACTING_ANSWER: 2,
    StreamingPhase.MESSAGE_COMPLETE: 3,
    StreamingPhase.COMPLETE: 4,
    StreamingPhase.ERROR: 5,
}


class StreamingState(BaseModel):
    """Live extraction state for one in-flight item."""

    id: str
    phase: StreamingPhase = StreamingPhase.WAITING_FOR_RESPONSE
    current_message_index: int = 0
    total_messages: int = 1
    completed_messages: list[ChatMessage] = Field(default_factory=list)
    current_user_message: str | None = None
    current_reasoning: str = ""
    current_answer: str = ""
    raw_accumulated: str = Field(
        default="",
        description=f"Tail of the raw stream, capped at {MAX_STREAM_RAW_CHARS} characters.",
    )
    is_single_prompt: bool = False


class PrefetchState(BaseModel):
    """Point-in-time snapshot of a :class:`~tracegen.prefetch.manager.PrefetchManager`."""

    buffer_size: int
    current_offset: int
    total_requested: int
    total_delivered: int
    is_complete: bool
    is_fetching: bool
    concurrency: int
    config: PrefetchConfig
