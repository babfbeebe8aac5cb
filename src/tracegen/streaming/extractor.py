"""Incremental field extraction over a streaming model response.

A :class:`StreamingExtractor` is bound to one :class:`StreamingState` and is
fed the full accumulated text on every chunk. It advances the state's phase
and partial ``current_reasoning``/``current_answer`` and can ask the caller to
stop the stream early when only reasoning was requested.

A :class:`StreamingTracker` owns the registry of live states and publishes
``STREAM_UPDATED``/``STREAM_CLEARED`` on the event bus. Its :meth:`track`
context manager guarantees a state is cleared on success, error, timeout
or cancellation.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

import structlog

from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.models.config import OutputMode
from tracegen.models.message import ChatMessage, ChatRole, TokenUsage
from tracegen.models.state import (
    MAX_STREAM_RAW_CHARS,
    PHASE_ORDER,
    StreamingPhase,
    StreamingState,
)
from tracegen.streaming.parsers import (
    THINK_CLOSE,
    THINK_OPEN,
    extract_json_fields,
    parse_think_tags,
    partial_reasoning,
    strip_empty_think,
)


@dataclass(frozen=True, slots=True)
class FieldSelection:
    """Which output fields the caller wants generated."""

    reasoning: bool = True
    answer: bool = True

    @classmethod
    def from_selected(cls, selected: Sequence[str] | None) -> FieldSelection:
        if not selected:
            return cls()
        return cls(reasoning="reasoning" in selected, answer="answer" in selected)


class StreamingTracker:
    """Registry of live streaming states, one per in-flight item."""

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._states: dict[str, StreamingState] = {}
        self._event_bus = event_bus
        self._logger = structlog.get_logger("tracegen.streaming")

    @contextmanager
    def track(
        self,
        item_id: str,
        *,
        total_messages: int = 1,
        user_message: str | None = None,
        single_prompt: bool = False,
    ) -> Iterator[StreamingState]:
        """Register a fresh state for *item_id* and always clear it on exit."""
        state = StreamingState(
            id=item_id,
            total_messages=total_messages,
            current_user_message=user_message,
            is_single_prompt=single_prompt,
        )
        self._states[item_id] = state
        self.publish(state)
        try:
            yield state
        except BaseException:
            state.phase = StreamingPhase.ERROR
            raise
        finally:
            self.clear(item_id)

    def publish(self, state: StreamingState) -> None:
        if self._event_bus is not None:
            self._event_bus.publish_lazy(
                TracegenEvent.STREAM_UPDATED, lambda: state.model_dump(mode="json")
            )

    def clear(self, item_id: str) -> None:
        if self._states.pop(item_id, None) is None:
            return
        if self._event_bus is not None:
            self._event_bus.publish(TracegenEvent.STREAM_CLEARED, {"id": item_id})

    def get(self, item_id: str) -> StreamingState | None:
        return self._states.get(item_id)

    @property
    def active(self) -> dict[str, StreamingState]:
        """Snapshot of all live states keyed by item id."""
        return dict(self._states)


class StreamingExtractor:
    """
    Drives a :class:`StreamingState` from accumulated stream text.

    Tag-delimited (``native``) mode scans for ``<think>``/``</think>``.
    Structured (``json``) mode reads partial ``"reasoning"``/``"answer"``
    string values. Phase changes are monotonic within one message; only
    :meth:`complete_turn` rewinds them for the next turn.

    Example::

        with tracker.track(item_id, single_prompt=True) as state:
            extractor = StreamingExtractor(state, OutputMode.NATIVE, tracker=tracker)
            response = await model_call(system, user, on_chunk=extractor.on_chunk, cancel=token)
    """

    def __init__(
        self,
        state: StreamingState,
        mode: OutputMode,
        fields: FieldSelection | None = None,
        tracker: StreamingTracker | None = None,
    ) -> None:
        self._state = state
        self._mode = mode
        self._fields = fields or FieldSelection()
        self._tracker = tracker
        self.usage: TokenUsage | None = None

    @property
    def state(self) -> StreamingState:
        return self._state

    def on_chunk(self, chunk: str, accumulated: str, usage: TokenUsage | None = None) -> bool:
        """
        Consume the latest chunk. Returns True when the stream should stop.

        Args:
            chunk: The newly received delta (unused beyond bookkeeping).
            accumulated: Full text received so far for the current message.
            usage: Provider usage, typically only on the final chunk.
        """
        if usage is not None:
            self.usage = usage

        if self._mode == OutputMode.NATIVE:
            stop = self._on_native(accumulated)
        else:
            self._on_json(accumulated)
            stop = False

        self._state.raw_accumulated = accumulated[-MAX_STREAM_RAW_CHARS:]
        if self._tracker is not None:
            self._tracker.publish(self._state)
        return stop

    def _advance(self, phase: StreamingPhase) -> None:
        if PHASE_ORDER[phase] >= PHASE_ORDER[self._state.phase]:
            self._state.phase = phase

    def _on_native(self, accumulated: str) -> bool:
        state = self._state
        think_start = THINK_OPEN.search(accumulated) is not None
        think_end = THINK_CLOSE.search(accumulated) is not None
        want_reasoning, want_answer = self._fields.reasoning, self._fields.answer
        # A leading "<thi" may still become an open marker on the next chunk.
        untagged = not think_start and not _may_open_think(accumulated)

        if want_reasoning:
            if think_start and not think_end:
                self._advance(StreamingPhase.EXTRACTING_REASONING)
                state.current_reasoning = partial_reasoning(accumulated) or state.current_reasoning
            elif think_start and think_end:
                parsed = parse_think_tags(accumulated)
                state.current_reasoning = parsed.reasoning or state.current_reasoning
                if not want_answer:
                    self._advance(StreamingPhase.MESSAGE_COMPLETE)
                    return True
                self._advance(StreamingPhase.EXTRACTING_ANSWER)
                state.current_answer = parsed.answer or state.current_answer
            elif untagged and want_answer:
                self._advance(StreamingPhase.EXTRACTING_ANSWER)
                state.current_answer = accumulated
        elif want_answer:
            if think_start and think_end:
                self._advance(StreamingPhase.EXTRACTING_ANSWER)
                state.current_answer = parse_think_tags(accumulated).answer or state.current_answer
            elif untagged:
                self._advance(StreamingPhase.EXTRACTING_ANSWER)
                state.current_answer = accumulated
        return False

    def _on_json(self, accumulated: str) -> None:
        state = self._state
        extracted = extract_json_fields(accumulated)
        if self._fields.reasoning:
            if extracted.has_reasoning_start and not extracted.has_reasoning_end:
                self._advance(StreamingPhase.EXTRACTING_REASONING)
            elif extracted.has_reasoning_end:
                self._advance(StreamingPhase.EXTRACTING_ANSWER)
        elif self._fields.answer:
            if extracted.has_answer_start and not extracted.has_answer_end:
                self._advance(StreamingPhase.EXTRACTING_ANSWER)
        state.current_reasoning = extracted.reasoning or state.current_reasoning
        state.current_answer = extracted.answer or state.current_answer

    def complete_turn(
        self,
        user_message: ChatMessage | None,
        assistant_message: ChatMessage | None,
        next_user_message: str | None,
    ) -> None:
        """
        Record a finished assistant turn in multi-turn mode and reset for the next.

        The completed user and assistant turns are appended to
        ``completed_messages``. Live accumulators win over the assistant
        message's own content. Empty ``<think></think>`` blocks are stripped.
        """
        state = self._state
        if user_message is not None:
            state.completed_messages.append(user_message.model_copy())
        if assistant_message is not None:
            content = strip_empty_think(state.current_answer or assistant_message.content or "")
            state.completed_messages.append(
                ChatMessage(
                    role=ChatRole.ASSISTANT,
                    content=content,
                    reasoning=state.current_reasoning or assistant_message.reasoning or "",
                )
            )
        state.current_message_index += 1
        state.phase = (
            StreamingPhase.WAITING_FOR_RESPONSE
            if state.current_message_index < state.total_messages
            else StreamingPhase.MESSAGE_COMPLETE
        )
        state.current_user_message = next_user_message
        state.current_reasoning = ""
        state.current_answer = ""
        state.raw_accumulated = ""
        if self._tracker is not None:
            self._tracker.publish(state)

    def finish(self) -> None:
        """Mark the whole item complete."""
        self._state.phase = StreamingPhase.COMPLETE
        if self._tracker is not None:
            self._tracker.publish(self._state)


def _may_open_think(text: str) -> bool:
    """True while *text* is empty or a prefix of an opening ``<think>`` marker."""
    head = text.lstrip()[: len("<think>")].lower()
    return "<think>".startswith(head)
