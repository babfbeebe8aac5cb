"""Tests for streaming field extraction and output parsers."""

from __future__ import annotations

import pytest

from tracegen.events.bus import TracegenEvent
from tracegen.models.config import OutputMode
from tracegen.models.message import ChatMessage, ChatRole, TokenUsage
from tracegen.models.state import StreamingPhase
from tracegen.streaming.extractor import FieldSelection, StreamingExtractor, StreamingTracker
from tracegen.streaming.parsers import (
    extract_json_fields,
    parse_json_output,
    parse_native_output,
    parse_think_tags,
    strip_empty_think,
)
from tests.conftest import events_of


def _extractor(mode=OutputMode.NATIVE, fields=None, total_messages=1):
    tracker = StreamingTracker()
    with tracker.track("gen_1", total_messages=total_messages) as state:
        pass
    return StreamingExtractor(state, mode, fields), state


class TestNativeExtraction:
    """Tag-delimited mode."""

    def test_unclosed_think_is_partial_reasoning(self) -> None:
        extractor, state = _extractor()
        stop = extractor.on_chunk("partial", "<think>partial")
        assert stop is False
        assert state.phase == StreamingPhase.EXTRACTING_REASONING
        assert state.current_reasoning == "partial"
        assert state.current_answer == ""

    def test_closed_think_moves_to_answer(self) -> None:
        extractor, state = _extractor()
        extractor.on_chunk("<think>", "<think>")
        extractor.on_chunk("answer", "<think>done</think>final answer")
        assert state.phase == StreamingPhase.EXTRACTING_ANSWER
        assert state.current_reasoning == "done"
        assert state.current_answer == "final answer"

    def test_reasoning_only_requests_early_stop(self) -> None:
        extractor, state = _extractor(fields=FieldSelection(reasoning=True, answer=False))
        assert extractor.on_chunk("x", "<think>just this") is False
        assert extractor.on_chunk("y", "<think>just this</think>and more") is True
        assert state.phase == StreamingPhase.MESSAGE_COMPLETE
        assert state.current_reasoning == "just this"

    def test_answer_only_without_tags_streams_whole_text(self) -> None:
        extractor, state = _extractor(fields=FieldSelection(reasoning=False, answer=True))
        extractor.on_chunk("plain", "plain answer")
        assert state.phase == StreamingPhase.EXTRACTING_ANSWER
        assert state.current_answer == "plain answer"

    def test_answer_only_ignores_open_think(self) -> None:
        extractor, state = _extractor(fields=FieldSelection(reasoning=False, answer=True))
        extractor.on_chunk("x", "<think>hidden")
        assert state.phase == StreamingPhase.WAITING_FOR_RESPONSE
        assert state.current_answer == ""

    def test_untagged_text_is_the_answer(self) -> None:
        extractor, state = _extractor()
        extractor.on_chunk("plain", "plain answer with no tags")
        assert state.phase == StreamingPhase.EXTRACTING_ANSWER
        assert state.current_answer == "plain answer with no tags"
        assert state.current_reasoning == ""

    def test_partial_open_marker_keeps_waiting(self) -> None:
        extractor, state = _extractor()
        extractor.on_chunk("<thi", "<thi")
        assert state.phase == StreamingPhase.WAITING_FOR_RESPONSE
        extractor.on_chunk("nk>", "<think>step")
        assert state.phase == StreamingPhase.EXTRACTING_REASONING
        assert state.current_reasoning == "step"

    def test_raw_accumulated_is_capped(self) -> None:
        extractor, state = _extractor()
        text = "a" * 6000 + "TAIL"
        extractor.on_chunk("TAIL", text)
        assert len(state.raw_accumulated) == 5000
        assert state.raw_accumulated.endswith("TAIL")

    def test_usage_recorded_from_final_chunk(self) -> None:
        extractor, _ = _extractor()
        usage = TokenUsage(prompt_tokens=3, completion_tokens=4, total_tokens=7)
        extractor.on_chunk("", "done", usage)
        assert extractor.usage == usage


class TestJsonExtraction:
    """Structured mode over partial JSON."""

    def test_partial_reasoning_value(self) -> None:
        extractor, state = _extractor(OutputMode.JSON)
        extractor.on_chunk("", '{"query": "q", "reasoning": "thinking ab')
        assert state.phase == StreamingPhase.EXTRACTING_REASONING
        assert state.current_reasoning == "thinking ab"

    def test_closed_reasoning_moves_to_answer(self) -> None:
        extractor, state = _extractor(OutputMode.JSON)
        extractor.on_chunk("", '{"reasoning": "r1", "answer": "fin')
        assert state.phase == StreamingPhase.EXTRACTING_ANSWER
        assert state.current_reasoning == "r1"
        assert state.current_answer == "fin"

    def test_phase_never_regresses_within_message(self) -> None:
        extractor, state = _extractor(OutputMode.JSON)
        extractor.on_chunk("", '{"reasoning": "r1", "answer": "')
        assert state.phase == StreamingPhase.EXTRACTING_ANSWER
        extractor.on_chunk("", '{"reasoning": "r1')
        assert state.phase == StreamingPhase.EXTRACTING_ANSWER

    def test_json_mode_never_stops_early(self) -> None:
        extractor, _ = _extractor(OutputMode.JSON, FieldSelection(reasoning=True, answer=False))
        assert extractor.on_chunk("", '{"reasoning": "r", "answer": "a"}') is False


class TestMultiTurn:
    def test_complete_turn_records_and_resets(self) -> None:
        extractor, state = _extractor(total_messages=2)
        extractor.on_chunk("", "<think>r1</think>visible")
        extractor.complete_turn(
            ChatMessage(role=ChatRole.USER, content="hi"),
            ChatMessage(role=ChatRole.ASSISTANT, content="fallback"),
            "next question",
        )
        assert state.current_message_index == 1
        assert state.phase == StreamingPhase.WAITING_FOR_RESPONSE
        assert state.current_user_message == "next question"
        assert state.current_reasoning == ""
        assert state.raw_accumulated == ""
        assert [m.role for m in state.completed_messages] == [ChatRole.USER, ChatRole.ASSISTANT]
        assert state.completed_messages[1].content == "visible"
        assert state.completed_messages[1].reasoning == "r1"

    def test_last_turn_marks_message_complete(self) -> None:
        extractor, state = _extractor(total_messages=1)
        extractor.complete_turn(None, ChatMessage(role=ChatRole.ASSISTANT, content="<think></think> ok"), None)
        assert state.phase == StreamingPhase.MESSAGE_COMPLETE
        assert state.completed_messages[-1].content == "ok"


class TestStreamingTracker:
    def test_track_publishes_and_clears(self, event_bus) -> None:
        tracker = StreamingTracker(event_bus)
        with tracker.track("gen_1", single_prompt=True) as state:
            assert tracker.get("gen_1") is state
            assert state.is_single_prompt
        assert tracker.get("gen_1") is None
        assert events_of(event_bus, TracegenEvent.STREAM_UPDATED)
        assert events_of(event_bus, TracegenEvent.STREAM_CLEARED) == [{"id": "gen_1"}]

    def test_track_clears_on_error(self, event_bus) -> None:
        tracker = StreamingTracker(event_bus)
        with pytest.raises(RuntimeError):
            with tracker.track("gen_2") as state:
                raise RuntimeError("boom")
        assert state.phase == StreamingPhase.ERROR
        assert tracker.active == {}


class TestParsers:
    def test_think_tags_without_tags(self) -> None:
        parsed = parse_think_tags("  just an answer ")
        assert parsed.has_think_tags is False
        assert parsed.answer == "just an answer"
        assert parsed.reasoning == ""

    def test_strip_empty_think(self) -> None:
        assert strip_empty_think("<think>  </think>\nHello") == "Hello"

    def test_native_output_prefers_reasoning_channel(self) -> None:
        out = parse_native_output("<think>tagged</think>answer", reasoning_content="channel")
        assert out == {"reasoning": "channel", "answer": "answer"}

    def test_json_output_strict(self) -> None:
        out = parse_json_output('{"query": "q", "reasoning": "r", "answer": "a"}')
        assert out == {"query": "q", "reasoning": "r", "answer": "a"}

    def test_json_output_in_code_fence(self) -> None:
        text = 'Here you go:\n```json\n{"reasoning": "r", "answer": 42}\n```'
        out = parse_json_output(text)
        assert out["reasoning"] == "r"
        assert out["answer"] == "42"

    def test_json_output_falls_back_to_field_extraction(self) -> None:
        out = parse_json_output('{"reasoning": "line1\\nline2", "answer": "cut off')
        assert out["reasoning"] == "line1\nline2"
        assert out["answer"] == "cut off"

    def test_json_output_without_fields_raises(self) -> None:
        with pytest.raises(ValueError):
            parse_json_output("no structure at all")

    def test_escaped_quotes_do_not_end_value(self) -> None:
        fields = extract_json_fields('{"answer": "say \\"hi\\" now", "x": 1}')
        assert fields.answer == 'say "hi" now'
        assert fields.has_answer_end

    def test_quote_at_buffer_end_is_not_confirmed(self) -> None:
        fields = extract_json_fields('{"reasoning": "almost"')
        assert fields.has_reasoning_start
        assert not fields.has_reasoning_end
