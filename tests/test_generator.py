"""Tests for ItemGenerator: single-prompt generation and conversation rewrites."""

from __future__ import annotations

import itertools

import pytest

from tracegen.cancellation import CancellationToken
from tracegen.engine.generator import REASONING_JOINER, ItemGenerator, build_rewrite_input
from tracegen.errors import AbortedError, ValidationError
from tracegen.events.bus import TracegenEvent
from tracegen.models.config import GenerationConfig, OutputMode
from tracegen.models.message import ChatRole, TokenUsage
from tracegen.models.work import GenerationStatus, WorkItem
from tracegen.prompts import JSON_INSTRUCTION, PromptLibrary, PromptSet
from tracegen.streaming.extractor import StreamingTracker
from tests.conftest import FakeModelCall, events_of

JSON_REPLY = '{"query": "Rewritten Q", "reasoning": "Because R.", "answer": "A"}'


async def _generate(generator: ItemGenerator, item: WorkItem, **kwargs):
    return await generator.generate(item, item_id="gen_1", cancel=CancellationToken(), **kwargs)


def _chat_item(*turns: dict) -> WorkItem:
    return WorkItem.from_row({"messages": list(turns)})


class TestRewriteInput:
    def test_existing_trace_is_rewritten(self) -> None:
        text = build_rewrite_input("Why?", "old trace", "visible")
        assert text == "[USER QUERY]:\nWhy?\n\n[RAW REASONING TRACE]:\nold trace"

    def test_missing_trace_switches_to_imputation(self) -> None:
        text = build_rewrite_input("Why?", "", "Because.")
        assert text.startswith("[TASK]: REVERSE ENGINEERING REASONING")
        assert "[USER QUERY]:\nWhy?" in text
        assert text.endswith("[ASSISTANT RESPONSE]:\nBecause.")

    def test_no_user_query(self) -> None:
        assert "[USER QUERY]" not in build_rewrite_input(None, "trace", "reply")


class TestSinglePrompt:
    async def test_json_mode(self) -> None:
        model = FakeModelCall(JSON_REPLY)
        generator = ItemGenerator(model, GenerationConfig())

        result = await _generate(generator, WorkItem(content="seed text"))

        assert result.status == GenerationStatus.DONE
        assert result.query == "Rewritten Q"
        assert result.reasoning == "Because R."
        assert result.answer == "A"
        assert result.token_count == 15
        assert result.prompt_set == "default"
        assert result.model == "openai/gpt-4o-mini"
        assert model.calls[0]["user"] == "[SEED TEXT START]\nseed text\n[SEED TEXT END]"
        assert model.calls[0]["system"].endswith(JSON_INSTRUCTION)

    async def test_native_mode(self) -> None:
        model = FakeModelCall("<think>Think hard.</think>\n\n42")
        generator = ItemGenerator(model, GenerationConfig(output_mode=OutputMode.NATIVE))

        result = await _generate(generator, WorkItem(content="seed"))

        assert result.reasoning == "Think hard."
        assert result.answer == "42"
        assert result.query == "seed"
        assert JSON_INSTRUCTION not in model.calls[0]["system"]

    async def test_record_row_keeps_original_question(self) -> None:
        item = WorkItem.from_row({"question": "What is 6*7?", "answer": "<think>old</think>42"})
        generator = ItemGenerator(FakeModelCall(JSON_REPLY), GenerationConfig())

        result = await _generate(generator, item)

        assert result.query == "What is 6*7?"
        assert result.original_answer == "42"
        assert result.original_reasoning == "old"

    async def test_unselected_fields_keep_originals(self) -> None:
        item = WorkItem.from_row({"question": "Q?", "answer": "<think>old</think>42"})
        model = FakeModelCall("<think>new trace</think>ignored answer")
        config = GenerationConfig(output_mode=OutputMode.NATIVE, selected_fields=["reasoning"])

        result = await _generate(ItemGenerator(model, config), item)

        assert result.reasoning == "new trace"
        assert result.answer == "42"

    async def test_empty_output_is_rejected(self) -> None:
        generator = ItemGenerator(FakeModelCall(""), GenerationConfig(output_mode=OutputMode.NATIVE))
        with pytest.raises(ValidationError, match="neither reasoning nor answer"):
            await _generate(generator, WorkItem(content="seed"))

    async def test_unparseable_json(self) -> None:
        generator = ItemGenerator(FakeModelCall("just prose"), GenerationConfig())
        with pytest.raises(ValidationError, match="Unparseable model output"):
            await _generate(generator, WorkItem(content="seed"))

    async def test_token_count_falls_back_to_estimate(self) -> None:
        model = FakeModelCall("<think>abcd</think>efgh", usage=TokenUsage())
        generator = ItemGenerator(model, GenerationConfig(output_mode=OutputMode.NATIVE))
        result = await _generate(generator, WorkItem(content="seed"))
        assert result.token_count == 2

    async def test_custom_prompt_set(self) -> None:
        model = FakeModelCall(JSON_REPLY)
        terse = PromptSet(name="terse", system_prompt="Reply as json.", user_template="Q: {{ item }}")
        library = PromptLibrary([terse])
        generator = ItemGenerator(model, GenerationConfig(), prompts=library)

        result = await _generate(generator, WorkItem(content="seed"), prompt_set=library.get("terse"))

        assert model.calls[0]["user"] == "Q: seed"
        assert model.calls[0]["system"] == "Reply as json."
        assert result.prompt_set == "terse"

    async def test_cancelled_token_raises(self) -> None:
        token = CancellationToken()
        token.cancel()
        generator = ItemGenerator(FakeModelCall(), GenerationConfig())
        with pytest.raises(AbortedError):
            await generator.generate(WorkItem(content="x"), item_id="gen_1", cancel=token)

    async def test_stream_state_is_published_then_cleared(self, event_bus) -> None:
        tracker = StreamingTracker(event_bus)
        generator = ItemGenerator(FakeModelCall(JSON_REPLY), GenerationConfig(), tracker=tracker)

        await _generate(generator, WorkItem(content="seed"))

        assert events_of(event_bus, TracegenEvent.STREAM_UPDATED)
        assert events_of(event_bus, TracegenEvent.STREAM_CLEARED) == [{"id": "gen_1"}]
        assert tracker.get("gen_1") is None

    async def test_stream_state_cleared_on_failure(self) -> None:
        tracker = StreamingTracker()
        model = FakeModelCall(fail_with=RuntimeError("boom"))
        generator = ItemGenerator(model, GenerationConfig(), tracker=tracker)
        with pytest.raises(RuntimeError):
            await _generate(generator, WorkItem(content="seed"))
        assert tracker.active == {}


class TestConversationRewrite:
    CHAT = (
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "how?"},
        {"role": "assistant", "content": "<think>old r</think>like this"},
    )

    @staticmethod
    def _numbered_model() -> FakeModelCall:
        counter = itertools.count(1)
        return FakeModelCall(lambda prompt: f"<think>new {next(counter)}</think>ignored")

    async def test_each_assistant_turn_is_rewritten(self) -> None:
        model = self._numbered_model()
        generator = ItemGenerator(model, GenerationConfig(output_mode=OutputMode.NATIVE))

        result = await _generate(generator, _chat_item(*self.CHAT))

        assert len(model.calls) == 2
        first, second = model.calls
        assert first["user"].startswith("[INPUT LOGIC START]\n[TASK]: REVERSE ENGINEERING")
        assert "[ASSISTANT RESPONSE]:\nhello" in first["user"]
        assert first["messages"] == []
        assert "[RAW REASONING TRACE]:\nold r" in second["user"]
        assert [(m.role, m.content) for m in second["messages"]] == [
            (ChatRole.USER, "hi"),
            (ChatRole.ASSISTANT, "hello"),
        ]

        assert result.is_multi_turn
        assert result.query == "hi"
        assert result.reasoning == REASONING_JOINER.join(["new 1", "new 2"])
        assert result.messages[1].content == "<think>new 1</think>\n\nhello"
        assert result.messages[3].content == "<think>new 2</think>\n\nlike this"
        assert result.answer == result.messages[-1].content
        assert result.token_count == 30

    async def test_max_traces_limits_rewrites(self) -> None:
        model = self._numbered_model()
        config = GenerationConfig(output_mode=OutputMode.NATIVE, max_traces=1)

        result = await _generate(ItemGenerator(model, config), _chat_item(*self.CHAT))

        assert len(model.calls) == 1
        assert [m.role for m in result.messages] == [ChatRole.USER, ChatRole.ASSISTANT]
        assert result.reasoning == "new 1"

    async def test_unparseable_turn_keeps_original_trace(self) -> None:
        generator = ItemGenerator(FakeModelCall("not json"), GenerationConfig())

        result = await _generate(generator, _chat_item(*self.CHAT))

        assert result.status == GenerationStatus.DONE
        assert result.messages[3].reasoning == "old r"
        assert result.reasoning == "old r"

    async def test_cancel_between_turns(self) -> None:
        token = CancellationToken()
        inner = FakeModelCall("<think>r</think>a")

        async def cancelling(system, user, **kwargs):
            response = await inner(system, user, **kwargs)
            token.cancel()
            return response

        generator = ItemGenerator(cancelling, GenerationConfig(output_mode=OutputMode.NATIVE))
        with pytest.raises(AbortedError):
            await generator.generate(_chat_item(*self.CHAT), item_id="gen_1", cancel=token)
        assert len(inner.calls) == 1

    async def test_rewrite_prompt_used_as_system(self) -> None:
        model = self._numbered_model()
        library = PromptLibrary([PromptSet(name="rw", rewrite_prompt="Rewrite the trace.")])
        generator = ItemGenerator(model, GenerationConfig(output_mode=OutputMode.NATIVE), prompts=library)

        await _generate(generator, _chat_item(*self.CHAT), prompt_set=library.get("rw"))

        assert model.calls[0]["system"] == "Rewrite the trace."
