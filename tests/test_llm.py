"""Tests for the litellm-backed model call, mock mode and helper factories."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace

import pytest

from tracegen.cancellation import CancellationToken
from tracegen.errors import AbortedError
from tracegen.llm.helpers import make_llm_classifier, make_summarizer
from tracegen.llm.model_call import LiteLLMModelCall, build_messages, mock_completion
from tracegen.models.message import ChatMessage, ChatRole
from tracegen.routing.classifier import TaskType


def _chunk(content: str | None = None, reasoning: str | None = None, usage=None):
    delta = SimpleNamespace(content=content, reasoning_content=reasoning)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=usage)


@pytest.fixture
def fake_acompletion(monkeypatch):
    """Replace litellm.acompletion with a scripted stream; returns the captured kwargs."""
    import litellm

    captured: dict = {}
    script: list = []

    async def _stream():
        for chunk in script:
            yield chunk

    async def _acompletion(**kwargs):
        captured.update(kwargs)
        return _stream()

    monkeypatch.setattr(litellm, "acompletion", _acompletion)
    captured["script"] = script
    return captured


class TestBuildMessages:
    def test_system_history_user(self) -> None:
        history = [
            ChatMessage(role=ChatRole.USER, content="hi"),
            ChatMessage(role=ChatRole.ASSISTANT, content="hello", reasoning="hidden"),
        ]
        messages = build_messages("sys", "next", history)
        assert messages == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "next"},
        ]

    def test_empty_system_prompt_omitted(self) -> None:
        assert build_messages("", "q") == [{"role": "user", "content": "q"}]


class TestLiteLLMModelCall:
    async def test_streams_and_collects_usage(self, fake_acompletion) -> None:
        fake_acompletion["script"].extend(
            [
                _chunk(content="Hello "),
                _chunk(content="world"),
                SimpleNamespace(choices=[], usage={"prompt_tokens": 3, "completion_tokens": 2}),
            ]
        )
        seen: list[str] = []

        def on_chunk(piece, accumulated, usage):
            seen.append(accumulated)
            return False

        call = LiteLLMModelCall("openai/gpt-4o-mini", temperature=0.1, max_tokens=50)
        response = await call("sys", "user", on_chunk=on_chunk)

        assert response.text == "Hello world"
        assert response.usage.total_tokens == 5
        assert seen == ["Hello ", "Hello world"]
        assert fake_acompletion["stream"] is True
        assert fake_acompletion["max_tokens"] == 50
        assert fake_acompletion["messages"][0] == {"role": "system", "content": "sys"}

    async def test_reasoning_channel_is_wrapped_in_think_tags(self, fake_acompletion) -> None:
        fake_acompletion["script"].extend(
            [_chunk(reasoning="step 1"), _chunk(reasoning=" step 2"), _chunk(content="done")]
        )
        seen: list[str] = []
        response = await LiteLLMModelCall("m")(
            "", "q", on_chunk=lambda p, acc, u: seen.append(acc)
        )

        assert seen == ["<think>step 1", "<think>step 1 step 2", "<think>step 1 step 2</think>done"]
        assert response.reasoning_content == "step 1 step 2"
        assert response.text == "done"

    async def test_early_stop(self, fake_acompletion) -> None:
        fake_acompletion["script"].extend([_chunk(content="a"), _chunk(content="b"), _chunk(content="c")])
        response = await LiteLLMModelCall("m")("", "q", on_chunk=lambda p, acc, u: acc == "ab")
        assert response.text == "ab"
        assert response.stopped_early

    async def test_cancel_before_call(self, fake_acompletion) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(AbortedError):
            await LiteLLMModelCall("m")("", "q", cancel=token)
        assert "model" not in fake_acompletion


class ProviderError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"provider error {status_code}")
        self.status_code = status_code


@pytest.fixture
def flaky_acompletion(monkeypatch):
    """litellm.acompletion that raises queued errors before streaming "ok"."""
    import litellm

    state = {"errors": [], "calls": 0}

    async def _stream():
        yield _chunk(content="ok")

    async def _acompletion(**kwargs):
        state["calls"] += 1
        if state["errors"]:
            raise state["errors"].pop(0)
        return _stream()

    monkeypatch.setattr(litellm, "acompletion", _acompletion)
    return state


class TestTransportRetry:
    async def test_rate_limit_and_server_errors_are_retried(self, flaky_acompletion) -> None:
        flaky_acompletion["errors"].extend([ProviderError(429), ProviderError(503)])
        call = LiteLLMModelCall("m", max_retries=3, retry_delay=0)
        response = await call("", "q")
        assert response.text == "ok"
        assert flaky_acompletion["calls"] == 3

    async def test_gives_up_after_max_retries(self, flaky_acompletion) -> None:
        flaky_acompletion["errors"].extend([ProviderError(500)] * 3)
        with pytest.raises(ProviderError):
            await LiteLLMModelCall("m", max_retries=2, retry_delay=0)("", "q")
        assert flaky_acompletion["calls"] == 3

    async def test_client_errors_are_not_retried(self, flaky_acompletion) -> None:
        flaky_acompletion["errors"].append(ProviderError(401))
        with pytest.raises(ProviderError):
            await LiteLLMModelCall("m", max_retries=3, retry_delay=0)("", "q")
        assert flaky_acompletion["calls"] == 1

    async def test_backoff_doubles(self, flaky_acompletion, monkeypatch) -> None:
        waits: list[float] = []

        async def record(seconds, cancel):
            waits.append(seconds)

        monkeypatch.setattr("tracegen.llm.model_call._backoff", record)
        flaky_acompletion["errors"].extend([ConnectionError("reset")] * 3)
        await LiteLLMModelCall("m", max_retries=3, retry_delay=0.5)("", "q")
        assert waits == [0.5, 1.0, 2.0]

    async def test_cancel_during_backoff_aborts(self, flaky_acompletion) -> None:
        token = CancellationToken()
        flaky_acompletion["errors"].append(ProviderError(503))

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(AbortedError):
            await LiteLLMModelCall("m", retry_delay=30)("", "q", cancel=token)
        await canceller
        assert flaky_acompletion["calls"] == 1


class TestMockMode:
    async def test_json_system_prompt_gets_json_reply(self) -> None:
        response = await mock_completion("Output json only.", "Why is the sky blue?")
        data = json.loads(response.text)
        assert data["query"] == "Why is the sky blue?"
        assert data["reasoning"].startswith("Mock reasoning")
        assert response.usage.total_tokens > 0

    async def test_native_reply(self, mock_llm_env) -> None:
        response = await LiteLLMModelCall("m")("Be brief.", "Hi")
        assert response.text.startswith("<think>Mock reasoning about: Hi</think>")

    async def test_mock_summarizer(self, mock_llm_env) -> None:
        summarize = make_summarizer("m")
        summary = await summarize("Conversation to summarize:\nuser: a\nassistant: b\n\nSummary:")
        assert summary == "- user: a\n- assistant: b"

    async def test_mock_classifier_uses_heuristic(self, mock_llm_env) -> None:
        classify = make_llm_classifier("m")
        result = await classify("Write a Python function that parses JSON")
        assert result.task_type == TaskType.CODING
