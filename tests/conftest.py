"""Shared fixtures for tracegen tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from tracegen.cancellation import CancellationToken
from tracegen.errors import NetworkError
from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.llm.model_call import ChunkCallback
from tracegen.models.message import ChatMessage, ChatRole, ModelResponse, TokenUsage
from tracegen.tokens.estimator import TokenEstimator


@pytest.fixture
def estimator():
    """TokenEstimator using heuristic only (no tiktoken required in tests)."""
    e = TokenEstimator()
    e._force_heuristic = True
    return e


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[TracegenEvent, dict[str, Any]]] = []

    def _collect(event: TracegenEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest.fixture
def mock_llm_env(monkeypatch):
    """Enable canned litellm responses."""
    monkeypatch.setenv("TRACEGEN_MOCK_LLM", "1")


def events_of(bus: EventBus, event: TracegenEvent) -> list[dict[str, Any]]:
    """Payloads of every collected *event* on a fixture bus."""
    return [payload for ev, payload in bus.collected if ev == event]  # type: ignore[attr-defined]


class FakeModelCall:
    """
    Scripted ModelCall.

    Streams ``reply`` (a string, or a callable of the user prompt) in fixed-size
    chunks, records every call and the peak number of concurrent calls.
    ``hang=True`` blocks until the item token is cancelled. ``fail_with``
    raises the given exception instead of replying; ``fail_times`` limits that
    to the first N calls.
    """

    def __init__(
        self,
        reply: str | Callable[[str], str] = "<think>step one</think>final",
        *,
        chunk_size: int = 4,
        delay: float = 0.0,
        hang: bool = False,
        fail_with: BaseException | None = None,
        fail_times: int | None = None,
        usage: TokenUsage | None = None,
    ) -> None:
        self.reply = reply
        self.chunk_size = chunk_size
        self.delay = delay
        self.hang = hang
        self.fail_with = fail_with
        self.fail_times = fail_times
        self.usage = usage or TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15)
        self.calls: list[dict[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        on_chunk: ChunkCallback | None = None,
        cancel: CancellationToken | None = None,
        messages: list[ChatMessage] | None = None,
    ) -> ModelResponse:
        self.calls.append(
            {"system": system_prompt, "user": user_prompt, "messages": list(messages or [])}
        )
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_with is not None and (self.fail_times is None or self.fail_times > 0):
                if self.fail_times is not None:
                    self.fail_times -= 1
                raise self.fail_with
            if self.hang:
                if cancel is None:
                    await asyncio.Event().wait()
                else:
                    await cancel.wait()
                    cancel.raise_if_cancelled()

            text = self.reply(user_prompt) if callable(self.reply) else self.reply
            accumulated = ""
            stopped = False
            for i in range(0, len(text), self.chunk_size):
                if cancel is not None:
                    cancel.raise_if_cancelled()
                piece = text[i : i + self.chunk_size]
                accumulated += piece
                if on_chunk is not None and on_chunk(piece, accumulated, None):
                    stopped = True
                    break
                await asyncio.sleep(0)
            return ModelResponse(text=accumulated, usage=self.usage, stopped_early=stopped)
        finally:
            self.in_flight -= 1


class FakeRowSource:
    """In-memory paginated RowSource. ``fail_times`` makes the first N fetches raise."""

    def __init__(
        self,
        rows: int | list[dict[str, Any]] = 20,
        *,
        fail_times: int = 0,
        delay: float = 0.0,
    ) -> None:
        if isinstance(rows, int):
            rows = [{"question": f"question {i}", "answer": f"answer {i}"} for i in range(rows)]
        self.rows = rows
        self.fail_times = fail_times
        self.delay = delay
        self.calls: list[tuple[int, int]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_rows(self, offset: int, limit: int) -> list[dict[str, Any]]:
        self.calls.append((offset, limit))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise NetworkError("HF API Error 503: unavailable", status_code=503)
            return self.rows[offset : offset + limit]
        finally:
            self.in_flight -= 1


def make_chat(*turns: tuple[str, str]) -> list[ChatMessage]:
    """Helper to build a conversation from ``(role, content)`` pairs."""
    return [ChatMessage(role=ChatRole(role), content=content) for role, content in turns]
