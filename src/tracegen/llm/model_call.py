"""Model-call collaborator contract and the litellm-backed implementation."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable, Sequence
from typing import Any, Protocol

import structlog

from tracegen.cancellation import CancellationToken
from tracegen.models.message import ChatMessage, ModelResponse, TokenUsage

ChunkCallback = Callable[[str, str, TokenUsage | None], bool | None]
"""``(chunk, accumulated, usage) -> stop``. Returning True requests an early stop."""

MOCK_ENV_VAR = "TRACEGEN_MOCK_LLM"


def mock_enabled() -> bool:
    return os.environ.get(MOCK_ENV_VAR) == "1"


class ModelCall(Protocol):
    """Streams one completion, reporting progress through *on_chunk*."""

    async def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        on_chunk: ChunkCallback | None = None,
        cancel: CancellationToken | None = None,
        messages: Sequence[ChatMessage] | None = None,
    ) -> ModelResponse: ...


def build_messages(
    system_prompt: str,
    user_prompt: str,
    history: Sequence[ChatMessage] | None = None,
) -> list[dict[str, str]]:
    """Assemble litellm chat messages: system, prior history, then the user prompt."""
    llm_messages: list[dict[str, str]] = []
    if system_prompt:
        llm_messages.append({"role": "system", "content": system_prompt})
    for msg in history or ():
        llm_messages.append(msg.to_llm_dict())
    llm_messages.append({"role": "user", "content": user_prompt})
    return llm_messages


def _render_stream(reasoning: str, content: str) -> str:
    """Fold a provider reasoning channel back into ``<think>`` form for extraction."""
    if not reasoning:
        return content
    if not content:
        return f"<think>{reasoning}"
    return f"<think>{reasoning}</think>{content}"


class LiteLLMModelCall:
    """
    :class:`ModelCall` over ``litellm.acompletion``.

    With ``stream=True`` deltas are accumulated and passed to ``on_chunk``
    after every chunk; a True return stops reading. A provider-native
    reasoning channel (``reasoning_content``) is presented to ``on_chunk``
    wrapped in ``<think>`` tags and returned separately on the response.

    Opening the call is retried up to ``max_retries`` times on 429, 5xx and
    connection errors, waiting ``retry_delay * 2**attempt`` seconds between
    attempts. Errors after the first chunk are not retried.

    Set ``TRACEGEN_MOCK_LLM=1`` to return canned output without network access.

    Example::

        call = LiteLLMModelCall("anthropic/claude-sonnet-4", temperature=0.3)
        response = await call("You are terse.", "Why is the sky blue?")
    """

    def __init__(
        self,
        model: str,
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        stream: bool = True,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        extra_params: dict[str, Any] | None = None,
    ) -> None:
        self.model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._stream = stream
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._extra = extra_params or {}
        self._logger = structlog.get_logger("tracegen.llm")

    async def __call__(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        on_chunk: ChunkCallback | None = None,
        cancel: CancellationToken | None = None,
        messages: Sequence[ChatMessage] | None = None,
    ) -> ModelResponse:
        if cancel is not None:
            cancel.raise_if_cancelled()

        if mock_enabled():
            return await mock_completion(system_prompt, user_prompt, on_chunk=on_chunk, cancel=cancel)

        import litellm

        call_kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": build_messages(system_prompt, user_prompt, messages),
            "temperature": self._temperature,
            **self._extra,
        }
        if self._max_tokens is not None:
            call_kwargs["max_tokens"] = self._max_tokens

        if not self._stream:
            response = await self._open(litellm, call_kwargs, cancel)
            message = response.choices[0].message
            text = message.content or ""
            reasoning = getattr(message, "reasoning_content", None) or ""
            usage = TokenUsage.from_raw(getattr(response, "usage", None))
            if on_chunk is not None:
                on_chunk(text, _render_stream(reasoning, text), usage)
            return ModelResponse(text=text, reasoning_content=reasoning or None, usage=usage)

        call_kwargs["stream"] = True
        call_kwargs["stream_options"] = {"include_usage": True}

        content = ""
        reasoning = ""
        usage: TokenUsage | None = None
        stopped_early = False

        async for chunk in await self._open(litellm, call_kwargs, cancel):
            if cancel is not None:
                cancel.raise_if_cancelled()

            raw_usage = getattr(chunk, "usage", None)
            if raw_usage:
                usage = TokenUsage.from_raw(raw_usage)

            delta = chunk.choices[0].delta if chunk.choices else None
            if delta is None:
                continue
            piece = ""
            if getattr(delta, "reasoning_content", None):
                reasoning += delta.reasoning_content
                piece = delta.reasoning_content
            if delta.content:
                content += delta.content
                piece = delta.content
            if not piece and raw_usage is None:
                continue

            if on_chunk is not None and on_chunk(piece, _render_stream(reasoning, content), usage):
                stopped_early = True
                self._logger.debug("stream_stopped_early", model=self.model, chars=len(content))
                break

        return ModelResponse(
            text=content,
            reasoning_content=reasoning or None,
            usage=usage,
            stopped_early=stopped_early,
        )

    async def _open(
        self, litellm: Any, call_kwargs: dict[str, Any], cancel: CancellationToken | None
    ) -> Any:
        """Start the completion, retrying rate limits, 5xx and connection errors."""
        attempt = 0
        while True:
            try:
                return await litellm.acompletion(**call_kwargs)
            except Exception as exc:
                if attempt >= self._max_retries or not _is_transient(exc):
                    raise
                backoff = self._retry_delay * (2**attempt)
                attempt += 1
                self._logger.warning(
                    "llm_call_retry",
                    model=self.model,
                    attempt=attempt,
                    backoff_seconds=backoff,
                    error=str(exc),
                )
                await _backoff(backoff, cancel)


def _is_transient(exc: Exception) -> bool:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    return isinstance(exc, ConnectionError)


async def _backoff(seconds: float, cancel: CancellationToken | None) -> None:
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        pass
    cancel.raise_if_cancelled()


async def mock_completion(
    system_prompt: str,
    user_prompt: str,
    *,
    on_chunk: ChunkCallback | None = None,
    cancel: CancellationToken | None = None,
) -> ModelResponse:
    """Canned streaming response used when ``TRACEGEN_MOCK_LLM=1``."""
    preview = " ".join(user_prompt.split())[:80]
    reasoning = f"Mock reasoning about: {preview}"
    answer = "Mock answer. Set TRACEGEN_MOCK_LLM=0 and configure a provider key for real output."
    if "json" in system_prompt.lower():
        text = json.dumps({"query": preview, "reasoning": reasoning, "answer": answer})
    else:
        text = f"<think>{reasoning}</think>\n{answer}"

    accumulated = ""
    stopped_early = False
    words = text.split(" ")
    for i, word in enumerate(words):
        if cancel is not None:
            cancel.raise_if_cancelled()
        piece = word if i == len(words) - 1 else word + " "
        accumulated += piece
        if on_chunk is not None and on_chunk(piece, accumulated, None):
            stopped_early = True
            break
        await asyncio.sleep(0)

    usage = TokenUsage(
        prompt_tokens=max(1, (len(system_prompt) + len(user_prompt)) // 4),
        completion_tokens=max(1, len(accumulated) // 4),
    )
    usage.total_tokens = usage.prompt_tokens + usage.completion_tokens
    if on_chunk is not None and not stopped_early:
        on_chunk("", accumulated, usage)
    return ModelResponse(text=accumulated, usage=usage, stopped_early=stopped_early)
