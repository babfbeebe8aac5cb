"""Conversation message, token usage and compaction result models."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class ChatRole(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ChatMessage(BaseModel):
    """A single conversation turn."""

    role: ChatRole
    content: str
    reasoning: str | None = Field(
        default=None,
        description="Reasoning trace for assistant turns, stored apart from the visible content.",
    )
    tool_calls: list[dict[str, object]] | None = None

    def to_llm_dict(self) -> dict[str, str]:
        """Render as an OpenAI-style chat message for litellm."""
        return {"role": str(self.role), "content": self.content}


class TokenUsage(BaseModel):
    """Provider-reported token usage for one model call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int | None = None

    @classmethod
    def from_raw(cls, raw: object) -> TokenUsage | None:
        """
        Normalise a provider usage object or dict.

        Accepts OpenAI (``prompt_tokens``/``completion_tokens``) and Anthropic
        (``input_tokens``/``output_tokens``) spellings. Returns None when *raw*
        carries no usage.
        """
        if raw is None:
            return None

        def _get(name: str) -> int:
            value = raw.get(name) if isinstance(raw, dict) else getattr(raw, name, None)
            return int(value) if isinstance(value, int | float) else 0

        prompt = _get("prompt_tokens") or _get("input_tokens")
        completion = _get("completion_tokens") or _get("output_tokens")
        total = _get("total_tokens") or prompt + completion

        details = raw.get("completion_tokens_details") if isinstance(raw, dict) else getattr(
            raw, "completion_tokens_details", None
        )
        reasoning = None
        if details is not None:
            value = (
                details.get("reasoning_tokens")
                if isinstance(details, dict)
                else getattr(details, "reasoning_tokens", None)
            )
            reasoning = int(value) if isinstance(value, int | float) and value else None
        return cls(
            prompt_tokens=prompt,
            completion_tokens=completion,
            total_tokens=total,
            reasoning_tokens=reasoning,
        )

    def __add__(self, other: TokenUsage) -> TokenUsage:
        reasoning = None
        if self.reasoning_tokens is not None or other.reasoning_tokens is not None:
            reasoning = (self.reasoning_tokens or 0) + (other.reasoning_tokens or 0)
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            reasoning_tokens=reasoning,
        )


class ModelResponse(BaseModel):
    """Final output of one model call."""

    text: str
    reasoning_content: str | None = Field(
        default=None,
        description="Provider-native reasoning channel, when the provider exposes one.",
    )
    usage: TokenUsage | None = None
    stopped_early: bool = False


class ContextStatus(BaseModel):
    """Token budget snapshot for a conversation against a model."""

    current_tokens: int
    max_tokens: int
    available_tokens: int
    usage_percent: float
    needs_compaction: bool


class CompactionResult(BaseModel):
    """Outcome of one compaction pass."""

    messages: list[ChatMessage]
    was_compacted: bool
    compaction_type: str
    original_tokens: int
    final_tokens: int
    removed_messages: int = 0
    summary: str | None = None
