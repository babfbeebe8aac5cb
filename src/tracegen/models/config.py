"""Configuration models for tracegen runs and components."""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, Field, model_validator

DEFAULT_SUMMARIZE_PROMPT = (
    "Summarize the following conversation concisely, preserving key facts, decisions, "
    "and context needed to continue the conversation. Keep the summary under 500 words."
    "\n\nConversation to summarize:\n{conversation}\n\nSummary:"
)


class CompactionStrategy(StrEnum):
    NONE = "none"
    TRUNCATE_OLD = "truncate_old"
    TRUNCATE_MIDDLE = "truncate_middle"
    SUMMARIZE = "summarize"


class ClassifierMethod(StrEnum):
    NONE = "none"
    HEURISTIC = "heuristic"
    LLM = "llm"


class OutputMode(StrEnum):
    """How model output carries reasoning and answer."""

    NATIVE = "native"
    """Reasoning inside ``<think>...</think>``, answer after the close tag."""
    JSON = "json"
    """A JSON object with ``query``, ``reasoning`` and ``answer`` fields."""


class PrefetchConfig(BaseModel):
    """Sizing for the dataset prefetch buffer."""

    prefetch_batches: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Buffer depth in multiples of the worker concurrency.",
    )

    prefetch_threshold: float = Field(
        default=0.3,
        gt=0.0,
        lt=1.0,
        description=(
            "Fraction of the ideal buffer size at or below which the next fetch is "
            "started in the background."
        ),
    )


class CompactionConfig(BaseModel):
    """Configuration for conversation context compaction."""

    strategy: CompactionStrategy = CompactionStrategy.TRUNCATE_MIDDLE

    response_reserve: int = Field(
        default=4096,
        ge=0,
        description="Tokens held back from the context limit for the model's response.",
    )

    trigger_threshold: float = Field(
        default=0.85,
        gt=0.0,
        le=1.0,
        description="Usage fraction of the usable budget at which compaction runs.",
    )

    keep_recent_messages: int = Field(
        default=10,
        ge=1,
        description="Number of most recent messages always retained.",
    )

    summarize_prompt: str = Field(
        default=DEFAULT_SUMMARIZE_PROMPT,
        description="Prompt for the summarize strategy. Must contain ``{conversation}``.",
    )

    @model_validator(mode="after")
    def validate_summarize_prompt(self) -> CompactionConfig:
        if "{conversation}" not in self.summarize_prompt:
            raise ValueError("summarize_prompt must contain the {conversation} placeholder")
        return self


class RoutingConfig(BaseModel):
    """Configuration for pre-batch task classification and prompt routing."""

    enabled: bool = False
    method: ClassifierMethod = ClassifierMethod.HEURISTIC

    confidence_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Minimum average confidence of the winning task type.",
    )

    sample_size: int = Field(
        default=5,
        ge=3,
        le=5,
        description="Number of leading items classified before the batch starts.",
    )

    task_prompt_mapping: dict[str, str] = Field(
        default_factory=dict,
        description="Task type → prompt set name overrides, merged over the defaults.",
    )

    classifier_model: str | None = Field(
        default=None,
        description="Model used by the LLM classifier. None = the generation model.",
    )


class SchedulerConfig(BaseModel):
    """Worker pool configuration."""

    concurrency: int = Field(
        default=4,
        ge=1,
        le=128,
        description="Number of logical workers, and so the maximum in-flight items.",
    )

    sleep_ms: int = Field(
        default=0,
        ge=0,
        description="Fixed pause each worker takes after finishing an item.",
    )

    timeout_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="Per-item generation deadline. 0 disables the timer.",
    )

    pause_poll_interval: float = Field(
        default=0.2,
        gt=0.0,
        description="Seconds between pause-flag checks while paused.",
    )

    max_source_errors: int = Field(
        default=3,
        ge=1,
        description="Consecutive row-source failures after which a worker exits.",
    )


class RetryConfig(BaseModel):
    """Bulk retry configuration."""

    concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Workers draining the retry queue, independent of the batch pool.",
    )


class SinkConfig(BaseModel):
    """SQLite result sink configuration."""

    db_path: str = Field(
        default="~/.tracegen/results.db",
        description="Path to the results database. ~ is expanded.",
    )
    wal_mode: bool = True
    connection_timeout: float = Field(default=30.0, gt=0.0)


class GenerationConfig(BaseModel):
    """How each item's model call is shaped and parsed."""

    model: str = "openai/gpt-4o-mini"
    output_mode: OutputMode = OutputMode.JSON

    selected_fields: list[Literal["query", "reasoning", "answer"]] | None = Field(
        default=None,
        description="Fields to generate. None = all. Unselected fields keep original values.",
    )

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = None
    stream: bool = True
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Transport retries per model call on 429, 5xx or connection errors.",
    )
    retry_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Base backoff in seconds, doubled after each failed attempt.",
    )

    max_traces: int | None = Field(
        default=None,
        ge=1,
        description="Maximum assistant turns rewritten per conversation. None = all.",
    )

    input_columns: list[str] | None = Field(
        default=None,
        description="Record columns joined into the seed text. None = auto-detect.",
    )


class TracegenConfig(BaseModel):
    """
    Top-level configuration for a generation run.

    Example::

        config = TracegenConfig(
            scheduler=SchedulerConfig(concurrency=8, timeout_seconds=120),
            compaction=CompactionConfig(strategy="summarize"),
        )
    """

    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    prefetch: PrefetchConfig = Field(default_factory=PrefetchConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)

    @classmethod
    def default(cls) -> TracegenConfig:
        """Return a config instance with all defaults."""
        return cls()


class ModelInfo(BaseModel):
    """Resolved model metadata used for context budget calculations."""

    model_id: str
    provider_id: str = ""
    context_limit: int = Field(
        default=128_000,
        description="Total input + output token limit for this model.",
    )
    max_output_tokens: int = 4_096
    encoding: Literal["cl100k_base", "o200k_base", "claude_heuristic", "unknown"] = "cl100k_base"

    @classmethod
    def from_model_string(cls, model: str) -> ModelInfo:
        """
        Create a ModelInfo by heuristically parsing a litellm model string.

        Supports strings like ``anthropic/claude-sonnet-4``, ``gpt-4o`` or
        ``openrouter/deepseek/deepseek-r1``.
        """
        lower = model.lower()
        provider = ""
        model_name = lower
        if "/" in lower:
            provider, model_name = lower.split("/", 1)

        if "claude" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "anthropic",
                context_limit=200_000,
                max_output_tokens=8_192,
                encoding="claude_heuristic",
            )
        if "gpt-4o" in model_name or "o1" in model_name or "o3" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=128_000,
                max_output_tokens=16_384,
                encoding="o200k_base",
            )
        if "gpt-4" in model_name or "gpt-3" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "openai",
                context_limit=128_000,
                max_output_tokens=4_096,
                encoding="cl100k_base",
            )
        if "gemini" in model_name:
            return cls(
                model_id=model,
                provider_id=provider or "google",
                context_limit=1_000_000,
                max_output_tokens=8_192,
                encoding="cl100k_base",
            )
        if "deepseek" in model_name or "qwen" in model_name:
            return cls(
                model_id=model,
                provider_id=provider,
                context_limit=64_000,
                max_output_tokens=8_192,
                encoding="cl100k_base",
            )
        return cls(
            model_id=model,
            provider_id=provider,
            context_limit=32_000,
            max_output_tokens=4_096,
            encoding="cl100k_base",
        )
