"""Conversation context compaction against a model's token budget.

Three strategies shrink a message list that no longer fits:

- ``truncate_old``: keep the newest messages that fit a reduced target.
- ``truncate_middle``: keep the first message plus a shrinking recent tail.
- ``summarize``: replace everything but the recent tail with one LLM summary,
  falling back to ``truncate_middle`` on any failure.

Compaction never raises. Every strategy returns an under-budget conversation
unchanged, whether reached through :meth:`ContextCompactor.compact` or called
directly.
"""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable, Sequence

import structlog

from tracegen.errors import SummarizationError
from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.models.config import CompactionConfig, CompactionStrategy, ModelInfo
from tracegen.models.message import (
    ChatMessage,
    ChatRole,
    CompactionResult,
    ContextStatus,
)
from tracegen.tokens.estimator import TokenEstimator

Summarizer = Callable[[str], Awaitable[str]]
StatusCallback = Callable[[str], None]

SUMMARY_HEADER = "[Previous conversation summary]"
SUMMARY_FOOTER = "[End of summary - continuing conversation]"

TRUNCATE_OLD_TARGET_FACTOR = 0.8
TRUNCATE_MIDDLE_SHRINK = 0.7
MIN_KEEP = 2


class ContextCompactor:
    """
    Shrinks conversation history to fit a model's context window.

    One instance per orchestrator. The model can be switched with
    :meth:`set_model`; the config with :meth:`set_config`.

    Example::

        compactor = ContextCompactor(CompactionConfig(), estimator, model="gpt-4o")
        if compactor.status(history).needs_compaction:
            result = await compactor.compact(history)
            history = result.messages
    """

    def __init__(
        self,
        config: CompactionConfig,
        estimator: TokenEstimator,
        *,
        model: str | ModelInfo = "default",
        summarizer: Summarizer | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._estimator = estimator
        self._model = model if isinstance(model, ModelInfo) else ModelInfo.from_model_string(model)
        self._summarizer = summarizer
        self._event_bus = event_bus
        self._logger = structlog.get_logger("tracegen.compaction")

    @property
    def config(self) -> CompactionConfig:
        return self._config

    @property
    def model(self) -> ModelInfo:
        return self._model

    def set_model(self, model: str | ModelInfo) -> None:
        self._model = model if isinstance(model, ModelInfo) else ModelInfo.from_model_string(model)

    def set_config(self, config: CompactionConfig) -> None:
        self._config = config

    def set_summarizer(self, summarizer: Summarizer | None) -> None:
        self._summarizer = summarizer

    # ── Budget ─────────────────────────────────────────────────────────────────

    @property
    def max_tokens(self) -> int:
        return max(1, self._model.context_limit - self._config.response_reserve)

    def count(self, messages: Sequence[ChatMessage]) -> int:
        return self._estimator.estimate_conversation(messages, self._model)

    def status(self, messages: Sequence[ChatMessage]) -> ContextStatus:
        """Return the token budget snapshot for *messages*."""
        current = self.count(messages)
        max_tokens = self.max_tokens
        usage = current / max_tokens
        return ContextStatus(
            current_tokens=current,
            max_tokens=max_tokens,
            available_tokens=max(0, max_tokens - current),
            usage_percent=usage,
            needs_compaction=usage >= self._config.trigger_threshold,
        )

    # ── Entry point ────────────────────────────────────────────────────────────

    async def compact(
        self,
        messages: Sequence[ChatMessage],
        on_status: StatusCallback | None = None,
    ) -> CompactionResult:
        """
        Compact *messages* with the configured strategy if over budget.

        Args:
            messages: Chronological conversation.
            on_status: Optional callback receiving ``"starting"``,
                ``"summarizing"``, ``"complete"`` or ``"error"`` during the
                summarize strategy.

        Returns:
            A CompactionResult. ``was_compacted`` is False when nothing changed.
        """
        original = list(messages)
        original_tokens = self.count(original)
        strategy = self._config.strategy

        if strategy == CompactionStrategy.NONE or not self.status(original).needs_compaction:
            return self._unchanged(original, original_tokens)

        if strategy == CompactionStrategy.TRUNCATE_OLD:
            result = self.truncate_old(original)
        elif strategy == CompactionStrategy.TRUNCATE_MIDDLE:
            result = self.truncate_middle(original)
        else:
            result = await self.summarize(original, on_status)

        if result.was_compacted:
            self._logger.info(
                "context_compacted",
                type=result.compaction_type,
                original_tokens=result.original_tokens,
                final_tokens=result.final_tokens,
                removed=result.removed_messages,
            )
            if self._event_bus is not None:
                self._event_bus.publish(
                    TracegenEvent.COMPACTION_COMPLETED,
                    {
                        "compaction_type": result.compaction_type,
                        "original_tokens": result.original_tokens,
                        "final_tokens": result.final_tokens,
                        "removed_messages": result.removed_messages,
                    },
                )
        return result

    # ── Strategies ─────────────────────────────────────────────────────────────

    def truncate_old(self, messages: Sequence[ChatMessage]) -> CompactionResult:
        """Keep the newest messages whose cumulative cost fits the reduced target."""
        original = list(messages)
        original_tokens = self.count(original)
        if not self.status(original).needs_compaction:
            return self._unchanged(original, original_tokens)
        target = self.max_tokens * self._config.trigger_threshold * TRUNCATE_OLD_TARGET_FACTOR

        kept: list[ChatMessage] = []
        running = 0
        for msg in reversed(original):
            cost = self._estimator.estimate_message(msg, self._model)
            if running + cost > target:
                break
            kept.append(msg)
            running += cost
        kept.reverse()

        return CompactionResult(
            messages=kept,
            was_compacted=len(kept) < len(original),
            compaction_type=str(CompactionStrategy.TRUNCATE_OLD),
            original_tokens=original_tokens,
            final_tokens=self.count(kept),
            removed_messages=len(original) - len(kept),
        )

    def truncate_middle(self, messages: Sequence[ChatMessage]) -> CompactionResult:
        """Keep the first message and the most recent tail, shrinking the tail until it fits."""
        original = list(messages)
        original_tokens = self.count(original)
        keep = self._config.keep_recent_messages

        if len(original) <= keep + 1 or not self.status(original).needs_compaction:
            return self._unchanged(original, original_tokens)

        compacted = [original[0], *original[-keep:]]
        while self.status(compacted).needs_compaction and keep > MIN_KEEP:
            keep = max(MIN_KEEP, math.floor(keep * TRUNCATE_MIDDLE_SHRINK))
            compacted = [original[0], *original[-keep:]]

        return CompactionResult(
            messages=compacted,
            was_compacted=True,
            compaction_type=str(CompactionStrategy.TRUNCATE_MIDDLE),
            original_tokens=original_tokens,
            final_tokens=self.count(compacted),
            removed_messages=len(original) - len(compacted),
        )

    async def summarize(
        self,
        messages: Sequence[ChatMessage],
        on_status: StatusCallback | None = None,
    ) -> CompactionResult:
        """Replace all but the recent tail with a single synthetic summary turn."""
        original = list(messages)
        original_tokens = self.count(original)
        keep = self._config.keep_recent_messages

        if len(original) <= keep + 1 or not self.status(original).needs_compaction:
            return self._unchanged(original, original_tokens)

        to_summarize = original[:-keep]
        recent = original[-keep:]
        _notify(on_status, "starting")

        try:
            if self._summarizer is None:
                raise SummarizationError("no summarizer configured")
            _notify(on_status, "summarizing")
            prompt = self._config.summarize_prompt.replace(
                "{conversation}", format_conversation(to_summarize)
            )
            summary = (await self._summarizer(prompt)).strip()
            if not summary:
                raise SummarizationError("summarizer returned an empty summary")
        except Exception as exc:
            _notify(on_status, "error")
            self._logger.warning("summarize_failed", error=str(exc))
            if self._event_bus is not None:
                self._event_bus.publish(
                    TracegenEvent.COMPACTION_FAILED,
                    {
                        "strategy": str(CompactionStrategy.SUMMARIZE),
                        "error": str(exc),
                        "fallback": str(CompactionStrategy.TRUNCATE_MIDDLE),
                    },
                )
            return self.truncate_middle(original)

        summary_message = ChatMessage(
            role=ChatRole.USER,
            content=f"{SUMMARY_HEADER}\n{summary}\n{SUMMARY_FOOTER}",
        )
        compacted = [summary_message, *recent]
        _notify(on_status, "complete")
        return CompactionResult(
            messages=compacted,
            was_compacted=True,
            compaction_type=str(CompactionStrategy.SUMMARIZE),
            original_tokens=original_tokens,
            final_tokens=self.count(compacted),
            removed_messages=len(to_summarize),
            summary=summary,
        )

    def _unchanged(self, messages: list[ChatMessage], tokens: int) -> CompactionResult:
        return CompactionResult(
            messages=messages,
            was_compacted=False,
            compaction_type=str(CompactionStrategy.NONE),
            original_tokens=tokens,
            final_tokens=tokens,
            removed_messages=0,
        )


def format_conversation(messages: Sequence[ChatMessage]) -> str:
    """Serialise turns as ``Role: content`` blocks separated by blank lines."""
    lines = []
    for msg in messages:
        label = "Assistant" if msg.role == ChatRole.ASSISTANT else "User"
        lines.append(f"{label}: {msg.content}")
    return "\n\n".join(lines)


def _notify(callback: StatusCallback | None, status: str) -> None:
    if callback is not None:
        callback(status)
