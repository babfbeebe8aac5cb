"""Multi-model token estimation with caching and graceful fallback."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tracegen.models.config import ModelInfo
    from tracegen.models.message import ChatMessage

CONVERSATION_OVERHEAD = 3
MESSAGE_OVERHEAD = 4
TOOL_CALL_TOKENS = 50


class TokenEstimator:
    """
    Multi-model token counting with caching and graceful fallback.

    Priority order:
    1. tiktoken for OpenAI encodings (``cl100k_base``, ``o200k_base``)
    2. Character-based heuristic (``len // 3``) for Claude models
    3. Character-based heuristic (``len // 4``) for all other models
    """

    def __init__(self) -> None:
        self._encoder_cache: dict[str, Any] = {}
        self._count_cache: dict[str, int] = {}
        self._force_heuristic: bool = False
        """Set to True in tests to skip tiktoken import."""

    def estimate(self, text: str, model: ModelInfo | None = None) -> int:
        """
        Estimate the token count for a string.

        Returns:
            Estimated token count, always >= 1 for non-empty text.
        """
        if not text:
            return 0
        if self._force_heuristic or model is None:
            return self._heuristic(text)

        encoding = model.encoding
        if encoding == "claude_heuristic":
            return max(1, len(text) // 3)
        if encoding in ("cl100k_base", "o200k_base"):
            try:
                return self._tiktoken_estimate(text, encoding)
            except Exception:
                pass
        return self._heuristic(text)

    def estimate_cached(self, text: str, model: ModelInfo | None = None) -> int:
        """Estimate with caching keyed by content hash. Use for repeated history turns."""
        cache_key = f"{model.encoding if model else 'heuristic'}:{self.content_hash(text)}"
        if cache_key in self._count_cache:
            return self._count_cache[cache_key]
        count = self.estimate(text, model)
        self._count_cache[cache_key] = count
        return count

    def estimate_message(self, msg: ChatMessage, model: ModelInfo | None = None) -> int:
        """Estimate one chat message: fixed overhead + role + content + tool calls."""
        total = MESSAGE_OVERHEAD
        total += self.estimate(str(msg.role), model)
        total += self.estimate_cached(msg.content, model)
        if msg.tool_calls:
            total += TOOL_CALL_TOKENS * len(msg.tool_calls)
        return total

    def estimate_conversation(
        self,
        messages: Sequence[ChatMessage],
        model: ModelInfo | None = None,
    ) -> int:
        """Estimate a whole serialized conversation including its base overhead."""
        return CONVERSATION_OVERHEAD + sum(self.estimate_message(m, model) for m in messages)

    def _heuristic(self, text: str) -> int:
        """Conservative heuristic: 4 characters per token, minimum 1."""
        return max(1, len(text) // 4)

    def _tiktoken_estimate(self, text: str, encoding_name: str) -> int:
        """Encode with tiktoken, caching the encoder object."""
        if encoding_name not in self._encoder_cache:
            import tiktoken

            self._encoder_cache[encoding_name] = tiktoken.get_encoding(encoding_name)
        encoder = self._encoder_cache[encoding_name]
        return len(encoder.encode(text))

    @staticmethod
    def content_hash(text: str) -> str:
        """Return a stable SHA-256 hex digest for use as a cache key."""
        return hashlib.sha256(text.encode()).hexdigest()
