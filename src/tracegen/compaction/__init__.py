"""Conversation context compaction."""

from tracegen.compaction.context import ContextCompactor, Summarizer, format_conversation

__all__ = ["ContextCompactor", "Summarizer", "format_conversation"]
