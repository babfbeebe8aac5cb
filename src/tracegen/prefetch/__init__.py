"""Dataset prefetching."""

from tracegen.prefetch.huggingface import HuggingFaceRowSource
from tracegen.prefetch.manager import PrefetchManager, RowSource

__all__ = ["HuggingFaceRowSource", "PrefetchManager", "RowSource"]
