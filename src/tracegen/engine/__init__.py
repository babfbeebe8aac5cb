"""Item generation, per-item deadlines, retry and the batch scheduler."""

from tracegen.engine.generator import ItemGenerator, build_rewrite_input
from tracegen.engine.retry import BulkRetrier, ItemRunner, RetryReport
from tracegen.engine.scheduler import BatchSummary, GenerationScheduler, PauseFlag

__all__ = [
    "BatchSummary",
    "BulkRetrier",
    "GenerationScheduler",
    "ItemGenerator",
    "ItemRunner",
    "PauseFlag",
    "RetryReport",
    "build_rewrite_input",
]
