"""Task classification and prompt routing."""

from tracegen.routing.classifier import (
    DEFAULT_TASK_PROMPT_MAPPING,
    Classification,
    Classifier,
    TaskType,
    classifier_prompt,
    classify_heuristic,
    heuristic_classifier,
    parse_classifier_response,
    recommended_prompt_set,
)
from tracegen.routing.router import RoutingDecision, TaskAutoRouter, aggregate_votes

__all__ = [
    "DEFAULT_TASK_PROMPT_MAPPING",
    "Classification",
    "Classifier",
    "RoutingDecision",
    "TaskAutoRouter",
    "TaskType",
    "aggregate_votes",
    "classifier_prompt",
    "classify_heuristic",
    "heuristic_classifier",
    "parse_classifier_response",
    "recommended_prompt_set",
]
