"""Pre-batch task auto-routing: sample, classify, vote, pick a prompt set."""

from __future__ import annotations

from collections.abc import Sequence

import structlog
from pydantic import BaseModel, Field

from tracegen.events.bus import EventBus, TracegenEvent
from tracegen.models.config import ClassifierMethod, RoutingConfig
from tracegen.models.work import WorkItem
from tracegen.routing.classifier import (
    Classification,
    Classifier,
    TaskType,
    heuristic_classifier,
    recommended_prompt_set,
)


class RoutingDecision(BaseModel):
    """Outcome of one routing pass."""

    task_type: TaskType
    confidence: float
    prompt_set: str = Field(description="Prompt set to use for the batch.")
    applied: bool = Field(description="True when the default prompt set was overridden.")
    votes: list[Classification] = Field(default_factory=list)


def aggregate_votes(votes: Sequence[Classification]) -> tuple[TaskType, float]:
    """
    Pick the winning task type and its average confidence.

    Confidence is summed per type and the highest total wins (first seen on
    ties). The average covers only the winning type's votes.
    """
    totals: dict[TaskType, float] = {}
    counts: dict[TaskType, int] = {}
    for vote in votes:
        totals[vote.task_type] = totals.get(vote.task_type, 0.0) + vote.confidence
        counts[vote.task_type] = counts.get(vote.task_type, 0) + 1
    if not totals:
        return TaskType.UNKNOWN, 0.0

    winner = max(totals, key=lambda t: totals[t])
    return winner, totals[winner] / counts[winner]


class TaskAutoRouter:
    """
    Classifies the first few items of a batch and selects a prompt set.

    Example::

        router = TaskAutoRouter(RoutingConfig(enabled=True))
        decision = await router.route(items, default_prompt_set="default")
        prompt_set = prompts.get(decision.prompt_set)
    """

    def __init__(
        self,
        config: RoutingConfig,
        *,
        classifier: Classifier | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._classifier = classifier
        self._event_bus = event_bus
        self._logger = structlog.get_logger("tracegen.routing")

    def _resolve_classifier(self) -> Classifier | None:
        if self._config.method == ClassifierMethod.NONE:
            return None
        if self._config.method == ClassifierMethod.LLM and self._classifier is not None:
            return self._classifier
        if self._config.method == ClassifierMethod.LLM:
            self._logger.warning("llm_classifier_missing", fallback="heuristic")
        return self._classifier or heuristic_classifier

    async def _vote(self, classifier: Classifier, text: str) -> Classification:
        try:
            return await classifier(text)
        except Exception as exc:
            self._logger.warning("classification_failed", error=str(exc))
            return Classification(task_type=TaskType.UNKNOWN, confidence=0.0)

    async def route(
        self,
        items: Sequence[WorkItem | str],
        default_prompt_set: str = "default",
    ) -> RoutingDecision:
        """
        Sample ``min(sample_size, len(items))`` items and decide the prompt set.

        Returns the default unchanged when routing is disabled, no items are
        given, the winner is ``unknown`` or its average confidence is below
        ``confidence_threshold``.
        """
        classifier = self._resolve_classifier()
        if not self._config.enabled or classifier is None or not items:
            return RoutingDecision(
                task_type=TaskType.UNKNOWN,
                confidence=0.0,
                prompt_set=default_prompt_set,
                applied=False,
            )

        sample = items[: min(self._config.sample_size, len(items))]
        votes = []
        for item in sample:
            text = item.content if isinstance(item, WorkItem) else item
            votes.append(await self._vote(classifier, text))

        winner, confidence = aggregate_votes(votes)
        applied = winner != TaskType.UNKNOWN and confidence >= self._config.confidence_threshold
        prompt_set = (
            recommended_prompt_set(winner, default_prompt_set, self._config.task_prompt_mapping)
            if applied
            else default_prompt_set
        )
        decision = RoutingDecision(
            task_type=winner,
            confidence=confidence,
            prompt_set=prompt_set,
            applied=applied,
            votes=votes,
        )

        self._logger.info(
            "route_selected",
            task_type=str(winner),
            confidence=round(confidence, 3),
            prompt_set=prompt_set,
            applied=applied,
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                TracegenEvent.ROUTE_SELECTED,
                {
                    "task_type": str(winner),
                    "confidence": confidence,
                    "prompt_set": prompt_set,
                    "applied": applied,
                },
            )
        return decision
