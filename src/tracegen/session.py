"""GenerationSession: the public entry point that wires every component together."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

import structlog
from ulid import ULID

from tracegen.cancellation import CancellationToken
from tracegen.compaction.context import ContextCompactor, Summarizer
from tracegen.engine.generator import ItemGenerator
from tracegen.engine.retry import BulkRetrier, ItemRunner, RetryReport
from tracegen.engine.scheduler import BatchSummary, GenerationScheduler
from tracegen.events.bus import EventBus, Handler, TracegenEvent
from tracegen.llm.helpers import make_llm_classifier, make_summarizer
from tracegen.llm.model_call import LiteLLMModelCall, ModelCall
from tracegen.models.config import ClassifierMethod, CompactionStrategy, TracegenConfig
from tracegen.models.work import GenerationResult, WorkItem
from tracegen.prefetch.manager import PrefetchManager, RowSource
from tracegen.prompts import PromptLibrary, PromptSet
from tracegen.routing.classifier import Classifier
from tracegen.routing.router import RoutingDecision, TaskAutoRouter
from tracegen.sinks.base import InMemoryResultSink, ResultSink
from tracegen.streaming.extractor import StreamingTracker
from tracegen.tokens.estimator import TokenEstimator

BatchSource = Sequence[WorkItem | str | dict[str, Any]] | PrefetchManager


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"gen"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


class GenerationSession:
    """
    One configured generation run: routing, scheduling, persistence and retry.

    Every collaborator is constructed here from a single :class:`TracegenConfig`
    and injected; nothing is global. Pass your own ``model_call``, ``sink``,
    ``classifier`` or ``summarizer`` to replace the litellm-backed defaults.

    Usage::

        session = GenerationSession(TracegenConfig(), source="my-seeds")
        async for result in session.run(["Why is the sky blue?", "Prove 2+2=4"]):
            print(result.status, result.answer)

        report = await session.retry_failed()

    Set ``TRACEGEN_MOCK_LLM=1`` to run without network access.
    """

    def __init__(
        self,
        config: TracegenConfig | None = None,
        *,
        model_call: ModelCall | None = None,
        sink: ResultSink | None = None,
        prompts: PromptLibrary | None = None,
        classifier: Classifier | None = None,
        summarizer: Summarizer | None = None,
        event_bus: EventBus | None = None,
        estimator: TokenEstimator | None = None,
        source: str | None = None,
    ) -> None:
        cfg = config or TracegenConfig()
        gen = cfg.generation
        self._config = cfg
        self._source = source
        self._event_bus = event_bus or EventBus()
        self._estimator = estimator or TokenEstimator()
        self._tracker = StreamingTracker(self._event_bus)
        self._prompts = prompts or PromptLibrary()
        self._sink: ResultSink = sink if sink is not None else InMemoryResultSink()
        self._results: dict[str, GenerationResult] = {}
        self._last_route: RoutingDecision | None = None
        self._logger = structlog.get_logger("tracegen.session")

        if summarizer is None and cfg.compaction.strategy == CompactionStrategy.SUMMARIZE:
            summarizer = make_summarizer(gen.model)
        self._compactor = ContextCompactor(
            cfg.compaction,
            self._estimator,
            model=gen.model,
            summarizer=summarizer,
            event_bus=self._event_bus,
        )

        if classifier is None and cfg.routing.method == ClassifierMethod.LLM:
            classifier = make_llm_classifier(cfg.routing.classifier_model or gen.model)
        self._router = TaskAutoRouter(cfg.routing, classifier=classifier, event_bus=self._event_bus)

        self._model_call = model_call or LiteLLMModelCall(
            gen.model,
            temperature=gen.temperature,
            max_tokens=gen.max_tokens,
            stream=gen.stream,
            max_retries=gen.max_retries,
            retry_delay=gen.retry_delay,
        )
        self._generator = ItemGenerator(
            self._model_call,
            gen,
            prompts=self._prompts,
            compactor=self._compactor,
            tracker=self._tracker,
            source=source,
        )
        self._runner = ItemRunner(
            self._generator, timeout_seconds=cfg.scheduler.timeout_seconds, source=source
        )
        self._scheduler = GenerationScheduler(
            self._runner,
            config=cfg.scheduler,
            sink=self._sink,
            event_bus=self._event_bus,
            input_columns=gen.input_columns,
            source=source,
            id_generator=make_id,
        )
        self._retrier = BulkRetrier(
            self._runner,
            self._sink,
            concurrency=cfg.retry.concurrency,
            prompts=self._prompts,
            event_bus=self._event_bus,
        )

    # ── Sources ────────────────────────────────────────────────────────────────

    def prefetch_from(
        self, row_source: RowSource, *, total: int, skip_rows: int = 0
    ) -> PrefetchManager:
        """Wrap a paginated row source in a prefetch manager sized for this session."""
        return PrefetchManager(
            row_source,
            total_requested=total,
            concurrency=self._config.scheduler.concurrency,
            config=self._config.prefetch,
            skip_rows=skip_rows,
            event_bus=self._event_bus,
        )

    def _coerce(self, raw: WorkItem | str | dict[str, Any]) -> WorkItem:
        if isinstance(raw, WorkItem):
            return raw
        if isinstance(raw, str):
            return WorkItem(content=raw)
        return WorkItem.from_row(raw, self._config.generation.input_columns)

    # ── Running ────────────────────────────────────────────────────────────────

    async def route(
        self, source: BatchSource, prompt_set: str | PromptSet | None = None
    ) -> PromptSet:
        """Run the auto-router over a sample of *source* and return the prompt set to use."""
        base = self._resolve_prompt_set(prompt_set)
        if not self._config.routing.enabled:
            return base

        size = self._config.routing.sample_size
        if isinstance(source, PrefetchManager):
            try:
                rows = await source.peek(size)
            except Exception as exc:
                self._logger.warning("routing_sample_failed", error=str(exc))
                rows = []
            sample = [self._coerce(r) for r in rows]
        else:
            sample = [self._coerce(r) for r in source[:size]]

        decision = await self._router.route(sample, default_prompt_set=base.name)
        self._last_route = decision
        if not decision.applied:
            return base
        if decision.prompt_set not in self._prompts:
            return base
        return self._prompts.get(decision.prompt_set)

    async def run(
        self,
        source: BatchSource,
        *,
        prompt_set: str | PromptSet | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[GenerationResult]:
        """
        Route, then process every item, yielding results as they complete.

        Args:
            source: Seeds (strings), raw dataset rows, work items, or a
                :class:`PrefetchManager` from :meth:`prefetch_from`.
            prompt_set: Prompt set name or instance. The router may override it.
            cancel: Optional parent token; cancelling it stops the batch.
        """
        chosen = await self.route(source, prompt_set)
        feed = source if isinstance(source, PrefetchManager) else [self._coerce(r) for r in source]
        async for result in self._scheduler.run(feed, prompt_set=chosen, cancel=cancel):
            self._results[result.id] = result
            yield result

    async def run_all(
        self,
        source: BatchSource,
        *,
        prompt_set: str | PromptSet | None = None,
        cancel: CancellationToken | None = None,
    ) -> BatchSummary:
        """Run a batch to completion and summarise it."""
        results = [r async for r in self.run(source, prompt_set=prompt_set, cancel=cancel)]
        summary = BatchSummary.from_results(results)
        self._logger.info(
            "batch_summary",
            succeeded=summary.succeeded,
            failed=summary.failed,
            aborted=summary.aborted,
            failure_rate=round(summary.failure_rate, 3),
        )
        return summary

    async def retry_failed(
        self,
        results: Iterable[GenerationResult] | None = None,
        *,
        prompt_set: str | PromptSet | None = None,
        cancel: CancellationToken | None = None,
    ) -> RetryReport:
        """
        Retry every error/timeout result (default: all results seen by this session).

        Records are replaced in the sink by id as each retry finishes.
        """
        targets = list(results) if results is not None else list(self._results.values())
        report = await self._retrier.retry_all_failed(
            targets,
            cancel=cancel,
            prompt_set=self._resolve_prompt_set(prompt_set) if prompt_set is not None else None,
        )
        for result in report.results:
            self._results[result.id] = result
        return report

    async def retry(self, result: GenerationResult) -> GenerationResult:
        """Retry one result regardless of its status and store the outcome."""
        fresh = await self._retrier.retry_item(result)
        self._results[fresh.id] = fresh
        return fresh

    def _resolve_prompt_set(self, prompt_set: str | PromptSet | None) -> PromptSet:
        if isinstance(prompt_set, PromptSet):
            return prompt_set
        return self._prompts.get(prompt_set or "default")

    # ── Control ────────────────────────────────────────────────────────────────

    def pause(self) -> None:
        self._scheduler.pause()

    def resume(self) -> None:
        self._scheduler.resume()

    def stop(self) -> None:
        """Cancel the running batch. In-flight items finish as ``aborted``."""
        self._scheduler.stop()

    def update_concurrency(self, concurrency: int) -> None:
        """Validated by the scheduler first; an out-of-range value changes nothing."""
        self._scheduler.update_concurrency(concurrency)
        self._config.scheduler = self._scheduler.config

    async def __aenter__(self) -> GenerationSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        self.stop()

    # ── Accessors ──────────────────────────────────────────────────────────────

    @property
    def config(self) -> TracegenConfig:
        return self._config

    @property
    def results(self) -> list[GenerationResult]:
        """Latest result per id, including retried ones."""
        return list(self._results.values())

    @property
    def last_route(self) -> RoutingDecision | None:
        return self._last_route

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def tracker(self) -> StreamingTracker:
        return self._tracker

    @property
    def compactor(self) -> ContextCompactor:
        return self._compactor

    @property
    def scheduler(self) -> GenerationScheduler:
        return self._scheduler

    @property
    def sink(self) -> ResultSink:
        return self._sink

    @property
    def prompts(self) -> PromptLibrary:
        return self._prompts

    def subscribe(self, event: TracegenEvent, handler: Handler) -> None:
        """Convenience wrapper for ``session.event_bus.subscribe()``."""
        self._event_bus.subscribe(event, handler)
