"""Result sink contract and the in-memory implementation."""

from __future__ import annotations

from typing import Protocol

from tracegen.models.work import GenerationResult, GenerationStatus


class ResultSink(Protocol):
    """Persists terminal results. Both methods are idempotent per result id."""

    async def append(self, result: GenerationResult) -> None: ...

    async def update_by_id(self, result_id: str, result: GenerationResult) -> None: ...


class InMemoryResultSink:
    """
    Dict-backed sink keyed by result id, preserving first-insertion order.

    ``append`` of an existing id replaces the record in place, so a retried
    item never appears twice.
    """

    def __init__(self) -> None:
        self._results: dict[str, GenerationResult] = {}

    async def append(self, result: GenerationResult) -> None:
        self._results[result.id] = result

    async def update_by_id(self, result_id: str, result: GenerationResult) -> None:
        if result.id != result_id:
            result = result.model_copy(update={"id": result_id})
        self._results[result_id] = result

    def get(self, result_id: str) -> GenerationResult | None:
        return self._results.get(result_id)

    @property
    def results(self) -> list[GenerationResult]:
        return list(self._results.values())

    def failed(self) -> list[GenerationResult]:
        return [r for r in self._results.values() if r.is_failure]

    def by_status(self, status: GenerationStatus) -> list[GenerationResult]:
        return [r for r in self._results.values() if r.status == status]

    def __len__(self) -> int:
        return len(self._results)
