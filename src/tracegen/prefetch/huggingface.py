"""Hugging Face datasets-server row source."""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from tracegen.errors import NetworkError

HF_ROWS_URL = "https://datasets-server.huggingface.co/rows"
HF_MAX_PAGE_SIZE = 100
DEFAULT_TIMEOUT_SECONDS = 30.0


class HuggingFaceRowSource:
    """
    Paginated reader for ``datasets-server.huggingface.co/rows``.

    A ``fetch_rows`` request larger than 100 rows is split into 100-row pages
    fetched with at most ``max_concurrent_pages`` requests in flight. Pages are
    concatenated in offset order.

    Example::

        async with HuggingFaceRowSource("openai/gsm8k", config="main") as source:
            manager = PrefetchManager(source, total_requested=500, concurrency=8)
    """

    def __init__(
        self,
        dataset: str,
        *,
        config: str = "default",
        split: str = "train",
        token: str | None = None,
        max_concurrent_pages: int = 3,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        base_url: str = HF_ROWS_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.dataset = dataset
        self.config = config
        self.split = split
        self._base_url = base_url
        self._semaphore = asyncio.Semaphore(max_concurrent_pages)
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            follow_redirects=True,
        )
        self._logger = structlog.get_logger("tracegen.prefetch.hf")

    async def __aenter__(self) -> HuggingFaceRowSource:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_rows(self, offset: int, limit: int) -> list[dict[str, Any]]:
        """Fetch ``limit`` rows from ``offset``. Raises :class:`NetworkError` on failure."""
        if limit <= 0:
            return []
        pages = [
            (start, min(HF_MAX_PAGE_SIZE, offset + limit - start))
            for start in range(offset, offset + limit, HF_MAX_PAGE_SIZE)
        ]
        results = await asyncio.gather(*(self._fetch_page(start, length) for start, length in pages))
        rows: list[dict[str, Any]] = []
        for page in results:
            rows.extend(page)
        return rows

    async def _fetch_page(self, offset: int, length: int) -> list[dict[str, Any]]:
        params = {
            "dataset": self.dataset,
            "config": self.config,
            "split": self.split,
            "offset": offset,
            "length": length,
        }
        async with self._semaphore:
            try:
                response = await self._client.get(self._base_url, params=params)
            except httpx.HTTPError as exc:
                self._logger.warning("hf_request_failed", offset=offset, error=str(exc))
                raise NetworkError(f"HF request failed: {exc}") from exc

        if not response.is_success:
            raise NetworkError(
                f"HF API Error {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        payload = response.json()
        return [entry.get("row", {}) for entry in payload.get("rows", [])]


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text or response.reason_phrase
