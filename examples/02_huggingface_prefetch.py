"""
Example 02: Streaming a Hugging Face dataset
============================================

Demonstrates pulling seeds from a remote dataset page by page:
- HuggingFaceRowSource over datasets-server
- PrefetchManager keeping the buffer ahead of the workers
- Task auto-routing on the first rows of the batch
- Subscribing to progress and prefetch events

Run without an API key (rows are still fetched from the Hub):
    TRACEGEN_MOCK_LLM=1 uv run python examples/02_huggingface_prefetch.py
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from tracegen import (
        GenerationConfig,
        GenerationSession,
        HuggingFaceRowSource,
        PrefetchConfig,
        RoutingConfig,
        SchedulerConfig,
        TracegenConfig,
        TracegenEvent,
    )

    config = TracegenConfig(
        generation=GenerationConfig(input_columns=["question"]),
        scheduler=SchedulerConfig(concurrency=4),
        prefetch=PrefetchConfig(prefetch_batches=3, prefetch_threshold=0.3),
        routing=RoutingConfig(enabled=True),
    )

    async with HuggingFaceRowSource("openai/gsm8k", config="main", split="train") as rows:
        session = GenerationSession(config, source="openai/gsm8k")

        def on_progress(event, payload):
            print(f"  progress {payload['current']}/{payload['total']} "
                  f"({payload['active_workers']} active)")

        def on_prefetch(event, payload):
            if payload["is_fetching"]:
                print(f"  fetching from offset {payload['current_offset']}...")

        session.subscribe(TracegenEvent.PROGRESS_UPDATED, on_progress)
        session.subscribe(TracegenEvent.PREFETCH_STATE_CHANGED, on_prefetch)

        summary = await session.run_all(session.prefetch_from(rows, total=24))

        route = session.last_route
        if route is not None:
            print(f"\nRouted as {route.task_type} ({route.confidence:.2f}) -> {route.prompt_set}")
        print(f"Succeeded: {summary.succeeded}  Failed: {summary.failed}  "
              f"Failure rate: {summary.failure_rate:.0%}")


if __name__ == "__main__":
    asyncio.run(main())
