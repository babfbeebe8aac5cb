"""
Example 04: Persisting results and retrying failures
====================================================

Demonstrates durable results and in-place retries:
- SQLiteResultSink writing every result as it completes
- A flaky model call that fails some items
- session.retry_failed() replacing failed records by id

Swap FlakyModelCall for LiteLLMModelCall (or any object with the same
call signature) to use a real provider.

Run:
    uv run python examples/04_retry_and_sqlite.py
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class FlakyModelCall:
    """Fails every third call, answers in <think> format otherwise."""

    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, system_prompt, user_prompt, *, on_chunk=None, cancel=None, messages=None):
        from tracegen.models.message import ModelResponse, TokenUsage

        self.calls += 1
        await asyncio.sleep(0.05)
        if self.calls % 3 == 0:
            raise RuntimeError("HTTP 503: upstream overloaded")
        text = f"<think>Working through: {user_prompt[:40]}</think>Done."
        if on_chunk is not None:
            on_chunk(text, text, None)
        return ModelResponse(text=text, usage=TokenUsage(total_tokens=len(text) // 4))


async def main() -> None:
    from tracegen import (
        GenerationConfig,
        GenerationSession,
        OutputMode,
        SinkConfig,
        SQLiteResultSink,
        TracegenConfig,
    )

    config = TracegenConfig(
        generation=GenerationConfig(output_mode=OutputMode.NATIVE),
        sink=SinkConfig(db_path="/tmp/tracegen_example_04.db"),
    )

    async with SQLiteResultSink(config.sink) as sink:
        session = GenerationSession(config, model_call=FlakyModelCall(), sink=sink)

        summary = await session.run_all([f"Seed number {i}" for i in range(9)])
        print(f"First pass: {summary.succeeded} ok, {summary.failed} failed")

        report = await session.retry_failed()
        print(f"Retry: {report.succeeded}/{report.attempted} recovered")

        print(f"Rows in database: {await sink.count()}")
        print(f"Still failing: {len(await sink.failed())}")


if __name__ == "__main__":
    asyncio.run(main())
