"""
Example 01: Basic Session
=========================

Demonstrates the simplest end-to-end usage of GenerationSession:
- Generating reasoning traces for a list of seed strings
- Watching results arrive in completion order
- Summarising the batch

Run without an API key:
    TRACEGEN_MOCK_LLM=1 uv run python examples/01_basic_session.py

Run with a real LLM (set your API key first):
    OPENAI_API_KEY=sk-... uv run python examples/01_basic_session.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from tracegen import GenerationSession, SchedulerConfig, TracegenConfig

    print("=== tracegen Basic Session Example ===\n")

    config = TracegenConfig(scheduler=SchedulerConfig(concurrency=3, timeout_seconds=120))

    seeds = [
        "Why is the sky blue?",
        "A train leaves at 3pm travelling 60 km/h. When has it covered 150 km?",
        "Write a Python function that reverses a linked list.",
        "What causes the seasons on Earth?",
    ]

    async with GenerationSession(config, source="example-01") as session:
        async for result in session.run(seeds):
            print(f"[{result.status}] {result.id} ({result.duration_ms} ms)")
            print(f"  Query:     {result.query[:80]}")
            print(f"  Reasoning: {result.reasoning[:80]}...")
            print(f"  Answer:    {result.answer[:80]}\n")

        failed = [r for r in session.results if r.is_failure]
        print(f"Done: {len(session.results) - len(failed)} succeeded, {len(failed)} failed")


if __name__ == "__main__":
    asyncio.run(main())
