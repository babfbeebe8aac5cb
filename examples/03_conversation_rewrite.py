"""
Example 03: Multi-turn reasoning rewrite
========================================

Demonstrates rewriting the reasoning of every assistant turn in a chat
dataset row:
- Turns with an existing <think> trace are rewritten
- Turns without one get a trace imputed from the query and the reply
- Earlier turns are passed as history and compacted when they grow
- STREAM_UPDATED events show each turn's progress

Run without an API key:
    TRACEGEN_MOCK_LLM=1 uv run python examples/03_conversation_rewrite.py
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from tracegen import (
        CompactionConfig,
        GenerationConfig,
        GenerationSession,
        OutputMode,
        TracegenConfig,
        TracegenEvent,
    )

    config = TracegenConfig(
        generation=GenerationConfig(output_mode=OutputMode.NATIVE, max_traces=2),
        compaction=CompactionConfig(strategy="truncate_middle", response_reserve=2048),
    )
    session = GenerationSession(config, source="example-03")

    def on_stream(event, payload):
        print(f"  turn {payload['current_message_index'] + 1}/{payload['total_messages']}: "
              f"{payload['phase']}")

    session.subscribe(TracegenEvent.STREAM_UPDATED, on_stream)

    row = {
        "conversations": [
            {"from": "human", "value": "What is 17 * 23?"},
            {"from": "gpt", "value": "<think>17*20=340, 17*3=51</think>391"},
            {"from": "human", "value": "And divided by 2?"},
            {"from": "gpt", "value": "195.5"},
            {"from": "human", "value": "Thanks!"},
            {"from": "gpt", "value": "You're welcome."},
        ]
    }

    summary = await session.run_all([row])
    [result] = summary.results
    print(f"\nStatus: {result.status}")
    for message in result.messages or []:
        print(f"  {message.role:>9}: {message.content[:100]}")


if __name__ == "__main__":
    asyncio.run(main())
