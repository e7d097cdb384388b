"""
Example 01: Basic Memory
========================

Demonstrates the simplest end-to-end usage of ShortTermMemory:
- Opening a memory with open() as an async context manager
- Storing a system message and a few conversation turns
- Reading the conversation back (first read warms the cache)
- Hitting the per-key message limit
- Trimming the oldest messages

Run:
    uv run python examples/01_basic_memory.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from mneme import (
        AssistantMessage,
        CapacityError,
        ShortTermMemory,
        SystemMessage,
        UserMessage,
    )

    print("=== Mneme Basic Memory Example ===\n")

    async with ShortTermMemory.open(
        db_path="/tmp/mneme_example_01.db",
        max_messages_per_key=4,
    ) as memory:
        key = "conversation-42"
        await memory.remove_all(key)  # start fresh on repeated runs

        await memory.put(key, SystemMessage(content="You are a helpful coding assistant."))
        await memory.put(
            key,
            [
                UserMessage(content="What is Python's GIL?"),
                AssistantMessage(content="A mutex that lets one thread run bytecode at a time."),
                UserMessage(content="Does asyncio avoid it?"),
            ],
        )

        for message in await memory.get_all(key):
            print(f"  [{message.role}] {message.content}")
        print(f"\nFull: {await memory.is_full(key)}")

        await memory.put(key, AssistantMessage(content="No, it sidesteps it with one thread."))
        print(f"Full after 4th turn: {await memory.is_full(key)}")

        try:
            await memory.put(key, UserMessage(content="One more question..."))
        except CapacityError as exc:
            print(f"Rejected: {exc}")

        await memory.remove_interactive_messages(key, 2)
        remaining = await memory.get_interactive_messages(key)
        print(f"\nAfter trimming the 2 oldest: {len(remaining)} interactive messages")

        stats = memory.cache_stats()
        print(f"Cache: {stats.hits} hits, {stats.misses} misses, size {stats.size}")


if __name__ == "__main__":
    asyncio.run(main())
