"""Streaming example: handlers that produce results incrementally.

A handler that returns a sync generator, an async iterator, or a
:class:`~sidecar_rpc.StreamChannel` is a *stream*.  Each item reaches the
client as a ``<method>.chunk`` notification, followed by one terminating
``{"stream": "complete"}`` response.

Run::

    python examples/streaming.py
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from typing import Any

from sidecar_rpc import StreamChannel, serve_local

_producers: set[asyncio.Task[None]] = set()


def squares(params: dict[str, Any]) -> Iterator[dict[str, int]]:
    """Yield ``n`` and ``n^2`` for ``0 <= n < limit``."""
    for n in range(params["limit"]):
        yield {"n": n, "square": n * n}


async def countdown(params: dict[str, Any]) -> AsyncIterator[int]:
    """Count down from ``start`` with a short pause between items."""
    for i in range(params["start"], 0, -1):
        await asyncio.sleep(0.01)
        yield i


def scaled(params: dict[str, Any]) -> StreamChannel:
    """Push scaled values from a background task through a channel."""
    channel = StreamChannel(maxsize=2)

    async def produce() -> None:
        for value in params["values"]:
            await channel.send(value * params["factor"])
        channel.close()

    task = asyncio.get_running_loop().create_task(produce())
    _producers.add(task)
    task.add_done_callback(_producers.discard)
    return channel


async def run() -> None:
    """Run the example."""
    methods = {"squares": squares, "countdown": countdown, "scaled": scaled}
    async with serve_local(methods, require_auth=False) as (_server, client):
        # --- chunk callback ----------------------------------------------------
        print("=== squares ===")
        await client.call_stream(
            "squares", {"limit": 5}, lambda chunk: print(f"  n={chunk['n']}  n^2={chunk['square']}")
        )

        # --- collected into a list ---------------------------------------------
        print("\n=== countdown ===")
        print(f"  {await client.collect('countdown', {'start': 3})}")

        # --- pushed through a channel ------------------------------------------
        print("\n=== scaled ===")
        output = await client.collect("scaled", {"values": [1.0, 2.0, 3.0], "factor": 10.0})
        print(f"  output={output}")


def main() -> None:
    """Entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
