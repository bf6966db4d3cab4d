"""Minimal sidecar-rpc example: register methods and call them in-process.

This is the quickest way to get started.  The server listens on a free
loopback port inside the same event loop as the client; no subprocess is
needed.

Run::

    python examples/hello_world.py
"""

from __future__ import annotations

import asyncio
from typing import Any

from sidecar_rpc import RpcError, serve_local


# 1. Write handlers.  A handler takes the request params (or nothing)
#    and returns a JSON-serialisable value.
def greet(params: dict[str, Any]) -> str:
    """Return a greeting for ``params["name"]``."""
    return f"Hello, {params['name']}!"


async def add(params: dict[str, Any]) -> float:
    """Add two numbers.  Handlers may be coroutines."""
    return params["a"] + params["b"]


def divide(params: dict[str, Any]) -> float:
    """Divide a by b."""
    if params["b"] == 0:
        raise ValueError("Division by zero")
    return params["a"] / params["b"]


# 2. Serve them and call through a connected client.
async def run() -> None:
    """Run the example."""
    methods = {"greet": greet, "add": add, "divide": divide}
    async with serve_local(methods, token="s3cret") as (_server, client):
        print(await client.call("greet", {"name": "World"}))  # Hello, World!
        print(await client.call("add", {"a": 2.5, "b": 3.5}))  # 6.0

        # Handler exceptions come back as RpcError with code -32000
        try:
            await client.call("divide", {"a": 1, "b": 0})
        except RpcError as e:
            print(f"Caught remote error {e.code}: {e.message} ({e.data['type']})")


def main() -> None:
    """Entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
