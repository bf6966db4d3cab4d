"""Worker used by supervisor and CLI tests.

Accepts the same ``serve`` flags the supervisor passes, registers a few
test methods next to the system methods, and optionally ignores SIGTERM
so forced termination can be exercised.

With ``--exit-after-accept`` it instead exits with status 7 as soon as the
first connection arrives, leaving a forked child to answer ``auth.login``
half a second later.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import socket
import time
from collections.abc import AsyncIterator
from typing import Any

from sidecar_rpc.daemon import run_daemon
from sidecar_rpc.rpc import Endpoint


def add(params: dict[str, Any]) -> Any:
    """Return ``a + b``."""
    return params["a"] + params["b"]


def echo(params: Any) -> Any:
    """Return params unchanged."""
    return params


async def count(params: dict[str, Any]) -> AsyncIterator[int]:
    """Stream ``0 .. n-1``."""
    for i in range(params["n"]):
        await asyncio.sleep(0)
        yield i


def exit_after_accept(host: str, port: int) -> None:
    """Accept one connection, hand it to a forked child, and exit 7."""
    with socket.create_server((host, port)) as listener:
        conn, _ = listener.accept()
        if os.fork() != 0:
            os._exit(7)
    time.sleep(0.5)
    with conn, conn.makefile("rwb") as stream:
        request = json.loads(stream.readline())
        reply = {"jsonrpc": "2.0", "result": {"authenticated": True}, "id": request["id"]}
        stream.write(json.dumps(reply).encode() + b"\n")
        stream.flush()
        time.sleep(2.0)
    os._exit(0)


def main() -> None:
    """Parse flags and serve."""
    parser = argparse.ArgumentParser()
    parser.add_argument("command", choices=["serve"])
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--socket", default=None)
    parser.add_argument("--token", default=None)
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--ignore-sigterm", action="store_true")
    parser.add_argument("--exit-after-accept", action="store_true")
    args = parser.parse_args()

    if args.exit_after_accept:
        exit_after_accept(args.host, args.port)
        return

    endpoint = Endpoint.unix(args.socket) if args.socket else Endpoint.tcp(args.host, args.port)
    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    asyncio.run(
        run_daemon(
            endpoint,
            token=args.token,
            verbose=args.verbose,
            methods={"add": add, "echo": echo, "count": count},
            handle_signals=not args.ignore_sigterm,
        )
    )


if __name__ == "__main__":
    main()
