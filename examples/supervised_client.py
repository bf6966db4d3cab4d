"""Supervisor example: spawn a worker, call it, survive a crash, stop it.

The supervisor launches ``supervised_worker.py`` with ``serve --port ...``,
polls until its client can connect, and restarts the worker if it dies.

Run::

    python examples/supervised_client.py
"""

from __future__ import annotations

import asyncio
import os
import secrets
import signal
import socket
import sys
from pathlib import Path

from sidecar_rpc import RpcError, State, Supervisor, SupervisorConfig, SupervisorEvent

_HERE = Path(__file__).resolve().parent


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


async def run() -> None:
    """Run the example."""
    config = SupervisorConfig(
        executable=sys.executable,
        args=[str(_HERE / "supervised_worker.py")],
        port=_free_port(),
        token=secrets.token_hex(16),
        restart_delay=0.2,
        max_restarts=2,
        startup_initial_delay=0.1,
        poll_interval=0.1,
        stop_grace=2.0,
    )
    supervisor = Supervisor(config)
    supervisor.on(SupervisorEvent.STATE_CHANGE, lambda change: print(f"  [{change['from']} -> {change['to']}]"))

    await supervisor.start()
    print(f"add(2, 3)      = {await supervisor.call('add', {'a': 2, 'b': 3})}")
    print(f"multiply(4, 5) = {await supervisor.call('multiply', {'a': 4, 'b': 5})}")

    try:
        await supervisor.call("divide", {"a": 1, "b": 0})
    except RpcError as e:
        print(f"Caught remote error: {e.message}")

    # Kill the worker behind the supervisor's back; it comes back on its own.
    pid = supervisor.pid
    assert pid is not None
    os.kill(pid, signal.SIGKILL)
    async with asyncio.timeout(10):
        while supervisor.state is not State.RUNNING or supervisor.pid == pid:
            await asyncio.sleep(0.05)
    print(f"restarted, divide(10, 4) = {await supervisor.call('divide', {'a': 10, 'b': 4})}")

    await supervisor.stop()
    print(f"final state: {supervisor.state.value}")


def main() -> None:
    """Entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
