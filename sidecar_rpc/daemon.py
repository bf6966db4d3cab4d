"""Worker-side entry point: system methods, ready line, signal handling.

``run_daemon`` is what ``sidecar-rpc serve`` runs inside the supervised
process.  Once the server is listening it prints a single JSON line::

    {"type": "ipc-server-ready", "isRunning": true, "clients": 0, "host": "127.0.0.1", "port": 9123, "token": "..."}

so a parent that does not poll can read the endpoint and token from stdout.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib.metadata
import json
import logging
import platform
import signal
import sys
import time
from collections.abc import Mapping
from typing import IO, Any

from sidecar_rpc.rpc import Endpoint, RpcServer, ServerEvent
from sidecar_rpc.rpc._types import Handler

__all__ = ["READY_MESSAGE_TYPE", "SHUTDOWN_DELAY", "package_version", "register_system_methods", "run_daemon"]

_logger = logging.getLogger("sidecar_rpc.daemon")

READY_MESSAGE_TYPE = "ipc-server-ready"
SHUTDOWN_DELAY = 0.1
"""Seconds between answering ``system.shutdown`` and stopping the server."""


def package_version() -> str:
    """Installed version of this package, or ``"0.0.0"`` when not installed."""
    try:
        return importlib.metadata.version("sidecar-rpc")
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"


def register_system_methods(server: RpcServer, *, version: str | None = None) -> None:
    """Register ``system.ping``, ``system.version``, ``system.methods`` and ``system.shutdown``."""
    resolved_version = version if version is not None else package_version()
    background: set[asyncio.Task[None]] = set()

    def ping() -> dict[str, Any]:
        return {"pong": True, "timestamp": int(time.time() * 1000)}

    def version_info() -> dict[str, Any]:
        runtime = f"{platform.python_implementation()} {platform.python_version()}"
        return {"version": resolved_version, "runtime": runtime}

    def methods() -> list[str]:
        return server.registry.names()

    def shutdown() -> dict[str, Any]:
        loop = asyncio.get_running_loop()

        def _stop() -> None:
            task = loop.create_task(server.stop())
            background.add(task)
            task.add_done_callback(background.discard)

        _logger.info("Shutdown requested over RPC")
        loop.call_later(SHUTDOWN_DELAY, _stop)
        return {"success": True}

    server.register_methods(
        {
            "system.ping": ping,
            "system.version": version_info,
            "system.methods": methods,
            "system.shutdown": shutdown,
        }
    )


def _write_ready_line(out: IO[str], info: Mapping[str, Any]) -> None:
    out.write(json.dumps({"type": READY_MESSAGE_TYPE, "isRunning": True, "clients": 0, **info}) + "\n")
    out.flush()


async def run_daemon(
    endpoint: Endpoint,
    *,
    token: str | None = None,
    require_auth: bool = True,
    max_connections: int | None = None,
    max_auth_attempts: int | None = None,
    verbose: bool = False,
    methods: Mapping[str, Handler] | None = None,
    out: IO[str] | None = None,
    handle_signals: bool = True,
) -> None:
    """Serve until SIGINT/SIGTERM or ``system.shutdown``.

    Args:
        endpoint: Where to listen.
        token: Shared secret; generated when ``None``.
        require_auth: Require ``auth.login`` on every connection.
        max_connections: Cap on concurrent connections.
        max_auth_attempts: Failed logins allowed per connection.
        verbose: Log connection events at INFO.
        methods: Extra methods to register next to the system methods.
        out: Stream for the ready line; defaults to ``sys.stdout``.
        handle_signals: Stop on SIGINT/SIGTERM.

    """
    server = RpcServer(
        endpoint,
        token=token,
        require_auth=require_auth,
        max_connections=max_connections,
        max_auth_attempts=max_auth_attempts,
    )
    register_system_methods(server)
    if methods:
        server.register_methods(methods)

    stream = out if out is not None else sys.stdout
    server.on(ServerEvent.LISTENING, lambda info: _write_ready_line(stream, info))
    if verbose:
        server.on(ServerEvent.CONNECTION, lambda conn_id, addr: _logger.info("Client connected: %s %s", conn_id, addr))
        server.on(ServerEvent.DISCONNECTION, lambda conn_id: _logger.info("Client disconnected: %s", conn_id))
        server.on(ServerEvent.CLIENT_ERROR, lambda conn_id, exc: _logger.info("Client error on %s: %s", conn_id, exc))

    loop = asyncio.get_running_loop()
    stop_tasks: set[asyncio.Task[None]] = set()

    def _on_signal(signame: str) -> None:
        _logger.info("Received %s, shutting down", signame)
        task = loop.create_task(server.stop())
        stop_tasks.add(task)
        task.add_done_callback(stop_tasks.discard)

    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM) if handle_signals else ():
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, _on_signal, sig.name)
            installed.append(sig)
    try:
        await server.start()
        await server.serve_forever()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await server.stop()
