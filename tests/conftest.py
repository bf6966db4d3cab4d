"""Shared test fixtures for sidecar-rpc tests."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import socket
import tempfile
from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from sidecar_rpc.rpc import Endpoint

REPO_ROOT = Path(__file__).resolve().parent.parent
SERVE_FIXTURE = str(Path(__file__).parent / "serve_fixture.py")


def free_port() -> int:
    """Return a TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def fixture_worker_args(*extra: str) -> tuple[str, ...]:
    """Supervisor ``args`` that run the fixture worker under the current interpreter."""
    return (SERVE_FIXTURE, *extra)


def worker_env() -> dict[str, str]:
    """Environment that lets a worker subprocess import ``sidecar_rpc`` from the checkout."""
    existing = os.environ.get("PYTHONPATH")
    return {"PYTHONPATH": f"{REPO_ROOT}{os.pathsep}{existing}" if existing else str(REPO_ROOT)}


class RawConnection:
    """Line-level access to a server, bypassing :class:`RpcClient`."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Wrap an open stream pair."""
        self.reader = reader
        self.writer = writer

    @classmethod
    async def open(cls, endpoint: Endpoint) -> RawConnection:
        """Connect to *endpoint*."""
        reader, writer = await endpoint.open_connection()
        return cls(reader, writer)

    async def send(self, message: dict[str, Any] | bytes) -> None:
        """Write a JSON object as one line, or raw bytes as-is."""
        data = message if isinstance(message, bytes) else json.dumps(message).encode() + b"\n"
        self.writer.write(data)
        await self.writer.drain()

    async def recv(self, timeout: float = 5.0) -> dict[str, Any]:
        """Read and decode the next line."""
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        assert line, "connection closed by server"
        result: dict[str, Any] = json.loads(line)
        return result

    async def recv_eof(self, timeout: float = 5.0) -> bool:
        """Whether the server closes the connection within *timeout*."""
        line = await asyncio.wait_for(self.reader.readline(), timeout)
        return line == b""

    async def assert_silent(self, timeout: float = 0.3) -> None:
        """Assert that nothing arrives within *timeout*."""
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(self.reader.readline(), timeout)

    async def login(self, token: str, request_id: int = 0) -> dict[str, Any]:
        """Send ``auth.login`` and return the Response."""
        await self.send({"jsonrpc": "2.0", "method": "auth.login", "params": {"token": token}, "id": request_id})
        return await self.recv()

    async def close(self) -> None:
        """Close the connection."""
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


@pytest.fixture
def socket_dir() -> Iterator[str]:
    """Short-lived directory under /tmp (AF_UNIX paths are length-limited)."""
    path = tempfile.mkdtemp(prefix="scrpc-", dir="/tmp")
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(params=["tcp", "unix"])
def endpoint(request: pytest.FixtureRequest, socket_dir: str) -> Endpoint:
    """Listening endpoint, parametrized over TCP loopback and a Unix socket."""
    if request.param == "unix":
        return Endpoint.unix(f"{socket_dir}/rpc.sock")
    return Endpoint.tcp(port=0)


@pytest_asyncio.fixture
async def raw_factory() -> AsyncIterator[Any]:
    """Open :class:`RawConnection` objects and close them after the test."""
    opened: list[RawConnection] = []

    async def _open(endpoint: Endpoint) -> RawConnection:
        conn = await RawConnection.open(endpoint)
        opened.append(conn)
        return conn

    yield _open
    for conn in opened:
        await conn.close()
