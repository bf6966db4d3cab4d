"""Stream transports: TCP loopback and Unix domain sockets."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import stat
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sidecar_rpc.rpc._debug import wire_transport_logger

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9123
"""Port used by clients and the supervisor when none is configured."""

type ConnectionCallback = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


# ---------------------------------------------------------------------------
# Endpoint
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Endpoint:
    """Where a server listens or a client connects.

    Exactly one mode is active: a filesystem socket ``path``, or TCP
    ``host``/``port``.  Port ``0`` asks the OS for a free port when
    listening.
    """

    host: str = DEFAULT_HOST
    port: int = 0
    path: str | None = None

    @classmethod
    def tcp(cls, host: str = DEFAULT_HOST, port: int = 0) -> Endpoint:
        """TCP endpoint."""
        return cls(host=host, port=port)

    @classmethod
    def unix(cls, path: str | os.PathLike[str]) -> Endpoint:
        """Unix domain socket endpoint."""
        return cls(path=os.fspath(path))

    @classmethod
    def parse(cls, value: str) -> Endpoint:
        """Parse ``unix:/path``, ``host:port`` or a bare port number.

        Raises:
            ValueError: If the value matches none of those forms.

        """
        if value.startswith("unix:"):
            return cls.unix(value[len("unix:") :])
        if value.isdigit():
            return cls.tcp(port=int(value))
        host, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"Cannot parse endpoint {value!r}; expected unix:/path or host:port")
        return cls.tcp(host.strip("[]") or DEFAULT_HOST, int(port))

    @property
    def is_unix(self) -> bool:
        """Whether this is a Unix domain socket endpoint."""
        return self.path is not None

    def __str__(self) -> str:
        if self.path is not None:
            return f"unix:{self.path}"
        return f"{self.host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        """Address fields reported to observers and in the ready line."""
        if self.path is not None:
            return {"socketPath": self.path}
        return {"host": self.host, "port": self.port}

    async def open_connection(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a client connection to this endpoint."""
        if self.path is not None:
            return await asyncio.open_unix_connection(self.path)
        return await asyncio.open_connection(self.host, self.port)

    async def start_server(self, callback: ConnectionCallback) -> tuple[asyncio.Server, Endpoint]:
        """Start listening and return the server plus the bound endpoint.

        For TCP with port ``0`` the returned endpoint carries the port the
        OS actually assigned.
        """
        if self.path is not None:
            _remove_stale_socket(self.path)
            server = await asyncio.start_unix_server(callback, self.path)
            bound = self
        else:
            server = await asyncio.start_server(callback, self.host, self.port)
            port = self.port
            for sock in server.sockets:
                if sock.family in (socket.AF_INET, socket.AF_INET6):
                    port = sock.getsockname()[1]
                    break
            bound = Endpoint.tcp(self.host, port)
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("Listening on %s", bound)
        return server, bound

    def cleanup(self) -> None:
        """Remove the socket file of a Unix endpoint (no-op for TCP)."""
        if self.path is not None:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.path)


def _remove_stale_socket(path: str) -> None:
    """Unlink a leftover socket file from a previous run.

    Raises:
        FileExistsError: If *path* exists and is not a socket.

    """
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(st.st_mode):
        raise FileExistsError(f"{path} exists and is not a socket")
    wire_transport_logger.debug("Removing stale socket %s", path)
    os.unlink(path)


def peer_name(writer: asyncio.StreamWriter) -> str:
    """Printable peer address of a connection, empty for Unix sockets."""
    peer = writer.get_extra_info("peername")
    if isinstance(peer, tuple) and len(peer) >= 2:
        return f"{peer[0]}:{peer[1]}"
    return ""
