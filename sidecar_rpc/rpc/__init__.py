# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Authenticated JSON-RPC 2.0 over newline-delimited streams.

Method Types (derived from the handler's return value)
------------------------------------------------------
- **Unary**: the handler returns (or awaits to) a single value
- **Stream**: the handler returns an async iterator, a sync generator,
  a :class:`Stream`, or a :class:`StreamChannel`

Wire Protocol
-------------
UTF-8 text, one JSON object per line, each terminated by ``\\n``.  A
receive buffer accumulates bytes; every complete line is parsed on its own
and the trailing fragment waits for the next read.  A line that is not
valid JSON is answered with ``-32700`` (``id: null``) and the connection
carries on.

**Unary**::

    Client→Server: {"jsonrpc":"2.0","method":"m","params":...,"id":1}
    Server→Client: {"jsonrpc":"2.0","result":...,"id":1}

**Stream**::

    Client→Server: {"jsonrpc":"2.0","method":"m","params":...,"id":5}
    Server→Client: {"jsonrpc":"2.0","method":"m.chunk","params":{"id":5,"data":...}}  (0..N)
    Server→Client: {"jsonrpc":"2.0","result":{"stream":"complete"},"id":5}

**Notification** (no ``id``): dispatched, never answered.

Authentication
--------------
Unless the server is created with ``require_auth=False``, a connection
starts unauthenticated and only ``auth.login`` with ``{"token": ...}`` is
accepted.  Anything else is answered with ``-32001``.  A failed login leaves
the connection open so the caller may retry.

Error codes
-----------
``-32700`` parse error, ``-32600`` invalid request, ``-32601`` method not
found, ``-32001`` authentication, ``-32000`` handler error, ``-32603``
internal (client-side connection loss and timeouts).
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Mapping

from sidecar_rpc.rpc._client import ClientEvent, RpcClient
from sidecar_rpc.rpc._common import (
    APPLICATION_ERROR,
    AUTH_ERROR,
    AUTH_LOGIN_METHOD,
    CHUNK_SUFFIX,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    CallContext,
    ConnectionLostError,
    DispatchInfo,
    HookToken,
    MethodType,
    ParseError,
    RpcError,
    RpcTimeoutError,
    chunk_method,
    current_context,
)
from sidecar_rpc.rpc._events import Observable
from sidecar_rpc.rpc._protocol import ConnectionState, decide
from sidecar_rpc.rpc._server import STREAM_COMPLETE, RpcServer, ServerEvent, ServerInfo
from sidecar_rpc.rpc._transport import DEFAULT_HOST, DEFAULT_PORT, Endpoint
from sidecar_rpc.rpc._types import Handler, MethodRegistry, RpcMethodInfo, Stream, StreamChannel, as_stream
from sidecar_rpc.rpc._wire import (
    ErrorObject,
    LineBuffer,
    Notification,
    Request,
    Response,
    encode_message,
    error_response,
    parse_message,
    success_response,
)

__all__ = [
    # Core
    "RpcServer",
    "RpcClient",
    "RpcError",
    "ConnectionLostError",
    "RpcTimeoutError",
    "ParseError",
    "ServerInfo",
    "ServerEvent",
    "ClientEvent",
    "Observable",
    # Convenience
    "connect",
    "serve_local",
    # Transports
    "Endpoint",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    # Methods + streaming
    "Handler",
    "MethodRegistry",
    "RpcMethodInfo",
    "MethodType",
    "Stream",
    "StreamChannel",
    "STREAM_COMPLETE",
    "as_stream",
    # Context
    "CallContext",
    "DispatchInfo",
    "HookToken",
    "current_context",
    # Wire
    "Request",
    "Notification",
    "Response",
    "ErrorObject",
    "LineBuffer",
    "encode_message",
    "parse_message",
    "success_response",
    "error_response",
    "chunk_method",
    # Protocol state machine
    "ConnectionState",
    "decide",
    # Constants
    "JSONRPC_VERSION",
    "AUTH_LOGIN_METHOD",
    "CHUNK_SUFFIX",
    "PARSE_ERROR",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "INTERNAL_ERROR",
    "APPLICATION_ERROR",
    "AUTH_ERROR",
]


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


@contextlib.asynccontextmanager
async def connect(
    endpoint: Endpoint,
    *,
    token: str | None = None,
    request_timeout: float | None = None,
) -> AsyncIterator[RpcClient]:
    """Connect to a running server and yield the client.

    Args:
        endpoint: Server endpoint.
        token: Shared secret for ``auth.login``.
        request_timeout: Default per-call timeout in seconds.

    Yields:
        A connected (and authenticated) :class:`RpcClient`.

    """
    client = RpcClient(endpoint, token=token, request_timeout=request_timeout)
    await client.connect()
    try:
        yield client
    finally:
        await client.disconnect()


@contextlib.asynccontextmanager
async def serve_local(
    methods: Mapping[str, Handler],
    *,
    endpoint: Endpoint | None = None,
    token: str | None = None,
    require_auth: bool = True,
) -> AsyncIterator[tuple[RpcServer, RpcClient]]:
    """Start an in-process server and yield it with a connected client.

    Useful for tests and demos; no subprocess needed.  The server listens
    on a free loopback TCP port unless *endpoint* says otherwise.

    Yields:
        ``(server, client)``; both are shut down on exit.

    """
    server = RpcServer(endpoint, methods=methods, token=token, require_auth=require_auth)
    address = await server.start()
    try:
        async with connect(address, token=server.token if require_auth else None) as client:
            yield server, client
    finally:
        await server.stop()
