"""Authenticated line-delimited JSON-RPC server on asyncio streams."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
import uuid
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import TracebackType
from typing import Any, Literal, Self

from sidecar_rpc.rpc._common import (
    APPLICATION_ERROR,
    CallContext,
    DispatchInfo,
    HookToken,
    MethodType,
    ParseError,
    RpcError,
    _access_logger,
    _current_call,
    _current_request_id,
    _DispatchHook,
    _generate_request_id,
    _logger,
    chunk_method,
)
from sidecar_rpc.rpc._debug import (
    fmt_line,
    fmt_params,
    wire_request_logger,
    wire_response_logger,
    wire_stream_logger,
    wire_transport_logger,
)
from sidecar_rpc.rpc._events import Observable
from sidecar_rpc.rpc._protocol import Close, ConnectionState, Dispatch, Ignore, Reply, decide
from sidecar_rpc.rpc._transport import Endpoint, peer_name
from sidecar_rpc.rpc._types import Handler, MethodRegistry, RpcMethodInfo, as_stream
from sidecar_rpc.rpc._wire import (
    LineBuffer,
    Message,
    Notification,
    Request,
    Response,
    encode_message,
    error_response,
    exception_data,
    parse_error_response,
    parse_message,
    success_response,
)

_READ_CHUNK = 64 * 1024

STREAM_COMPLETE: Mapping[str, str] = {"stream": "complete"}
"""Result of the terminating Response of a streaming call."""


class ServerEvent(StrEnum):
    """Events emitted by :class:`RpcServer`."""

    LISTENING = "listening"
    CONNECTION = "connection"
    DISCONNECTION = "disconnection"
    CLIENT_ERROR = "client-error"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class ServerInfo:
    """Snapshot returned by :meth:`RpcServer.info`."""

    is_running: bool
    clients: int
    address: Endpoint | None
    token: str

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form, as printed in the daemon ready line."""
        return {
            "isRunning": self.is_running,
            "clients": self.clients,
            **(self.address.to_dict() if self.address is not None else {}),
            "token": self.token,
        }


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def _log_method_error(server_id: str, method_name: str, exc: BaseException) -> str:
    """Log a handler error and return the exception class name.

    Returns:
        The exception class name (for use as ``error_type``).

    """
    error_type = type(exc).__name__
    extra: dict[str, object] = {"server_id": server_id, "method": method_name, "error_type": error_type}
    correlation = _current_request_id.get()
    if correlation:
        extra["correlation_id"] = correlation
    _logger.error("Error in %s: %s", method_name, exc, exc_info=True, extra=extra)
    return error_type


def _emit_access_log(
    info: DispatchInfo,
    server_id: str,
    method_type: MethodType,
    duration_ms: float,
    status: Literal["ok", "error"],
    error_type: str = "",
    chunks: int = 0,
) -> None:
    """Emit a structured access log record for a completed call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    try:
        extra: dict[str, object] = {
            "server_id": server_id,
            "connection_id": info.connection_id,
            "method": info.method,
            "method_type": method_type.value,
            "request_id": info.request_id,
            "remote_addr": info.remote_addr,
            "duration_ms": round(duration_ms, 2),
            "status": status,
            "error_type": error_type,
        }
        correlation = _current_request_id.get()
        if correlation:
            extra["correlation_id"] = correlation
        if method_type is MethodType.STREAM:
            extra["chunks"] = chunks
        _access_logger.info("%s %s", info.method, status, extra=extra)
    except Exception:
        _logger.debug("Access log emission failed", exc_info=True)


def _handler_error_response(request_id: str | int, exc: Exception) -> Response:
    """Convert a handler exception into an error Response."""
    if isinstance(exc, RpcError):
        return error_response(request_id, exc.code, exc.message, exc.data)
    return error_response(request_id, APPLICATION_ERROR, str(exc) or type(exc).__name__, exception_data(exc))


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class _Connection:
    """Server-side state of one accepted stream."""

    __slots__ = ("buffer", "closed", "id", "reader", "remote_addr", "state", "task", "writer")

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        state: ConnectionState,
        max_line_bytes: int | None,
    ) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.reader = reader
        self.writer = writer
        self.state = state
        self.buffer = LineBuffer(max_line_bytes)
        self.remote_addr = peer_name(writer)
        self.closed = False
        self.task: asyncio.Task[None] | None = None

    async def write(self, msg: Message) -> None:
        """Encode and write one message, waiting for the transport to drain."""
        data = encode_message(msg)
        self.writer.write(data)
        await self.writer.drain()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.writer.close()


_TRANSPORT_ERRORS = (ConnectionError, OSError)
"""Errors from writing to a stream whose peer has gone away."""


# ---------------------------------------------------------------------------
# RpcServer
# ---------------------------------------------------------------------------


class RpcServer(Observable[ServerEvent]):
    """Serves registered methods over TCP or a Unix domain socket.

    Every connection runs its own read loop; messages on one connection are
    handled strictly in order, while different connections interleave at
    I/O boundaries.  All state lives on the event loop thread.

    Example::

        server = RpcServer(Endpoint.tcp(port=0), token="secret")
        server.register_method("echo", lambda params: params)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(
        self,
        endpoint: Endpoint | None = None,
        *,
        methods: Mapping[str, Handler] | None = None,
        token: str | None = None,
        require_auth: bool = True,
        max_connections: int | None = None,
        max_auth_attempts: int | None = None,
        max_line_bytes: int | None = None,
        server_id: str | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            endpoint: Where to listen; defaults to TCP ``127.0.0.1`` on a free port.
            methods: Initial method registrations.
            token: Shared secret for ``auth.login``; generated when ``None``.
            require_auth: When ``False`` every connection starts authenticated.
            max_connections: Reject connections beyond this many live ones.
            max_auth_attempts: Close a connection after this many failed logins.
            max_line_bytes: Largest accepted unterminated line.
            server_id: Identifier used in logs; random when ``None``.

        """
        super().__init__()
        if max_connections is not None and max_connections < 1:
            raise ValueError(f"max_connections must be >= 1, got {max_connections}")
        if max_auth_attempts is not None and max_auth_attempts < 1:
            raise ValueError(f"max_auth_attempts must be >= 1, got {max_auth_attempts}")
        self._endpoint = endpoint or Endpoint.tcp()
        self._token = token if token is not None else secrets.token_hex(32)
        self._require_auth = require_auth
        self._max_connections = max_connections
        self._max_auth_attempts = max_auth_attempts
        self._max_line_bytes = max_line_bytes
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        self._registry = MethodRegistry(methods)
        self._connections: dict[str, _Connection] = {}
        self._server: asyncio.Server | None = None
        self._address: Endpoint | None = None
        self._stopped: asyncio.Event | None = None
        self._dispatch_hook: _DispatchHook | None = None

        _logger.info(
            "RpcServer created (server_id=%s, endpoint=%s, auth=%s)",
            self._server_id,
            self._endpoint,
            require_auth,
            extra={"server_id": self._server_id, "endpoint": str(self._endpoint), "require_auth": require_auth},
        )

    # -- properties ---------------------------------------------------------

    @property
    def token(self) -> str:
        """The shared secret clients must present to ``auth.login``."""
        return self._token

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def require_auth(self) -> bool:
        """Whether connections start unauthenticated."""
        return self._require_auth

    @property
    def registry(self) -> MethodRegistry:
        """The method registry owned by this server."""
        return self._registry

    @property
    def address(self) -> Endpoint | None:
        """Bound endpoint while running, else ``None``."""
        return self._address

    @property
    def is_running(self) -> bool:
        """Whether the listener is open."""
        return self._server is not None

    @property
    def clients(self) -> int:
        """Number of live connections."""
        return len(self._connections)

    def info(self) -> ServerInfo:
        """Return a snapshot of the server state."""
        return ServerInfo(self.is_running, len(self._connections), self._address, self._token)

    # -- registration -------------------------------------------------------

    def register_method(self, name: str, handler: Handler) -> None:
        """Install *handler* for *name*; the last registration wins."""
        replaced = name in self._registry
        self._registry.register(name, handler)
        _logger.debug("Registered method %s%s", name, " (replaced)" if replaced else "")

    def register_methods(self, methods: Mapping[str, Handler]) -> None:
        """Install every handler in *methods*."""
        for name, handler in methods.items():
            self.register_method(name, handler)

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> Endpoint:
        """Bind the listener.

        Returns:
            The bound endpoint (with the real port for TCP port ``0``).

        Raises:
            RuntimeError: If the server is already running.
            OSError: If the endpoint cannot be bound.

        """
        if self._server is not None:
            raise RuntimeError("Server already running")
        try:
            self._server, self._address = await self._endpoint.start_server(self._handle_connection)
        except OSError as exc:
            _logger.error("Failed to listen on %s: %s", self._endpoint, exc, extra={"server_id": self._server_id})
            self._emit(ServerEvent.ERROR, exc)
            raise
        self._stopped = asyncio.Event()
        _logger.info(
            "RpcServer listening on %s (server_id=%s)",
            self._address,
            self._server_id,
            extra={"server_id": self._server_id, "address": str(self._address)},
        )
        self._emit(ServerEvent.LISTENING, {**self._address.to_dict(), "token": self._token})
        return self._address

    async def stop(self) -> None:
        """Close all connections and the listener.  No-op when not running."""
        server = self._server
        if server is None:
            return
        self._server = None
        server.close()
        connections = list(self._connections.values())
        for conn in connections:
            conn.close()
        tasks = [c.task for c in connections if c.task is not None and c.task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._connections.clear()
        with contextlib.suppress(Exception):
            await asyncio.wait_for(server.wait_closed(), timeout=5.0)
        if self._address is not None:
            self._address.cleanup()
        self._address = None
        _logger.info("RpcServer stopped (server_id=%s)", self._server_id, extra={"server_id": self._server_id})
        if self._stopped is not None:
            self._stopped.set()
        self._emit(ServerEvent.CLOSED)

    async def serve_forever(self) -> None:
        """Start if needed and wait until :meth:`stop` is called."""
        if self._server is None:
            await self.start()
        stopped = self._stopped
        if stopped is None:
            raise RuntimeError("RpcServer is not running")
        await stopped.wait()

    async def __aenter__(self) -> Self:
        """Start the server."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Stop the server."""
        await self.stop()

    # -- broadcast ----------------------------------------------------------

    async def broadcast(self, method: str, params: Any = None) -> int:
        """Send a Notification to every live connection, authenticated or not.

        Returns:
            The number of connections the notification was written to.

        """
        msg = Notification(method, params)
        conns = list(self._connections.values())
        if wire_stream_logger.isEnabledFor(logging.DEBUG):
            wire_stream_logger.debug("broadcast %s to %d connection(s)", method, len(conns))
        results = await asyncio.gather(*(self._send(conn, msg) for conn in conns))
        return sum(results)

    # -- connection handling --------------------------------------------------

    async def _send(self, conn: _Connection, msg: Message) -> bool:
        """Write *msg* to *conn*; transport failures drop that connection only."""
        if conn.closed:
            return False
        try:
            await conn.write(msg)
        except _TRANSPORT_ERRORS as exc:
            wire_transport_logger.debug("Write to connection %s failed: %s", conn.id, exc)
            self._emit(ServerEvent.CLIENT_ERROR, conn.id, exc)
            conn.close()
            return False
        return True

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._server is None:
            writer.close()
            return
        if self._max_connections is not None and len(self._connections) >= self._max_connections:
            _logger.warning(
                "Rejecting connection from %s: max_connections=%d reached",
                peer_name(writer) or "unix socket",
                self._max_connections,
                extra={"server_id": self._server_id},
            )
            writer.close()
            return

        conn = _Connection(reader, writer, ConnectionState.initial(self._require_auth), self._max_line_bytes)
        conn.task = asyncio.current_task()
        self._connections[conn.id] = conn
        wire_transport_logger.debug("Accepted connection %s from %s", conn.id, conn.remote_addr or "unix socket")
        self._emit(ServerEvent.CONNECTION, conn.id, conn.remote_addr)
        try:
            await self._read_loop(conn)
        except _TRANSPORT_ERRORS as exc:
            wire_transport_logger.debug("Connection %s errored: %s", conn.id, exc)
            self._emit(ServerEvent.CLIENT_ERROR, conn.id, exc)
        finally:
            conn.close()
            if self._connections.pop(conn.id, None) is not None:
                self._emit(ServerEvent.DISCONNECTION, conn.id)
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            wire_transport_logger.debug("Connection %s closed", conn.id)

    async def _read_loop(self, conn: _Connection) -> None:
        while not conn.closed:
            data = await conn.reader.read(_READ_CHUNK)
            if not data:
                return
            try:
                lines = conn.buffer.feed(data)
            except ParseError as exc:
                await self._send(conn, parse_error_response(exc))
                continue
            for line in lines:
                if conn.closed:
                    return
                await self._handle_line(conn, line)

    async def _handle_line(self, conn: _Connection, line: str) -> None:
        if wire_request_logger.isEnabledFor(logging.DEBUG):
            wire_request_logger.debug("<- [%s] %s", conn.id, fmt_line(line))
        try:
            msg = parse_message(line)
        except ParseError as exc:
            await self._send(conn, parse_error_response(exc))
            return

        conn.state, action = decide(
            conn.state,
            msg,
            token=self._token,
            methods=self._registry,
            max_auth_attempts=self._max_auth_attempts,
        )
        match action:
            case Reply(response=response):
                await self._send(conn, response)
            case Close(response=response):
                _logger.warning(
                    "Closing connection %s after %d failed login attempt(s)",
                    conn.id,
                    conn.state.failed_logins,
                    extra={"server_id": self._server_id, "connection_id": conn.id},
                )
                await self._send(conn, response)
                conn.close()
            case Ignore(reason=reason):
                wire_request_logger.debug("Ignoring message on %s: %s", conn.id, reason)
            case Dispatch(message=Request() as request):
                await self._dispatch_request(conn, request, self._registry[request.method])
            case Dispatch(message=Notification() as notification):
                await self._dispatch_notification(conn, notification, self._registry[notification.method])

    # -- dispatch -----------------------------------------------------------

    def _hook_start(self, info: DispatchInfo) -> tuple[_DispatchHook | None, HookToken]:
        hook = self._dispatch_hook
        if hook is None:
            return None, None
        try:
            return hook, hook.on_dispatch_start(info)
        except Exception:
            _logger.debug("Dispatch hook start failed", exc_info=True)
            return None, None

    @staticmethod
    def _hook_end(
        hook: _DispatchHook | None,
        token: HookToken,
        info: DispatchInfo,
        error: BaseException | None,
        method_type: MethodType,
        chunks: int,
    ) -> None:
        if hook is None:
            return
        try:
            hook.on_dispatch_end(token, info, error, method_type=method_type, chunks=chunks)
        except Exception:
            _logger.debug("Dispatch hook end failed", exc_info=True)

    async def _dispatch_request(self, conn: _Connection, request: Request, method: RpcMethodInfo) -> None:
        info = DispatchInfo(request.method, request.id, conn.id, conn.remote_addr)
        rid_token = _current_request_id.set(_generate_request_id())
        ctx_token = _current_call.set(
            CallContext(
                server_id=self._server_id,
                connection_id=conn.id,
                method=request.method,
                request_id=request.id,
                remote_addr=conn.remote_addr,
            )
        )
        if wire_request_logger.isEnabledFor(logging.DEBUG):
            wire_request_logger.debug(
                "dispatch %s id=%r params=%s", request.method, request.id, fmt_params(request.params)
            )
        start = time.monotonic()
        status: Literal["ok", "error"] = "ok"
        error_type = ""
        method_type = MethodType.UNARY
        chunks = 0
        hook, hook_token = self._hook_start(info)
        hook_exc: BaseException | None = None
        responded = False
        try:
            try:
                result = await method.invoke(request.params)
                stream = as_stream(result)
                if stream is None:
                    await self._send(conn, success_response(request.id, result))
                    responded = True
                else:
                    method_type = MethodType.STREAM
                    try:
                        async for item in stream:
                            if not await self._send(conn, _chunk(request, item)):
                                break
                            chunks += 1
                        else:
                            await self._send(conn, success_response(request.id, dict(STREAM_COMPLETE)))
                            responded = True
                    finally:
                        await _aclose(stream)
            except Exception as exc:
                hook_exc = exc
                status = "error"
                error_type = _log_method_error(self._server_id, request.method, exc)
                if not responded:
                    await self._send(conn, _handler_error_response(request.id, exc))
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            if wire_response_logger.isEnabledFor(logging.DEBUG):
                wire_response_logger.debug(
                    "-> [%s] %s id=%r %s (%.2fms, chunks=%d)",
                    conn.id,
                    request.method,
                    request.id,
                    status,
                    duration_ms,
                    chunks,
                )
            _emit_access_log(info, self._server_id, method_type, duration_ms, status, error_type, chunks)
            self._hook_end(hook, hook_token, info, hook_exc, method_type, chunks)
            _current_call.reset(ctx_token)
            _current_request_id.reset(rid_token)

    async def _dispatch_notification(
        self, conn: _Connection, notification: Notification, method: RpcMethodInfo
    ) -> None:
        info = DispatchInfo(notification.method, None, conn.id, conn.remote_addr)
        rid_token = _current_request_id.set(_generate_request_id())
        ctx_token = _current_call.set(
            CallContext(
                server_id=self._server_id,
                connection_id=conn.id,
                method=notification.method,
                request_id=None,
                remote_addr=conn.remote_addr,
            )
        )
        start = time.monotonic()
        status: Literal["ok", "error"] = "ok"
        error_type = ""
        hook, hook_token = self._hook_start(info)
        hook_exc: BaseException | None = None
        try:
            result = await method.invoke(notification.params)
            stream = as_stream(result)
            if stream is not None:
                async for _ in stream:
                    pass
        except Exception as exc:
            hook_exc = exc
            status = "error"
            error_type = _log_method_error(self._server_id, notification.method, exc)
        finally:
            duration_ms = (time.monotonic() - start) * 1000
            _emit_access_log(info, self._server_id, MethodType.NOTIFICATION, duration_ms, status, error_type)
            self._hook_end(hook, hook_token, info, hook_exc, MethodType.NOTIFICATION, 0)
            _current_call.reset(ctx_token)
            _current_request_id.reset(rid_token)


def _chunk(request: Request, item: Any) -> Notification:
    return Notification(chunk_method(request.method), {"id": request.id, "data": item})


async def _aclose(stream: AsyncIterator[Any]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
