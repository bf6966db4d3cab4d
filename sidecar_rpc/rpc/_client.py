# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client connection with request correlation and reconnect."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from enum import StrEnum
from types import TracebackType
from typing import Any, Self

from sidecar_rpc.rpc._common import (
    AUTH_LOGIN_METHOD,
    CHUNK_SUFFIX,
    ConnectionLostError,
    ParseError,
    RpcError,
    RpcTimeoutError,
    _client_logger,
)
from sidecar_rpc.rpc._debug import (
    fmt_line,
    fmt_params,
    wire_request_logger,
    wire_response_logger,
    wire_transport_logger,
)
from sidecar_rpc.rpc._events import Observable
from sidecar_rpc.rpc._transport import DEFAULT_PORT, Endpoint
from sidecar_rpc.rpc._wire import (
    LineBuffer,
    Message,
    Notification,
    Request,
    RequestId,
    Response,
    encode_message,
    parse_message,
)

# Exceptions that indicate the peer has gone away.  Wrapped into
# ``ConnectionLostError`` for callers.  Specific ``ConnectionError``
# subclasses only, so unrelated OS errors are not swallowed.
_TRANSPORT_ERRORS = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError, EOFError)

_READ_CHUNK = 64 * 1024

type ChunkCallback = Callable[[Any], Any]


class ClientEvent(StrEnum):
    """Events emitted by :class:`RpcClient`."""

    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"
    NOTIFICATION = "notification"
    PARSE_ERROR = "parse-error"
    RECONNECT_ERROR = "reconnect-error"
    ERROR = "error"


class RpcClient(Observable[ClientEvent]):
    """Connects to an :class:`~sidecar_rpc.rpc.RpcServer` and issues calls.

    Request ids are drawn from a per-client counter, so they are unique
    among this client's in-flight requests.  Pending calls are failed with
    :class:`ConnectionLostError` when the connection drops or
    :meth:`disconnect` is called.

    With ``reconnect=True`` an unexpected disconnect starts a background
    loop that retries :meth:`connect` every ``reconnect_interval`` seconds
    until it succeeds or :meth:`disconnect` is called.

    Not thread-safe: use from a single event loop.
    """

    def __init__(
        self,
        endpoint: Endpoint | None = None,
        *,
        token: str | None = None,
        reconnect: bool = False,
        reconnect_interval: float = 5.0,
        request_timeout: float | None = None,
    ) -> None:
        """Initialize the client (does not connect).

        Args:
            endpoint: Server endpoint; defaults to ``127.0.0.1:9123``.
            token: Shared secret sent with ``auth.login`` on connect.
            reconnect: Retry on unexpected disconnects.
            reconnect_interval: Seconds between reconnect attempts.
            request_timeout: Default per-call timeout in seconds.

        """
        super().__init__()
        self._endpoint = endpoint or Endpoint.tcp(port=DEFAULT_PORT)
        self._token = token
        self._reconnect = reconnect
        self._reconnect_interval = reconnect_interval
        self._request_timeout = request_timeout
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connect_lock = asyncio.Lock()
        self._authenticated = False
        self._closing = False
        self._next_id = 0
        self._pending: dict[RequestId, asyncio.Future[Any]] = {}
        self._stream_handlers: dict[RequestId, ChunkCallback] = {}

    # -- properties ---------------------------------------------------------

    @property
    def endpoint(self) -> Endpoint:
        """The endpoint this client connects to."""
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        """Whether a transport connection is open."""
        return self._writer is not None

    @property
    def is_authenticated(self) -> bool:
        """Whether the current connection passed ``auth.login`` (or needed none)."""
        return self._writer is not None and self._authenticated

    @property
    def pending(self) -> int:
        """Number of calls awaiting a Response."""
        return len(self._pending)

    # -- lifecycle ----------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and authenticate when a token is configured.

        No-op when already connected.

        Raises:
            OSError: If the transport cannot be established.
            RpcError: If the server rejects the token.

        """
        async with self._connect_lock:
            if self._writer is not None:
                return
            self._closing = False
            try:
                reader, writer = await self._endpoint.open_connection()
            except OSError as exc:
                _client_logger.debug("Connect to %s failed: %s", self._endpoint, exc)
                raise
            self._writer = writer
            self._authenticated = False
            self._reader_task = asyncio.get_running_loop().create_task(
                self._read_loop(reader), name=f"sidecar-rpc-client-read[{self._endpoint}]"
            )
            wire_transport_logger.debug("Connected to %s", self._endpoint)
            self._emit(ClientEvent.CONNECTED)

            if self._token is not None:
                try:
                    await self.call(AUTH_LOGIN_METHOD, {"token": self._token})
                except RpcError as exc:
                    _client_logger.warning("Authentication with %s failed: %s", self._endpoint, exc.message)
                    await self._close_transport("Authentication failed")
                    raise
            self._authenticated = True
            _client_logger.info("Connected to %s", self._endpoint, extra={"endpoint": str(self._endpoint)})
            if self._token is not None:
                self._emit(ClientEvent.AUTHENTICATED)

    async def disconnect(self) -> None:
        """Close the connection, stop reconnecting, and fail pending calls."""
        self._closing = True
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_transport("Client disconnected")

    async def __aenter__(self) -> Self:
        """Connect."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Disconnect."""
        await self.disconnect()

    async def _close_transport(self, reason: str) -> None:
        writer = self._writer
        task = self._reader_task
        self._drop(reason)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if writer is not None:
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    def _drop(self, reason: str) -> bool:
        """Forget the current connection and fail pending calls.

        Returns:
            ``True`` when a connection was actually dropped.

        """
        writer = self._writer
        if writer is None:
            return False
        self._writer = None
        self._reader_task = None
        self._authenticated = False
        writer.close()
        pending = list(self._pending.values())
        self._pending.clear()
        self._stream_handlers.clear()
        for fut in pending:
            if not fut.done():
                fut.set_exception(ConnectionLostError(reason))
        wire_transport_logger.debug("Dropped connection to %s: %s (%d pending)", self._endpoint, reason, len(pending))
        self._emit(ClientEvent.DISCONNECTED, reason)
        return True

    # -- reconnect ----------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if not self._reconnect or self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop(), name=f"sidecar-rpc-client-reconnect[{self._endpoint}]"
        )

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while not self._closing:
            await asyncio.sleep(self._reconnect_interval)
            if self._closing:
                return
            attempt += 1
            try:
                await self.connect()
            except (OSError, RpcError) as exc:
                _client_logger.debug("Reconnect attempt %d to %s failed: %s", attempt, self._endpoint, exc)
                self._emit(ClientEvent.RECONNECT_ERROR, exc)
                continue
            _client_logger.info("Reconnected to %s after %d attempt(s)", self._endpoint, attempt)
            return

    # -- reading ------------------------------------------------------------

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        buffer = LineBuffer()
        reason = "Connection lost"
        try:
            while True:
                data = await reader.read(_READ_CHUNK)
                if not data:
                    break
                for line in buffer.feed(data):
                    self._handle_line(line)
        except OSError as exc:
            reason = f"Connection lost: {exc}"
            _client_logger.debug("Read from %s failed: %s", self._endpoint, exc)
            self._emit(ClientEvent.ERROR, exc)
        # Only the task that owns the live connection may drop it
        if self._reader_task is asyncio.current_task() and self._drop(reason):
            _client_logger.warning("Connection to %s lost", self._endpoint, extra={"endpoint": str(self._endpoint)})
            self._schedule_reconnect()

    def _handle_line(self, line: str) -> None:
        if wire_response_logger.isEnabledFor(logging.DEBUG):
            wire_response_logger.debug("<- %s", fmt_line(line))
        try:
            msg = parse_message(line)
        except ParseError as exc:
            _client_logger.debug("Unparseable line from %s: %s", self._endpoint, exc)
            self._emit(ClientEvent.PARSE_ERROR, line, exc)
            return
        if isinstance(msg, Response):
            self._handle_response(msg)
        elif isinstance(msg, Notification):
            self._handle_notification(msg)
        else:
            wire_request_logger.debug("Ignoring server-initiated request %s", msg.method)

    def _handle_response(self, resp: Response) -> None:
        if resp.id is None:
            err = resp.error
            self._emit(ClientEvent.ERROR, err.to_exception() if err is not None else RpcError(0, "Response without id"))
            return
        fut = self._pending.get(resp.id)
        if fut is None or fut.done():
            wire_response_logger.debug("Response for unknown request id %r", resp.id)
            return
        if resp.error is not None:
            fut.set_exception(resp.error.to_exception())
        else:
            fut.set_result(resp.result)

    def _handle_notification(self, note: Notification) -> None:
        if note.method.endswith(CHUNK_SUFFIX) and isinstance(note.params, dict):
            handler = self._stream_handlers.get(note.params.get("id"))
            if handler is not None:
                try:
                    handler(note.params.get("data"))
                except Exception:
                    _client_logger.debug("Chunk callback for %s failed", note.method, exc_info=True)
                return
        self._emit(ClientEvent.NOTIFICATION, note.method, note.params)

    # -- calls --------------------------------------------------------------

    async def _write(self, msg: Message) -> None:
        writer = self._writer
        if writer is None:
            raise ConnectionLostError("Not connected")
        try:
            writer.write(encode_message(msg))
            await writer.drain()
        except _TRANSPORT_ERRORS as exc:
            raise ConnectionLostError(f"Connection lost: {exc}") from exc

    async def _request(
        self,
        method: str,
        params: Any,
        timeout: float | None,
        on_chunk: ChunkCallback | None,
    ) -> Any:
        if self._writer is None:
            raise ConnectionLostError("Not connected")
        self._next_id += 1
        request_id = self._next_id
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        if on_chunk is not None:
            self._stream_handlers[request_id] = on_chunk
        if wire_request_logger.isEnabledFor(logging.DEBUG):
            wire_request_logger.debug("-> %s id=%d params=%s", method, request_id, fmt_params(params))
        effective = timeout if timeout is not None else self._request_timeout
        try:
            await self._write(Request(method, request_id, params))
            if effective is None:
                return await fut
            try:
                return await asyncio.wait_for(fut, effective)
            except TimeoutError:
                raise RpcTimeoutError(method, effective) from None
        finally:
            self._pending.pop(request_id, None)
            self._stream_handlers.pop(request_id, None)

    async def call(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Send a Request and wait for its Response.

        Chunk notifications of a streaming method are emitted as
        ``notification`` events; the call resolves with the terminating
        result ``{"stream": "complete"}``.

        Args:
            method: Method name.
            params: JSON-serializable params.
            timeout: Seconds to wait; falls back to the client default.

        Returns:
            The ``result`` member of the Response.

        Raises:
            RpcError: If the server answered with an error.
            RpcTimeoutError: If no Response arrived in time.
            ConnectionLostError: If not connected or the connection dropped.

        """
        return await self._request(method, params, timeout, None)

    async def call_stream(
        self,
        method: str,
        params: Any = None,
        on_chunk: ChunkCallback | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Call a streaming method, routing its chunks to *on_chunk*.

        Returns:
            The terminating result.

        """
        return await self._request(method, params, timeout, on_chunk)

    async def collect(self, method: str, params: Any = None, *, timeout: float | None = None) -> list[Any]:
        """Call a streaming method and return all chunk payloads as a list."""
        items: list[Any] = []
        await self._request(method, params, timeout, items.append)
        return items

    async def notify(self, method: str, params: Any = None) -> None:
        """Send a Notification (no Response is expected)."""
        await self._write(Notification(method, params))
