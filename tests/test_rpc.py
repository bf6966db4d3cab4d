"""End-to-end tests for RpcServer and RpcClient over TCP and Unix sockets."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest
import pytest_asyncio
from conftest import RawConnection

from sidecar_rpc.rpc import (
    APPLICATION_ERROR,
    AUTH_ERROR,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ClientEvent,
    ConnectionLostError,
    Endpoint,
    RpcClient,
    RpcError,
    RpcServer,
    RpcTimeoutError,
    ServerEvent,
    Stream,
    StreamChannel,
    connect,
    current_context,
    serve_local,
)

pytestmark = pytest.mark.asyncio

TOKEN = "secret"


# ---------------------------------------------------------------------------
# Test methods
# ---------------------------------------------------------------------------


class Recorder:
    """Collects notification params delivered to the ``record`` method."""

    def __init__(self) -> None:
        """Start empty."""
        self.items: list[Any] = []
        self.event = asyncio.Event()

    def record(self, params: Any) -> None:
        """Store *params*."""
        self.items.append(params)
        self.event.set()


def _count(params: dict[str, Any]) -> Iterator[int]:
    yield from range(params["n"])


async def _acount(params: dict[str, Any]) -> AsyncIterator[int]:
    for i in range(params["n"]):
        await asyncio.sleep(0)
        yield i


async def _forever() -> AsyncIterator[int]:
    i = 0
    while True:
        await asyncio.sleep(0.01)
        yield i
        i += 1


async def _slow(params: dict[str, Any]) -> str:
    await asyncio.sleep(params["delay"])
    return "done"


def _fail() -> None:
    raise ValueError("boom")


def _rpc_fail() -> None:
    raise RpcError(-32050, "custom failure", {"hint": "retry"})


def _half_stream(params: dict[str, Any]) -> Iterator[int]:
    yield 1
    raise RuntimeError("stream broke")


class _CloseFails:
    """Async iterator whose ``aclose()`` raises once the items are exhausted."""

    def __init__(self, items: list[int]) -> None:
        """Yield *items*, then fail on close."""
        self._items = iter(items)

    def __aiter__(self) -> _CloseFails:
        return self

    async def __anext__(self) -> int:
        try:
            return next(self._items)
        except StopIteration:
            raise StopAsyncIteration from None

    async def aclose(self) -> None:
        raise RuntimeError("cleanup failed")


_producers: set[asyncio.Task[None]] = set()


def _channel(params: dict[str, Any]) -> StreamChannel:
    channel = StreamChannel()

    async def produce() -> None:
        for i in range(params["n"]):
            await channel.send(i * 10)
        channel.close()

    task = asyncio.get_running_loop().create_task(produce())
    _producers.add(task)
    task.add_done_callback(_producers.discard)
    return channel


def _whoami() -> dict[str, Any]:
    ctx = current_context()
    ctx.logger.info("whoami called")
    return {"method": ctx.method, "connection_id": ctx.connection_id, "request_id": ctx.request_id}


def _methods(recorder: Recorder) -> dict[str, Any]:
    return {
        "echo": lambda params: params,
        "add": lambda params: params["a"] + params["b"],
        "system.ping": lambda: {"pong": True},
        "count": _count,
        "acount": _acount,
        "forever": _forever,
        "slow": _slow,
        "fail": _fail,
        "rpc_fail": _rpc_fail,
        "half_stream": _half_stream,
        "close_fails": lambda: _CloseFails([1, 2]),
        "channel": _channel,
        "items": lambda params: Stream(params),
        "listy": lambda: [1, 2, 3],
        "whoami": _whoami,
        "record": recorder.record,
    }


def _req(method: str, request_id: int | str, params: Any = None) -> dict[str, Any]:
    msg: dict[str, Any] = {"jsonrpc": "2.0", "method": method, "id": request_id}
    if params is not None:
        msg["params"] = params
    return msg


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def recorder() -> Recorder:
    """Fresh notification recorder."""
    return Recorder()


@pytest_asyncio.fixture
async def server(endpoint: Endpoint, recorder: Recorder) -> AsyncIterator[RpcServer]:
    """Authenticated server on TCP or Unix."""
    srv = RpcServer(endpoint, methods=_methods(recorder), token=TOKEN)
    await srv.start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def open_server(endpoint: Endpoint, recorder: Recorder) -> AsyncIterator[RpcServer]:
    """Server that does not require auth."""
    srv = RpcServer(endpoint, methods=_methods(recorder), require_auth=False)
    await srv.start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def client(server: RpcServer) -> AsyncIterator[RpcClient]:
    """Authenticated client connected to ``server``."""
    assert server.address is not None
    async with RpcClient(server.address, token=TOKEN, request_timeout=5.0) as c:
        yield c


async def _authed(raw_factory: Any, server: RpcServer) -> RawConnection:
    assert server.address is not None
    conn: RawConnection = await raw_factory(server.address)
    resp = await conn.login(TOKEN)
    assert resp["result"] == {"authenticated": True}
    return conn


# ---------------------------------------------------------------------------
# Wire-level behaviour
# ---------------------------------------------------------------------------


class TestWire:
    """Protocol behaviour observed with raw line I/O."""

    async def test_ping_without_auth(self, open_server: RpcServer, raw_factory: Any) -> None:
        """A ping on a no-auth server is answered directly."""
        assert open_server.address is not None
        conn = await raw_factory(open_server.address)
        await conn.send(_req("system.ping", 1))
        assert await conn.recv() == {"jsonrpc": "2.0", "result": {"pong": True}, "id": 1}

    async def test_parse_error_then_valid_line(self, server: RpcServer, raw_factory: Any) -> None:
        """A malformed line gets one -32700 with id null; later lines still work."""
        conn = await _authed(raw_factory, server)
        await conn.send(b"{bad\n" + json.dumps(_req("echo", 7, "ok")).encode() + b"\n")
        first = await conn.recv()
        assert first["id"] is None
        assert first["error"]["code"] == PARSE_ERROR
        second = await conn.recv()
        assert second == {"jsonrpc": "2.0", "result": "ok", "id": 7}

    async def test_parse_error_before_auth(self, server: RpcServer, raw_factory: Any) -> None:
        """Framing errors are reported even on unauthenticated connections."""
        assert server.address is not None
        conn = await raw_factory(server.address)
        await conn.send(b"not json at all\n")
        resp = await conn.recv()
        assert resp["error"]["code"] == PARSE_ERROR
        assert resp["id"] is None

    async def test_line_split_across_writes(self, server: RpcServer, raw_factory: Any) -> None:
        """A message delivered in pieces is parsed once complete."""
        conn = await _authed(raw_factory, server)
        data = json.dumps(_req("add", 3, {"a": 2, "b": 40})).encode() + b"\n"
        await conn.send(data[:10])
        await asyncio.sleep(0.05)
        await conn.send(data[10:])
        assert (await conn.recv())["result"] == 42

    async def test_auth_gate_scenario(self, server: RpcServer, raw_factory: Any) -> None:
        """Request before login fails with -32001, login succeeds, retry succeeds."""
        assert server.address is not None
        conn = await raw_factory(server.address)
        await conn.send(_req("system.ping", 2))
        rejected = await conn.recv()
        assert rejected["id"] == 2
        assert rejected["error"]["code"] == AUTH_ERROR

        await conn.send(_req("auth.login", 3, {"token": TOKEN}))
        assert await conn.recv() == {"jsonrpc": "2.0", "result": {"authenticated": True}, "id": 3}

        await conn.send(_req("system.ping", 2))
        assert (await conn.recv())["result"] == {"pong": True}

    async def test_wrong_token_keeps_connection_open(self, server: RpcServer, raw_factory: Any) -> None:
        """A failed login can be retried on the same connection."""
        assert server.address is not None
        conn = await raw_factory(server.address)
        resp = await conn.login("nope", 1)
        assert resp["error"]["code"] == AUTH_ERROR
        resp = await conn.login(TOKEN, 2)
        assert resp["result"] == {"authenticated": True}

    async def test_bad_version(self, server: RpcServer, raw_factory: Any) -> None:
        """A wrong protocol version is -32600 with the request id."""
        conn = await _authed(raw_factory, server)
        await conn.send({"jsonrpc": "1.0", "method": "echo", "params": 1, "id": 4})
        resp = await conn.recv()
        assert resp["id"] == 4
        assert resp["error"]["code"] == INVALID_REQUEST

    async def test_method_not_found(self, server: RpcServer, raw_factory: Any) -> None:
        """An unknown method is -32601."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("missing", 5))
        resp = await conn.recv()
        assert resp["error"]["code"] == METHOD_NOT_FOUND
        assert resp["error"]["data"] == {"method": "missing"}

    async def test_handler_error(self, server: RpcServer, raw_factory: Any) -> None:
        """A raising handler yields -32000 and the server keeps serving."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("fail", 6))
        resp = await conn.recv()
        assert resp["id"] == 6
        assert resp["error"] == {
            "code": APPLICATION_ERROR,
            "message": "boom",
            "data": {"type": "ValueError", "message": "boom"},
        }
        await conn.send(_req("echo", 7, "still alive"))
        assert (await conn.recv())["result"] == "still alive"

    async def test_rpc_error_keeps_its_code(self, server: RpcServer, raw_factory: Any) -> None:
        """Handlers raising RpcError choose the error code."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("rpc_fail", 8))
        resp = await conn.recv()
        assert resp["error"] == {"code": -32050, "message": "custom failure", "data": {"hint": "retry"}}

    async def test_streaming_scenario(self, server: RpcServer, raw_factory: Any) -> None:
        """Three chunks with the request id, then one terminating Response."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("count", 5, {"n": 3}))
        for i in range(3):
            assert await conn.recv() == {"jsonrpc": "2.0", "method": "count.chunk", "params": {"id": 5, "data": i}}
        assert await conn.recv() == {"jsonrpc": "2.0", "result": {"stream": "complete"}, "id": 5}

    @pytest.mark.parametrize("method", ["count", "acount", "items", "channel"])
    async def test_streaming_shapes(self, server: RpcServer, raw_factory: Any, method: str) -> None:
        """Generators, async generators, Stream and StreamChannel all stream in order."""
        conn = await _authed(raw_factory, server)
        params: Any = [0, 1, 2, 3] if method == "items" else {"n": 4}
        await conn.send(_req(method, "s", params))
        chunks = [await conn.recv() for _ in range(4)]
        assert all(c["method"] == f"{method}.chunk" and c["params"]["id"] == "s" for c in chunks)
        data = [c["params"]["data"] for c in chunks]
        assert data == ([0, 10, 20, 30] if method == "channel" else [0, 1, 2, 3])
        assert (await conn.recv())["result"] == {"stream": "complete"}

    async def test_list_result_is_not_streamed(self, server: RpcServer, raw_factory: Any) -> None:
        """A list return value is a single result."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("listy", 1))
        assert (await conn.recv())["result"] == [1, 2, 3]

    async def test_stream_failure_after_chunks(self, server: RpcServer, raw_factory: Any) -> None:
        """A stream that raises mid-way sends its chunks then an error Response."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("half_stream", 9, {}))
        chunk = await conn.recv()
        assert chunk["params"] == {"id": 9, "data": 1}
        resp = await conn.recv()
        assert resp["id"] == 9
        assert resp["error"]["code"] == APPLICATION_ERROR
        assert resp["error"]["message"] == "stream broke"

    async def test_cleanup_failure_after_complete(self, server: RpcServer, raw_factory: Any) -> None:
        """A stream whose cleanup raises after completion is answered exactly once."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("close_fails", 10))
        assert (await conn.recv())["params"] == {"id": 10, "data": 1}
        assert (await conn.recv())["params"] == {"id": 10, "data": 2}
        assert await conn.recv() == {"jsonrpc": "2.0", "result": {"stream": "complete"}, "id": 10}
        await conn.send(_req("echo", 11, "next"))
        assert await conn.recv() == {"jsonrpc": "2.0", "result": "next", "id": 11}

    async def test_notifications_are_never_answered(
        self, server: RpcServer, raw_factory: Any, recorder: Recorder
    ) -> None:
        """Notifications are dispatched silently; the next reply is for the next Request."""
        conn = await _authed(raw_factory, server)
        await conn.send({"jsonrpc": "2.0", "method": "record", "params": {"v": 1}})
        await conn.send({"jsonrpc": "2.0", "method": "missing", "params": {}})
        await conn.send({"jsonrpc": "2.0", "method": "fail"})
        await conn.send({"jsonrpc": "2.0", "method": "record", "params": {"v": 2}, "id": None})
        await conn.send(_req("echo", 10, "after"))
        assert await conn.recv() == {"jsonrpc": "2.0", "result": "after", "id": 10}
        assert recorder.items == [{"v": 1}, {"v": 2}]
        await conn.assert_silent()

    async def test_notification_before_auth_is_dropped(
        self, server: RpcServer, raw_factory: Any, recorder: Recorder
    ) -> None:
        """Unauthenticated notifications neither dispatch nor reply."""
        assert server.address is not None
        conn = await raw_factory(server.address)
        await conn.send({"jsonrpc": "2.0", "method": "record", "params": {"v": 1}})
        await conn.assert_silent()
        assert recorder.items == []

    async def test_one_response_per_request(self, server: RpcServer, raw_factory: Any) -> None:
        """Pipelined requests each get exactly one Response with their id."""
        conn = await _authed(raw_factory, server)
        batch = b"".join(json.dumps(_req("echo", i, i)).encode() + b"\n" for i in range(1, 21))
        await conn.send(batch)
        ids = [(await conn.recv())["id"] for _ in range(20)]
        assert ids == list(range(1, 21))
        await conn.assert_silent()

    async def test_responses_from_client_are_ignored(self, server: RpcServer, raw_factory: Any) -> None:
        """A Response sent to the server produces nothing."""
        conn = await _authed(raw_factory, server)
        await conn.send({"jsonrpc": "2.0", "result": 1, "id": 99})
        await conn.assert_silent()

    async def test_call_context(self, server: RpcServer, raw_factory: Any) -> None:
        """Handlers see the current call through current_context()."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("whoami", "ctx-1"))
        result = (await conn.recv())["result"]
        assert result["method"] == "whoami"
        assert result["request_id"] == "ctx-1"
        assert len(result["connection_id"]) == 8

    async def test_current_context_outside_handler(self) -> None:
        """current_context() refuses to work outside a dispatch."""
        with pytest.raises(RuntimeError):
            current_context()


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------


class TestServerLifecycle:
    """Tests for start/stop, registration and connection limits."""

    async def test_listening_event_reports_address_and_token(self, endpoint: Endpoint) -> None:
        """Observers learn the bound address and token on start."""
        srv = RpcServer(endpoint, token=TOKEN)
        seen: list[dict[str, Any]] = []
        srv.on(ServerEvent.LISTENING, seen.append)
        address = await srv.start()
        try:
            assert seen[0]["token"] == TOKEN
            if endpoint.is_unix:
                assert seen[0]["socketPath"] == endpoint.path
            else:
                assert seen[0]["port"] == address.port
                assert address.port != 0
            info = srv.info().to_dict()
            assert info["isRunning"] is True
            assert info["clients"] == 0
        finally:
            await srv.stop()

    async def test_generated_token(self) -> None:
        """Without a token the server generates 64 hex characters."""
        srv = RpcServer()
        assert len(srv.token) == 64
        int(srv.token, 16)
        assert RpcServer().token != srv.token

    async def test_start_twice_fails(self, endpoint: Endpoint) -> None:
        """A running server refuses a second start()."""
        srv = RpcServer(endpoint)
        await srv.start()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                await srv.start()
        finally:
            await srv.stop()

    async def test_stop_is_idempotent(self, endpoint: Endpoint) -> None:
        """stop() on a stopped or never-started server is a no-op."""
        srv = RpcServer(endpoint)
        closed: list[bool] = []
        srv.on(ServerEvent.CLOSED, lambda: closed.append(True))
        await srv.stop()
        await srv.start()
        await srv.stop()
        await srv.stop()
        assert closed == [True]
        assert not srv.is_running

    async def test_restart_after_stop(self, endpoint: Endpoint) -> None:
        """A stopped server can be started again."""
        srv = RpcServer(endpoint, methods={"echo": lambda p: p}, require_auth=False)
        await srv.start()
        await srv.stop()
        address = await srv.start()
        try:
            async with connect(address) as c:
                assert await c.call("echo", 1) == 1
        finally:
            await srv.stop()

    async def test_stop_closes_live_connections(self, server: RpcServer, raw_factory: Any) -> None:
        """Connections are forcibly closed by stop()."""
        conn = await _authed(raw_factory, server)
        assert server.clients == 1
        await server.stop()
        assert await conn.recv_eof()
        assert server.clients == 0

    async def test_register_after_start(self, server: RpcServer, client: RpcClient) -> None:
        """Methods registered while running are callable; last registration wins."""
        server.register_method("late", lambda: "v1")
        assert await client.call("late") == "v1"
        server.register_methods({"late": lambda: "v2"})
        assert await client.call("late") == "v2"

    async def test_max_connections(self, endpoint: Endpoint, raw_factory: Any) -> None:
        """Connections beyond the cap are closed immediately."""
        srv = RpcServer(endpoint, methods={"echo": lambda p: p}, require_auth=False, max_connections=1)
        address = await srv.start()
        try:
            first = await raw_factory(address)
            await first.send(_req("echo", 1, "a"))
            assert (await first.recv())["result"] == "a"
            second = await raw_factory(address)
            assert await second.recv_eof()
            await first.send(_req("echo", 2, "b"))
            assert (await first.recv())["result"] == "b"
        finally:
            await srv.stop()

    async def test_max_auth_attempts(self, endpoint: Endpoint, raw_factory: Any) -> None:
        """The connection is closed once the login cap is reached."""
        srv = RpcServer(endpoint, token=TOKEN, max_auth_attempts=2)
        address = await srv.start()
        try:
            conn = await raw_factory(address)
            first = await conn.login("x", 1)
            assert first["error"]["message"] == "Invalid authentication token"
            second = await conn.login("y", 2)
            assert second["error"]["message"] == "Too many failed authentication attempts"
            assert await conn.recv_eof()
        finally:
            await srv.stop()

    async def test_invalid_limits_rejected(self) -> None:
        """Non-positive limits are refused at construction."""
        with pytest.raises(ValueError):
            RpcServer(max_connections=0)
        with pytest.raises(ValueError):
            RpcServer(max_auth_attempts=0)

    async def test_connection_events(self, server: RpcServer, raw_factory: Any) -> None:
        """Connection and disconnection are observable."""
        events: list[str] = []
        server.on(ServerEvent.CONNECTION, lambda conn_id, addr: events.append("connection"))
        done = asyncio.Event()

        def _on_disconnect(conn_id: str) -> None:
            events.append("disconnection")
            done.set()

        server.on(ServerEvent.DISCONNECTION, _on_disconnect)
        conn = await _authed(raw_factory, server)
        await conn.close()
        await asyncio.wait_for(done.wait(), 5.0)
        assert events == ["connection", "disconnection"]

    async def test_client_vanishing_mid_stream(self, server: RpcServer, raw_factory: Any) -> None:
        """A client dropping during a stream does not disturb the server."""
        conn = await _authed(raw_factory, server)
        await conn.send(_req("forever", 1))
        await conn.recv()
        await conn.close()
        other = await _authed(raw_factory, server)
        await other.send(_req("echo", 2, "fine"))
        assert (await other.recv())["result"] == "fine"

    async def test_unix_socket_file_removed_on_stop(self, socket_dir: str) -> None:
        """The socket file is cleaned up and a stale one is replaced."""
        import os

        path = f"{socket_dir}/life.sock"
        srv = RpcServer(Endpoint.unix(path))
        await srv.start()
        assert os.path.exists(path)
        await srv.stop()
        assert not os.path.exists(path)

    async def test_non_socket_path_is_refused(self, socket_dir: str) -> None:
        """A regular file in the way is not deleted."""
        path = f"{socket_dir}/file.sock"
        with open(path, "w") as f:
            f.write("keep me")
        srv = RpcServer(Endpoint.unix(path))
        with pytest.raises(FileExistsError):
            await srv.start()


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------


class TestBroadcast:
    """Tests for RpcServer.broadcast."""

    async def test_reaches_authenticated_and_unauthenticated(
        self, server: RpcServer, client: RpcClient, raw_factory: Any
    ) -> None:
        """Broadcast is not gated by auth state."""
        assert server.address is not None
        anonymous = await raw_factory(server.address)
        received: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()
        client.on(ClientEvent.NOTIFICATION, lambda method, params: received.put_nowait((method, params)))
        await asyncio.sleep(0.05)

        sent = await server.broadcast("status.changed", {"state": "busy"})

        assert sent == 2
        assert await anonymous.recv() == {"jsonrpc": "2.0", "method": "status.changed", "params": {"state": "busy"}}
        assert await asyncio.wait_for(received.get(), 5.0) == ("status.changed", {"state": "busy"})

    async def test_dead_connection_does_not_block_others(
        self, server: RpcServer, raw_factory: Any
    ) -> None:
        """A connection that already went away does not stop delivery to the rest."""
        assert server.address is not None
        gone = await raw_factory(server.address)
        alive = await raw_factory(server.address)
        await asyncio.sleep(0.05)
        await gone.close()
        for _ in range(3):
            await server.broadcast("tick", None)
        for _ in range(3):
            assert (await alive.recv())["method"] == "tick"

    async def test_no_connections(self, server: RpcServer) -> None:
        """Broadcasting to nobody returns 0."""
        assert await server.broadcast("tick") == 0


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class TestClient:
    """Tests for RpcClient."""

    async def test_call(self, client: RpcClient) -> None:
        """call() returns the result."""
        assert client.is_connected
        assert client.is_authenticated
        assert await client.call("add", {"a": 1, "b": 2}) == 3

    async def test_concurrent_calls_correlate(self, client: RpcClient) -> None:
        """Concurrent calls each receive their own result."""
        results = await asyncio.gather(*(client.call("echo", i) for i in range(25)))
        assert results == list(range(25))
        assert client.pending == 0

    async def test_error_raises_rpc_error(self, client: RpcClient) -> None:
        """Error Responses raise RpcError with the code."""
        with pytest.raises(RpcError) as excinfo:
            await client.call("fail")
        assert excinfo.value.code == APPLICATION_ERROR
        assert excinfo.value.data == {"type": "ValueError", "message": "boom"}

    async def test_call_stream_routes_chunks(self, client: RpcClient) -> None:
        """call_stream delivers chunks in order and returns the terminator."""
        chunks: list[int] = []
        result = await client.call_stream("acount", {"n": 5}, chunks.append)
        assert chunks == [0, 1, 2, 3, 4]
        assert result == {"stream": "complete"}

    async def test_collect(self, client: RpcClient) -> None:
        """collect() gathers every chunk."""
        assert await client.collect("count", {"n": 3}) == [0, 1, 2]

    async def test_plain_call_surfaces_chunks_as_events(self, client: RpcClient) -> None:
        """Without a chunk handler, chunks arrive as notification events."""
        seen: list[tuple[str, Any]] = []
        client.on(ClientEvent.NOTIFICATION, lambda method, params: seen.append((method, params)))
        result = await client.call("count", {"n": 2})
        assert result == {"stream": "complete"}
        assert [params["data"] for _, params in seen] == [0, 1]
        assert all(method == "count.chunk" for method, _ in seen)

    async def test_notify(self, client: RpcClient, recorder: Recorder) -> None:
        """notify() dispatches without expecting a reply."""
        await client.notify("record", {"v": "n"})
        await asyncio.wait_for(recorder.event.wait(), 5.0)
        assert recorder.items == [{"v": "n"}]
        assert client.pending == 0

    async def test_timeout(self, client: RpcClient) -> None:
        """A call exceeding its timeout raises RpcTimeoutError."""
        with pytest.raises(RpcTimeoutError) as excinfo:
            await client.call("slow", {"delay": 1.0}, timeout=0.05)
        assert excinfo.value.code == INTERNAL_ERROR
        assert client.pending == 0
        assert await client.call("echo", "ok") == "ok"

    async def test_disconnect_rejects_pending(self, client: RpcClient) -> None:
        """Pending calls fail when the client disconnects."""
        call = asyncio.create_task(client.call("slow", {"delay": 5.0}))
        await asyncio.sleep(0.05)
        await client.disconnect()
        with pytest.raises(ConnectionLostError):
            await asyncio.wait_for(call, 5.0)
        assert not client.is_connected

    async def test_server_stop_rejects_pending(self, server: RpcServer, client: RpcClient) -> None:
        """Pending calls fail when the server goes away."""
        disconnected = asyncio.Event()
        client.on(ClientEvent.DISCONNECTED, lambda reason: disconnected.set())
        call = asyncio.create_task(client.call("slow", {"delay": 5.0}))
        await asyncio.sleep(0.05)
        await server.stop()
        with pytest.raises(ConnectionLostError):
            await asyncio.wait_for(call, 5.0)
        await asyncio.wait_for(disconnected.wait(), 5.0)

    async def test_call_when_not_connected(self) -> None:
        """call() on a fresh client fails fast."""
        with pytest.raises(ConnectionLostError):
            await RpcClient(Endpoint.tcp(port=1)).call("x")

    async def test_connect_refused(self, socket_dir: str) -> None:
        """connect() raises OSError when nothing listens."""
        with pytest.raises(OSError):
            await RpcClient(Endpoint.unix(f"{socket_dir}/absent.sock")).connect()

    async def test_wrong_token(self, server: RpcServer) -> None:
        """connect() with a wrong token raises and leaves the client closed."""
        assert server.address is not None
        bad = RpcClient(server.address, token="wrong")
        with pytest.raises(RpcError) as excinfo:
            await bad.connect()
        assert excinfo.value.code == AUTH_ERROR
        assert not bad.is_connected

    async def test_no_token_against_auth_server(self, server: RpcServer) -> None:
        """Without a token, calls are rejected with -32001."""
        assert server.address is not None
        async with RpcClient(server.address) as anonymous:
            with pytest.raises(RpcError) as excinfo:
                await anonymous.call("echo", 1)
            assert excinfo.value.code == AUTH_ERROR

    async def test_connect_is_idempotent(self, client: RpcClient) -> None:
        """A second connect() while connected is a no-op."""
        await client.connect()
        assert await client.call("echo", 1) == 1

    async def test_reconnect_after_server_restart(self, endpoint: Endpoint) -> None:
        """With reconnect enabled the client comes back once the server does."""
        srv = RpcServer(endpoint, methods={"echo": lambda p: p}, token=TOKEN)
        address = await srv.start()
        c = RpcClient(address, token=TOKEN, reconnect=True, reconnect_interval=0.05)
        connected = asyncio.Event()
        lost = asyncio.Event()
        await c.connect()
        c.on(ClientEvent.CONNECTED, connected.set)
        c.on(ClientEvent.DISCONNECTED, lambda reason: lost.set())
        try:
            await srv.stop()
            await asyncio.wait_for(lost.wait(), 5.0)
            assert not c.is_connected

            replacement = RpcServer(address, methods={"echo": lambda p: p}, token=TOKEN)
            await replacement.start()
            try:
                await asyncio.wait_for(connected.wait(), 5.0)
                for _ in range(100):
                    if c.is_authenticated:
                        break
                    await asyncio.sleep(0.02)
                assert await c.call("echo", "back") == "back"
            finally:
                await c.disconnect()
                await replacement.stop()
        finally:
            await c.disconnect()

    async def test_no_reconnect_after_disconnect(self, server: RpcServer) -> None:
        """An explicit disconnect() never triggers reconnect."""
        assert server.address is not None
        c = RpcClient(server.address, token=TOKEN, reconnect=True, reconnect_interval=0.02)
        await c.connect()
        await c.disconnect()
        await asyncio.sleep(0.1)
        assert not c.is_connected


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


async def test_serve_local() -> None:
    """serve_local yields a running server and an authenticated client."""
    async with serve_local({"echo": lambda p: p}) as (srv, c):
        assert srv.is_running
        assert c.is_authenticated
        assert await c.call("echo", {"x": 1}) == {"x": 1}
    assert not srv.is_running


async def test_server_as_context_manager(endpoint: Endpoint) -> None:
    """``async with RpcServer(...)`` starts and stops the server."""
    async with RpcServer(endpoint, methods={"echo": lambda p: p}, require_auth=False) as srv:
        assert srv.address is not None
        async with connect(srv.address) as c:
            assert await c.call("echo", 5) == 5
    assert not srv.is_running
