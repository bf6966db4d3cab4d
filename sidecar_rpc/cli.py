"""Command-line interface for sidecar-rpc.

Runs the worker daemon and issues one-off calls against a running one.

Usage::

    sidecar-rpc serve --port 9123 --token s3cret
    sidecar-rpc serve --socket /tmp/sidecar.sock --no-auth --verbose
    sidecar-rpc call system.version --token s3cret
    sidecar-rpc call add a=1 b=2 --socket /tmp/sidecar.sock
    sidecar-rpc call count --params '{"n": 3}' --stream
    sidecar-rpc ping
    sidecar-rpc loggers

"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any

import typer

from sidecar_rpc.daemon import package_version, run_daemon
from sidecar_rpc.rpc import DEFAULT_HOST, DEFAULT_PORT, Endpoint, RpcClient, RpcError

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for call results."""

    compact = "compact"
    pretty = "pretty"


class LogFormat(StrEnum):
    """Log record format for ``serve``."""

    text = "text"
    json = "json"


# ---------------------------------------------------------------------------
# Known loggers registry
# ---------------------------------------------------------------------------

_KNOWN_LOGGERS: tuple[tuple[str, str, str], ...] = (
    ("sidecar_rpc", "Root logger for all sidecar-rpc output", "Enable to see all framework logging"),
    ("sidecar_rpc.access", "One structured record per completed RPC call", "Monitor request throughput and errors"),
    ("sidecar_rpc.rpc", "Server lifecycle and method errors", "Debug dispatch and connection handling"),
    ("sidecar_rpc.client", "Client connect, auth and reconnect", "Debug connection drops"),
    ("sidecar_rpc.daemon", "Worker daemon lifecycle", "See shutdown and signal handling"),
    ("sidecar_rpc.supervisor", "Process supervisor", "Debug restarts and state changes"),
    ("sidecar_rpc.worker", "Supervised worker stdout/stderr", "See worker output"),
    ("sidecar_rpc.events", "Observer callbacks", "Debug failing event listeners"),
    ("sidecar_rpc.otel", "OpenTelemetry integration", "Debug span creation"),
    ("sidecar_rpc.wire.request", "Request encode/decode", "Debug method calls returning wrong results"),
    ("sidecar_rpc.wire.response", "Response encode/decode", "Debug error payloads"),
    ("sidecar_rpc.wire.stream", "Streaming chunks", "Debug chunks lost or out of order"),
    ("sidecar_rpc.wire.transport", "Socket lifecycle", "Debug connection hangs"),
)

_KNOWN_LOGGER_NAMES: frozenset[str] = frozenset(name for name, _, _ in _KNOWN_LOGGERS)


# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    format: OutputFormat = OutputFormat.compact


app = typer.Typer(
    name="sidecar-rpc",
    help="Local JSON-RPC control plane: run a worker or call one.",
    add_completion=False,
    no_args_is_help=True,
)

_HostOpt = Annotated[str, typer.Option("--host", "-H", help="TCP host")]
_PortOpt = Annotated[int, typer.Option("--port", "-p", help="TCP port")]
_SocketOpt = Annotated[str | None, typer.Option("--socket", "-s", help="Unix socket path (overrides host/port)")]
_TokenOpt = Annotated[str | None, typer.Option("--token", "-t", envvar="SIDECAR_RPC_TOKEN", help="Shared secret")]
_TimeoutOpt = Annotated[float | None, typer.Option("--timeout", help="Seconds to wait for the response")]


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"sidecar-rpc {package_version()}")
        raise typer.Exit()


@app.callback()
def _main(
    ctx: typer.Context,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.compact,
    version: Annotated[
        bool,
        typer.Option("--version", "-V", callback=_version_callback, is_eager=True, help="Show version and exit"),
    ] = False,
) -> None:
    """Configure output options."""
    ctx.obj = _CliConfig(format=fmt)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _configure_logging(level: str | None, log_format: LogFormat, loggers: list[str] | None) -> None:
    """Attach a stderr handler to the target loggers at the requested level."""
    if level is None:
        return

    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.json:
        from sidecar_rpc.logging_utils import JsonFormatter

        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(name)-26s %(levelname)-5s %(message)s"))

    numeric_level = logging.getLevelNamesMapping()[level]
    for name in loggers or ["sidecar_rpc"]:
        if name not in _KNOWN_LOGGER_NAMES and not name.startswith("sidecar_rpc.method."):
            sys.stderr.write(f"Warning: unknown logger '{name}'\n")
            sys.stderr.flush()
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)
        logger.addHandler(handler)


def _endpoint(host: str, port: int, socket: str | None) -> Endpoint:
    if socket:
        return Endpoint.unix(socket)
    return Endpoint.tcp(host, port)


def _parse_value(raw: str) -> object:
    """Interpret *raw* as JSON, falling back to the plain string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _parse_key_value_args(args: list[str]) -> dict[str, object]:
    """Parse ``key=value`` args into a params object.

    Values that parse as JSON (numbers, booleans, ``null``, arrays, objects)
    keep their JSON type; anything else is passed as a string.

    Raises:
        typer.BadParameter: If an arg has no ``=`` or an empty key.

    """
    result: dict[str, object] = {}
    for arg in args:
        key, sep, value = arg.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got: {arg}")
        result[key] = _parse_value(value)
    return result


def _print_json(data: object, *, pretty: bool = False) -> None:
    """Print JSON to stdout.

    Args:
        data: Python object to serialize.
        pretty: Use indented formatting.

    """
    if pretty:
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(json.dumps(data, default=str))


def _emit_rpc_error(e: RpcError) -> None:
    """Write an RpcError to stderr as JSON."""
    typer.echo(json.dumps({"error": e.to_dict()}, default=str), err=True)


def _run_client[T](
    endpoint: Endpoint,
    token: str | None,
    body: Callable[[RpcClient], Awaitable[T]],
) -> T:
    """Connect, run *body*, disconnect, translating failures into exit code 1."""

    async def _go() -> T:
        async with RpcClient(endpoint, token=token) as client:
            return await body(client)

    try:
        return asyncio.run(_go())
    except RpcError as e:
        _emit_rpc_error(e)
        raise typer.Exit(1) from None
    except OSError as e:
        typer.echo(f"Error: cannot connect to {endpoint}: {e}", err=True)
        raise typer.Exit(1) from None


# ---------------------------------------------------------------------------
# serve command
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: _HostOpt = DEFAULT_HOST,
    port: _PortOpt = DEFAULT_PORT,
    socket: _SocketOpt = None,
    token: _TokenOpt = None,
    no_auth: Annotated[bool, typer.Option("--no-auth", help="Do not require auth.login")] = False,
    max_connections: Annotated[
        int | None, typer.Option("--max-connections", min=1, help="Reject connections beyond this many")
    ] = None,
    max_auth_attempts: Annotated[
        int | None, typer.Option("--max-auth-attempts", min=1, help="Close after this many failed logins")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log connections and requests at INFO")] = False,
    debug: Annotated[bool, typer.Option("--debug", help="Log everything at DEBUG")] = False,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log record format")] = LogFormat.text,
    log_logger: Annotated[
        list[str] | None, typer.Option("--log-logger", help="Logger to enable (repeatable)")
    ] = None,
) -> None:
    """Run the worker daemon until SIGINT/SIGTERM or system.shutdown."""
    level = "DEBUG" if debug else "INFO" if verbose else "WARNING"
    _configure_logging(level, log_format, log_logger)
    try:
        asyncio.run(
            run_daemon(
                _endpoint(host, port, socket),
                token=token,
                require_auth=not no_auth,
                max_connections=max_connections,
                max_auth_attempts=max_auth_attempts,
                verbose=verbose,
            )
        )
    except OSError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None


# ---------------------------------------------------------------------------
# call command
# ---------------------------------------------------------------------------


@app.command()
def call(
    ctx: typer.Context,
    method: Annotated[str, typer.Argument(help="Method name to call")],
    args: Annotated[list[str] | None, typer.Argument(help="key=value parameters")] = None,
    params_json: Annotated[str | None, typer.Option("--params", "--json", "-j", help="JSON params")] = None,
    stream: Annotated[bool, typer.Option("--stream", help="Print each chunk as a JSON line")] = False,
    host: _HostOpt = DEFAULT_HOST,
    port: _PortOpt = DEFAULT_PORT,
    socket: _SocketOpt = None,
    token: _TokenOpt = None,
    timeout: _TimeoutOpt = None,
) -> None:
    """Call a method on a running worker and print the result as JSON."""
    config: _CliConfig = ctx.obj
    if params_json and args:
        raise typer.BadParameter("--params and key=value args are mutually exclusive")

    params: Any
    if params_json:
        try:
            params = json.loads(params_json)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"--params is not valid JSON: {e}") from None
    elif args:
        params = _parse_key_value_args(args)
    else:
        params = None

    pretty = config.format == OutputFormat.pretty

    async def _call(client: RpcClient) -> Any:
        if stream:
            return await client.call_stream(method, params, lambda chunk: _print_json(chunk), timeout=timeout)
        return await client.call(method, params, timeout=timeout)

    result = _run_client(_endpoint(host, port, socket), token, _call)
    if not stream:
        _print_json(result, pretty=pretty)


# ---------------------------------------------------------------------------
# ping command
# ---------------------------------------------------------------------------


@app.command()
def ping(
    ctx: typer.Context,
    host: _HostOpt = DEFAULT_HOST,
    port: _PortOpt = DEFAULT_PORT,
    socket: _SocketOpt = None,
    token: _TokenOpt = None,
    timeout: _TimeoutOpt = 5.0,
) -> None:
    """Check that a worker is up (calls system.ping)."""
    config: _CliConfig = ctx.obj

    async def _ping(client: RpcClient) -> Any:
        return await client.call("system.ping", timeout=timeout)

    result = _run_client(_endpoint(host, port, socket), token, _ping)
    _print_json(result, pretty=config.format == OutputFormat.pretty)


# ---------------------------------------------------------------------------
# loggers command
# ---------------------------------------------------------------------------


@app.command()
def loggers(ctx: typer.Context) -> None:
    """List the logger names sidecar-rpc emits to."""
    config: _CliConfig = ctx.obj
    data = [{"name": name, "description": desc, "scenario": scenario} for name, desc, scenario in _KNOWN_LOGGERS]
    _print_json(data, pretty=config.format == OutputFormat.pretty)
