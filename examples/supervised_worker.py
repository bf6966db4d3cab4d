"""Worker process for the supervisor example.

Accepts the ``serve`` flags a :class:`~sidecar_rpc.Supervisor` passes
(``--port``, ``--host``, ``--token``, ``--verbose``) and serves a small
calculator next to the ``system.*`` methods.

The supervisor side is in ``supervised_client.py``, which spawns this
script automatically::

    python examples/supervised_client.py
"""

from __future__ import annotations

import asyncio
from typing import Annotated, Any

import typer

from sidecar_rpc import DEFAULT_HOST, Endpoint, run_daemon

app = typer.Typer(add_completion=False)


def add(params: dict[str, Any]) -> float:
    """Add two numbers."""
    return params["a"] + params["b"]


def multiply(params: dict[str, Any]) -> float:
    """Multiply two numbers."""
    return params["a"] * params["b"]


def divide(params: dict[str, Any]) -> float:
    """Divide a by b."""
    if params["b"] == 0:
        raise ValueError("Division by zero")
    return params["a"] / params["b"]


@app.callback()
def _main() -> None:
    """Calculator worker."""


@app.command()
def serve(
    port: Annotated[int, typer.Option("--port")],
    host: Annotated[str, typer.Option("--host")] = DEFAULT_HOST,
    token: Annotated[str | None, typer.Option("--token")] = None,
    verbose: Annotated[bool, typer.Option("--verbose")] = False,
) -> None:
    """Serve the calculator until SIGTERM."""
    asyncio.run(
        run_daemon(
            Endpoint.tcp(host, port),
            token=token,
            verbose=verbose,
            methods={"add": add, "multiply": multiply, "divide": divide},
        )
    )


if __name__ == "__main__":
    app()
