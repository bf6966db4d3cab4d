"""``python -m sidecar_rpc`` entry point."""

from sidecar_rpc.cli import app

app()
