"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``sidecar_rpc.wire.*`` hierarchy and
formatting helpers for protocol messages.  Enabling
``logging.getLogger("sidecar_rpc.wire").setLevel(logging.DEBUG)`` shows
every line that crosses a connection.

All formatting helpers return ``str`` and never log directly.
They are designed to be called inside ``isEnabledFor`` guards so
there is zero overhead when debug logging is disabled.
"""

from __future__ import annotations

import logging
from typing import Any

# ---------------------------------------------------------------------------
# Logger hierarchy: sidecar_rpc.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("sidecar_rpc.wire.request")
"""Inbound and outbound requests."""

wire_response_logger = logging.getLogger("sidecar_rpc.wire.response")
"""Inbound and outbound responses."""

wire_stream_logger = logging.getLogger("sidecar_rpc.wire.stream")
"""Streaming chunk notifications and broadcasts."""

wire_transport_logger = logging.getLogger("sidecar_rpc.wire.transport")
"""Connection lifecycle (accept, close, framing)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum repr length for individual values in fmt_params."""

_MAX_LINE_LEN = 200
"""Maximum length of a raw line in fmt_line."""


def fmt_params(params: Any) -> str:
    """Format request params compactly.

    Returns:
        ``"{name='x', count=3}"`` for mappings, a truncated repr otherwise,
        or ``"None"`` when absent.

    """
    if params is None:
        return "None"
    if isinstance(params, dict):
        parts: list[str] = []
        for k, v in params.items():
            r = repr(v)
            if len(r) > _MAX_VALUE_LEN:
                r = r[:_MAX_VALUE_LEN] + "..."
            parts.append(f"{k}={r}")
        return "{" + ", ".join(parts) + "}"
    r = repr(params)
    if len(r) > _MAX_VALUE_LEN:
        r = r[:_MAX_VALUE_LEN] + "..."
    return r


def fmt_line(line: str | bytes) -> str:
    """Format a raw wire line for logging, truncating long payloads."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.rstrip("\n")
    if len(line) > _MAX_LINE_LEN:
        return f"{line[:_MAX_LINE_LEN]}... ({len(line)} chars)"
    return line
