# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Local control plane: authenticated JSON-RPC 2.0 over sockets plus a process supervisor."""

import contextlib
import logging

from sidecar_rpc.daemon import register_system_methods, run_daemon
from sidecar_rpc.rpc import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    CallContext,
    ClientEvent,
    ConnectionLostError,
    DispatchInfo,
    Endpoint,
    MethodType,
    RpcClient,
    RpcError,
    RpcServer,
    RpcTimeoutError,
    ServerEvent,
    ServerInfo,
    Stream,
    StreamChannel,
    connect,
    current_context,
    serve_local,
)
from sidecar_rpc.supervisor import (
    NotConnectedError,
    OutputMode,
    State,
    Supervisor,
    SupervisorConfig,
    SupervisorError,
    SupervisorEvent,
)

# OpenTelemetry instrumentation (optional, requires `pip install sidecar-rpc[otel]`)
with contextlib.suppress(ImportError):
    from sidecar_rpc.otel import OtelConfig, instrument_server

__all__ = [
    # Core
    "RpcServer",
    "RpcClient",
    "RpcError",
    "ConnectionLostError",
    "RpcTimeoutError",
    "ServerInfo",
    "ServerEvent",
    "ClientEvent",
    # Convenience
    "connect",
    "serve_local",
    # Transports
    "Endpoint",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    # Streaming
    "Stream",
    "StreamChannel",
    "MethodType",
    # Context
    "CallContext",
    "DispatchInfo",
    "current_context",
    # Supervisor
    "Supervisor",
    "SupervisorConfig",
    "SupervisorEvent",
    "SupervisorError",
    "NotConnectedError",
    "State",
    "OutputMode",
    # Worker
    "register_system_methods",
    "run_daemon",
]

# Conditionally include optional names only when actually imported
if "OtelConfig" in dir():
    __all__ += ["OtelConfig", "instrument_server"]

# Attach NullHandler to the root logger so library users don't get
# "No handler found" warnings.  Must come after all imports so the
# logger hierarchy is fully populated.
logging.getLogger("sidecar_rpc").addHandler(logging.NullHandler())
