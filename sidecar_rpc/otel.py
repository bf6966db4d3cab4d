# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""OpenTelemetry server-side instrumentation for sidecar-rpc.

Provides ``OtelConfig`` and ``instrument_server()`` for adding distributed
tracing (spans) and metrics (counters, histograms) to ``RpcServer`` dispatch.

Requires ``pip install sidecar-rpc[otel]`` (opentelemetry-api + opentelemetry-sdk).

Usage::

    from sidecar_rpc.otel import OtelConfig, instrument_server

    server = RpcServer(Endpoint.tcp(port=0), methods={"echo": echo})
    instrument_server(server)  # uses global TracerProvider / MeterProvider
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from contextvars import Token
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.metrics import Counter, Histogram, Meter, MeterProvider, get_meter_provider
from opentelemetry.trace import SpanKind, StatusCode, Tracer, TracerProvider, get_tracer_provider

from sidecar_rpc.rpc._common import DispatchInfo, HookToken, MethodType, RpcError, _register_dispatch_hook

if TYPE_CHECKING:
    from sidecar_rpc.rpc._server import RpcServer

_logger = logging.getLogger("sidecar_rpc.otel")

_INSTRUMENTATION_NAME = "sidecar_rpc"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OtelConfig:
    """Configuration for OpenTelemetry instrumentation.

    Attributes:
        tracer_provider: Custom ``TracerProvider``; uses the global provider when ``None``.
        meter_provider: Custom ``MeterProvider``; uses the global provider when ``None``.
        enable_tracing: Enable span creation (default ``True``).
        enable_metrics: Enable counter/histogram recording (default ``True``).
        record_exceptions: Record exceptions on error spans (default ``True``).
        custom_attributes: Extra span/metric attributes merged into every dispatch.

    """

    tracer_provider: TracerProvider | None = None
    meter_provider: MeterProvider | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    record_exceptions: bool = True
    custom_attributes: Mapping[str, str] = field(default_factory=dict)


def instrument_server(server: RpcServer, config: OtelConfig | None = None) -> RpcServer:
    """Attach OpenTelemetry tracing and metrics to a server.

    Call before ``start()``; hooks registered later apply to new dispatches only.

    Args:
        server: The ``RpcServer`` to instrument.
        config: Optional configuration; uses global providers and defaults when ``None``.

    Returns:
        The same *server* instance (for chaining).

    """
    if config is None:
        config = OtelConfig()
    hook = _OtelDispatchHook(config, server.server_id)
    server._dispatch_hook = _register_dispatch_hook(server._dispatch_hook, hook)
    _logger.debug("Instrumented server %s", server.server_id)
    return server


# ---------------------------------------------------------------------------
# Internal dispatch hook
# ---------------------------------------------------------------------------


@dataclass
class _OtelHookToken:
    """Internal token carrying span + timing for on_dispatch_end."""

    span: trace.Span | None
    otel_token: Token[Context] | None
    start_time: float


class _OtelDispatchHook:
    """Implements ``_DispatchHook`` with OpenTelemetry spans and metrics."""

    __slots__ = (
        "_config",
        "_counter",
        "_histogram",
        "_meter",
        "_server_id",
        "_tracer",
    )

    def __init__(self, config: OtelConfig, server_id: str) -> None:
        self._config = config
        self._server_id = server_id

        tp = config.tracer_provider or get_tracer_provider()
        self._tracer: Tracer = tp.get_tracer(_INSTRUMENTATION_NAME)

        mp: MeterProvider = config.meter_provider or get_meter_provider()
        self._meter: Meter = mp.get_meter(_INSTRUMENTATION_NAME)
        self._counter: Counter = self._meter.create_counter(
            "rpc.server.requests",
            unit="{request}",
            description="Number of RPC requests handled",
        )
        self._histogram: Histogram = self._meter.create_histogram(
            "rpc.server.duration",
            unit="s",
            description="Duration of RPC requests",
        )

    def on_dispatch_start(self, info: DispatchInfo) -> HookToken:
        """Start a span and record the start time."""
        start_time = time.monotonic()
        span: trace.Span | None = None
        otel_token: Token[Context] | None = None

        if self._config.enable_tracing:
            attrs: dict[str, str] = {
                "rpc.system": "sidecar_rpc",
                "rpc.method": info.method,
                "rpc.sidecar_rpc.server_id": self._server_id,
                "rpc.sidecar_rpc.connection_id": info.connection_id,
            }
            if info.request_id is not None:
                attrs["rpc.jsonrpc.request_id"] = str(info.request_id)
            if info.remote_addr:
                attrs["net.peer.address"] = info.remote_addr
            attrs.update(self._config.custom_attributes)

            span = self._tracer.start_span(f"sidecar_rpc/{info.method}", kind=SpanKind.SERVER, attributes=attrs)
            otel_token = otel_context.attach(trace.set_span_in_context(span))

        return _OtelHookToken(span=span, otel_token=otel_token, start_time=start_time)

    def on_dispatch_end(
        self,
        token: HookToken,
        info: DispatchInfo,
        error: BaseException | None,
        *,
        method_type: MethodType = MethodType.UNARY,
        chunks: int = 0,
    ) -> None:
        """End the span and record metrics."""
        if not isinstance(token, _OtelHookToken):
            return

        duration = time.monotonic() - token.start_time
        status = "error" if error is not None else "ok"

        if token.span is not None:
            token.span.set_attribute("rpc.sidecar_rpc.method_type", method_type.value)
            if method_type == MethodType.STREAM:
                token.span.set_attribute("rpc.sidecar_rpc.chunks", chunks)
            if error is not None:
                token.span.set_status(StatusCode.ERROR, str(error))
                token.span.set_attribute("rpc.sidecar_rpc.error_type", type(error).__name__)
                if isinstance(error, RpcError):
                    token.span.set_attribute("rpc.jsonrpc.error_code", error.code)
                if self._config.record_exceptions:
                    token.span.record_exception(error)
            else:
                token.span.set_status(StatusCode.OK)
            token.span.end()

        if token.otel_token is not None:
            otel_context.detach(token.otel_token)

        if self._config.enable_metrics:
            metric_attrs: dict[str, str] = {
                "rpc.system": "sidecar_rpc",
                "rpc.method": info.method,
                "rpc.sidecar_rpc.method_type": method_type.value,
                "status": status,
            }
            metric_attrs.update(self._config.custom_attributes)
            self._counter.add(1, metric_attrs)
            self._histogram.record(duration, metric_attrs)
