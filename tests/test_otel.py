# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for OpenTelemetry server-side instrumentation."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Iterator
from typing import Any, cast

import pytest
from opentelemetry.metrics import MeterProvider
from opentelemetry.sdk.metrics import MeterProvider as SdkMeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from sidecar_rpc.otel import OtelConfig, instrument_server
from sidecar_rpc.rpc import Endpoint, RpcClient, RpcError, RpcServer, connect

pytestmark = pytest.mark.asyncio

type Providers = tuple[TracerProvider, SdkMeterProvider, InMemorySpanExporter, InMemoryMetricReader]

# ---------------------------------------------------------------------------
# Test methods
# ---------------------------------------------------------------------------


def _add(params: dict[str, Any]) -> int:
    return params["a"] + params["b"]


def _fail() -> None:
    raise ValueError("intentional error")


def _declined() -> None:
    raise RpcError(-32050, "declined")


def _generate(params: dict[str, Any]) -> Iterator[int]:
    yield from range(params["n"])


_METHODS = {"add": _add, "fail": _fail, "declined": _declined, "generate": _generate}


@contextlib.asynccontextmanager
async def _instrumented(config: OtelConfig, *, server_id: str | None = None) -> AsyncIterator[RpcClient]:
    """Run an instrumented server and yield a connected client."""
    server = RpcServer(Endpoint.tcp(port=0), methods=_METHODS, require_auth=False, server_id=server_id)
    instrument_server(server, config)
    address = await server.start()
    try:
        async with connect(address) as client:
            yield client
    finally:
        await server.stop()


def _metric_points(reader: InMemoryMetricReader, name: str) -> list[Any]:
    """Collect all data points of metric *name*."""
    data = reader.get_metrics_data()
    points: list[Any] = []
    if data is None:
        return points
    for resource_metric in data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == name:
                    points.extend(metric.data.data_points)  # type: ignore[union-attr]
    return points


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def otel_providers() -> Providers:
    """Create in-memory OTel providers for testing."""
    exporter = InMemorySpanExporter()
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(exporter))

    metric_reader = InMemoryMetricReader()
    meter_provider = SdkMeterProvider(metric_readers=[metric_reader])

    return tracer_provider, meter_provider, exporter, metric_reader


def _config(providers: Providers, **kwargs: Any) -> OtelConfig:
    tracer_provider, meter_provider, _, _ = providers
    return OtelConfig(
        tracer_provider=tracer_provider,
        meter_provider=cast("MeterProvider", meter_provider),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Spans
# ---------------------------------------------------------------------------


class TestSpans:
    """Span creation around dispatch."""

    async def test_unary_span(self, otel_providers: Providers) -> None:
        """Unary call creates a span with correct attributes."""
        _, _, exporter, _ = otel_providers
        async with _instrumented(_config(otel_providers), server_id="test123") as client:
            assert await client.call("add", {"a": 2, "b": 3}) == 5

        spans = exporter.get_finished_spans()
        assert len(spans) == 1
        span = spans[0]
        assert span.name == "sidecar_rpc/add"
        assert span.kind == SpanKind.SERVER
        assert span.status.status_code == StatusCode.OK
        attrs = dict(span.attributes or {})
        assert attrs["rpc.system"] == "sidecar_rpc"
        assert attrs["rpc.method"] == "add"
        assert attrs["rpc.sidecar_rpc.method_type"] == "unary"
        assert attrs["rpc.sidecar_rpc.server_id"] == "test123"
        assert attrs["rpc.jsonrpc.request_id"] == "1"
        assert attrs["net.peer.address"].startswith("127.0.0.1:")
        assert len(attrs["rpc.sidecar_rpc.connection_id"]) == 8

    async def test_stream_span(self, otel_providers: Providers) -> None:
        """A streaming call creates a single span covering every chunk."""
        _, _, exporter, _ = otel_providers
        async with _instrumented(_config(otel_providers)) as client:
            assert await client.collect("generate", {"n": 3}) == [0, 1, 2]

        spans = exporter.get_finished_spans()
        assert len(spans) == 1
        attrs = dict(spans[0].attributes or {})
        assert attrs["rpc.sidecar_rpc.method_type"] == "stream"
        assert attrs["rpc.sidecar_rpc.chunks"] == 3

    async def test_error_span(self, otel_providers: Providers) -> None:
        """A failing handler marks the span as an error and records the exception."""
        _, _, exporter, _ = otel_providers
        async with _instrumented(_config(otel_providers)) as client:
            with pytest.raises(RpcError):
                await client.call("fail")

        span = exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        attrs = dict(span.attributes or {})
        assert attrs["rpc.sidecar_rpc.error_type"] == "ValueError"
        assert "rpc.jsonrpc.error_code" not in attrs
        assert any(event.name == "exception" for event in span.events)

    async def test_rpc_error_code_attribute(self, otel_providers: Providers) -> None:
        """Handler RpcErrors put their code on the span."""
        _, _, exporter, _ = otel_providers
        async with _instrumented(_config(otel_providers)) as client:
            with pytest.raises(RpcError):
                await client.call("declined")

        attrs = dict(exporter.get_finished_spans()[0].attributes or {})
        assert attrs["rpc.jsonrpc.error_code"] == -32050

    async def test_exceptions_not_recorded_when_disabled(self, otel_providers: Providers) -> None:
        """record_exceptions=False keeps the error status but adds no event."""
        _, _, exporter, _ = otel_providers
        async with _instrumented(_config(otel_providers, record_exceptions=False)) as client:
            with pytest.raises(RpcError):
                await client.call("fail")

        span = exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        assert not span.events

    async def test_notification_span(self, otel_providers: Providers) -> None:
        """Notifications get a span without a request id."""
        _, _, exporter, _ = otel_providers
        async with _instrumented(_config(otel_providers)) as client:
            await client.notify("add", {"a": 1, "b": 1})
            await client.call("add", {"a": 1, "b": 2})

        spans = exporter.get_finished_spans()
        assert len(spans) == 2
        note = dict(spans[0].attributes or {})
        assert note["rpc.sidecar_rpc.method_type"] == "notification"
        assert "rpc.jsonrpc.request_id" not in note

    async def test_custom_attributes(self, otel_providers: Providers) -> None:
        """Custom attributes appear on spans and metrics."""
        _, _, exporter, reader = otel_providers
        async with _instrumented(_config(otel_providers, custom_attributes={"deployment": "test"})) as client:
            await client.call("add", {"a": 1, "b": 2})

        attrs = dict(exporter.get_finished_spans()[0].attributes or {})
        assert attrs["deployment"] == "test"
        points = _metric_points(reader, "rpc.server.requests")
        assert points
        assert all(dict(dp.attributes)["deployment"] == "test" for dp in points)

    async def test_tracing_disabled(self, otel_providers: Providers) -> None:
        """No spans created when tracing is disabled."""
        _, _, exporter, _ = otel_providers
        async with _instrumented(_config(otel_providers, enable_tracing=False)) as client:
            await client.call("add", {"a": 1, "b": 2})
        assert len(exporter.get_finished_spans()) == 0

    async def test_login_is_not_traced(self, otel_providers: Providers) -> None:
        """auth.login never reaches dispatch, so it has no span."""
        _, _, exporter, _ = otel_providers
        server = RpcServer(Endpoint.tcp(port=0), methods=_METHODS, token="t")
        instrument_server(server, _config(otel_providers))
        address = await server.start()
        try:
            async with connect(address, token="t") as client:
                await client.call("add", {"a": 1, "b": 1})
        finally:
            await server.stop()
        assert [s.name for s in exporter.get_finished_spans()] == ["sidecar_rpc/add"]


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestMetrics:
    """Counter and histogram recording."""

    async def test_request_counter(self, otel_providers: Providers) -> None:
        """The request counter increments once per call, split by status."""
        _, _, _, reader = otel_providers
        async with _instrumented(_config(otel_providers)) as client:
            await client.call("add", {"a": 1, "b": 2})
            await client.call("add", {"a": 3, "b": 4})
            with pytest.raises(RpcError):
                await client.call("fail")

        points = _metric_points(reader, "rpc.server.requests")
        by_status: dict[str, int] = {}
        for dp in points:
            status = dict(dp.attributes)["status"]
            by_status[status] = by_status.get(status, 0) + dp.value
        assert by_status == {"ok": 2, "error": 1}

    async def test_duration_histogram(self, otel_providers: Providers) -> None:
        """Duration histogram records positive values."""
        _, _, _, reader = otel_providers
        async with _instrumented(_config(otel_providers)) as client:
            await client.call("add", {"a": 1, "b": 2})

        points = _metric_points(reader, "rpc.server.duration")
        assert len(points) == 1
        assert points[0].count == 1
        assert points[0].sum > 0

    async def test_metrics_disabled(self, otel_providers: Providers) -> None:
        """No metrics recorded when metrics are disabled."""
        _, _, exporter, reader = otel_providers
        async with _instrumented(_config(otel_providers, enable_metrics=False)) as client:
            await client.call("add", {"a": 1, "b": 2})

        assert len(exporter.get_finished_spans()) == 1
        assert sum(dp.value for dp in _metric_points(reader, "rpc.server.requests")) == 0


async def test_stacked_hooks(otel_providers: Providers) -> None:
    """Instrumenting twice produces one span per hook."""
    _, _, exporter, _ = otel_providers
    server = RpcServer(Endpoint.tcp(port=0), methods=_METHODS, require_auth=False)
    instrument_server(server, _config(otel_providers))
    instrument_server(server, _config(otel_providers))
    address = await server.start()
    try:
        async with connect(address) as client:
            await client.call("add", {"a": 1, "b": 1})
    finally:
        await server.stop()
    assert len(exporter.get_finished_spans()) == 2
