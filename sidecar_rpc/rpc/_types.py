"""Method registry, handler classification, and streaming result types."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import types
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

type Handler = Callable[..., Any]
"""A method handler: ``handler(params)`` or ``handler()``, sync or async.

The return value may be a plain value, an awaitable, or a streaming
result (see :func:`as_stream`).
"""


# ---------------------------------------------------------------------------
# Streaming results
# ---------------------------------------------------------------------------


class Stream:
    """Explicit streaming result wrapping a sync or async iterable.

    Returning ``Stream(items)`` from a handler makes the server emit every
    item as a ``<method>.chunk`` notification, even for iterables (such as
    lists) that would otherwise be sent as a single result value.
    """

    __slots__ = ("_source",)

    def __init__(self, source: Iterable[Any] | AsyncIterable[Any]) -> None:
        """Wrap *source*; it is consumed lazily by the server."""
        self._source = source

    async def __aiter__(self) -> AsyncIterator[Any]:
        """Yield items from the wrapped source in production order."""
        if isinstance(self._source, AsyncIterable):
            async for item in self._source:
                yield item
        else:
            for item in self._source:
                yield item


_CLOSED = object()


class StreamChannel:
    """Push-style producer for streaming results.

    A handler creates a channel, hands it to a background producer that
    calls :meth:`send` and finally :meth:`close`, and returns the channel.
    The server drains it into chunk notifications.  Closing with an
    exception makes the call fail with that exception after the chunks
    already sent.
    """

    __slots__ = ("_closed", "_error", "_queue")

    def __init__(self, maxsize: int = 0) -> None:
        """Initialize with an optional bound on buffered items."""
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize)
        self._closed = False
        self._error: BaseException | None = None

    async def send(self, item: Any) -> None:
        """Queue one chunk, waiting while the channel is full.

        Raises:
            RuntimeError: If the channel was already closed.

        """
        if self._closed:
            raise RuntimeError("send() on a closed StreamChannel")
        await self._queue.put(item)

    def send_nowait(self, item: Any) -> None:
        """Queue one chunk without waiting (unbounded channels)."""
        if self._closed:
            raise RuntimeError("send() on a closed StreamChannel")
        self._queue.put_nowait(item)

    def close(self, error: BaseException | None = None) -> None:
        """Finish the stream, optionally failing it with *error*.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._error = error
        # A full bounded queue is drained by __aiter__ before it sees the flag
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has been called."""
        return self._closed

    async def __aiter__(self) -> AsyncIterator[Any]:
        """Yield queued chunks until the channel is closed."""
        while not (self._closed and self._queue.empty()):
            item = await self._queue.get()
            if item is _CLOSED:
                break
            yield item
        if self._error is not None:
            raise self._error


def as_stream(result: Any) -> AsyncIterator[Any] | None:
    """Return an async iterator over *result* if it is a streaming result.

    Streaming results are :class:`Stream`, :class:`StreamChannel`, async
    iterators (including async generators), and sync generators.  Lists,
    tuples, dicts and other plain iterables are ordinary values.

    Returns:
        An async iterator, or ``None`` for non-streaming values.

    """
    if isinstance(result, (Stream, StreamChannel)):
        return aiter(result)
    if isinstance(result, AsyncIterator):
        return result
    if isinstance(result, types.GeneratorType):
        return aiter(Stream(result))
    return None


# ---------------------------------------------------------------------------
# Method info + registry
# ---------------------------------------------------------------------------


def _accepts_params(handler: Handler) -> bool:
    """Whether *handler* takes a positional argument for ``params``."""
    try:
        sig = inspect.signature(handler)
    except (TypeError, ValueError):
        return True
    for p in sig.parameters.values():
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL):
            return True
    return False


@dataclass(frozen=True)
class RpcMethodInfo:
    """A registered method.

    Attributes:
        name: Method name as it appears on the wire.
        handler: The callable invoked for each request.
        takes_params: Whether the handler receives ``params`` as its argument.

    """

    name: str
    handler: Handler
    takes_params: bool

    @classmethod
    def create(cls, name: str, handler: Handler) -> RpcMethodInfo:
        """Build the info record, inspecting the handler signature."""
        if not callable(handler):
            raise TypeError(f"Handler for {name!r} is not callable: {handler!r}")
        return cls(name=name, handler=handler, takes_params=_accepts_params(handler))

    async def invoke(self, params: Any) -> Any:
        """Call the handler, awaiting the result when it is awaitable."""
        result = self.handler(params) if self.takes_params else self.handler()
        if isinstance(result, Awaitable) and not isinstance(result, AsyncIterator):
            result = await result
        return result


class MethodRegistry:
    """Mapping from method name to handler owned by a single server.

    Registration replaces any existing handler of the same name (last
    registration wins).
    """

    __slots__ = ("_methods",)

    def __init__(self, methods: Mapping[str, Handler] | None = None) -> None:
        """Initialize, optionally pre-populated from *methods*."""
        self._methods: dict[str, RpcMethodInfo] = {}
        if methods:
            self.register_many(methods)

    def register(self, name: str, handler: Handler) -> None:
        """Install *handler* under *name*.

        Raises:
            ValueError: If *name* is empty.
            TypeError: If *handler* is not callable.

        """
        if not name:
            raise ValueError("Method name must be a non-empty string")
        self._methods[name] = RpcMethodInfo.create(name, handler)

    def register_many(self, methods: Mapping[str, Handler]) -> None:
        """Install every handler in *methods*."""
        for name, handler in methods.items():
            self.register(name, handler)

    def unregister(self, name: str) -> bool:
        """Remove *name*; returns whether it was registered."""
        return self._methods.pop(name, None) is not None

    def get(self, name: str) -> RpcMethodInfo | None:
        """Look up a method by name."""
        return self._methods.get(name)

    def names(self) -> list[str]:
        """Registered method names, sorted."""
        return sorted(self._methods)

    def __getitem__(self, name: str) -> RpcMethodInfo:
        return self._methods[name]

    def __contains__(self, name: object) -> bool:
        return name in self._methods

    def __len__(self) -> int:
        return len(self._methods)
