"""Constants, error codes, errors, and dispatch context for the RPC layer."""

from __future__ import annotations

import logging
import uuid
from collections.abc import MutableMapping
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Any, Final, Protocol

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JSONRPC_VERSION: Final[str] = "2.0"
AUTH_LOGIN_METHOD: Final[str] = "auth.login"
CHUNK_SUFFIX: Final[str] = ".chunk"

PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INTERNAL_ERROR: Final[int] = -32603
APPLICATION_ERROR: Final[int] = -32000
AUTH_ERROR: Final[int] = -32001

_logger = logging.getLogger("sidecar_rpc.rpc")
_access_logger = logging.getLogger("sidecar_rpc.access")
_client_logger = logging.getLogger("sidecar_rpc.client")


def chunk_method(method: str) -> str:
    """Return the notification method name used for streamed chunks of *method*."""
    return f"{method}{CHUNK_SUFFIX}"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """An error reported over the protocol.

    Raised on the client side when the server answers with an error
    Response, and used on the server side to pick a specific error code
    for a handler failure.

    Attributes:
        code: Integer error code from the error object.
        message: Human-readable message.
        data: Optional structured payload.

    """

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        """Initialize with the error object fields."""
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"[{code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON error object."""
        obj: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            obj["data"] = self.data
        return obj


class ConnectionLostError(RpcError):
    """Raised for calls that were pending when the transport went away."""

    def __init__(self, message: str = "Connection lost") -> None:
        """Initialize with an internal-error code."""
        super().__init__(INTERNAL_ERROR, message)


class RpcTimeoutError(RpcError):
    """Raised when a call does not receive its Response in time."""

    def __init__(self, method: str, timeout: float) -> None:
        """Initialize with the method name and the elapsed timeout."""
        self.method = method
        self.timeout = timeout
        super().__init__(INTERNAL_ERROR, f"Request timeout: {method} ({timeout}s)")


class ParseError(ValueError):
    """Raised by the codec for a line that is not a valid message."""


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for log correlation."""
    return uuid.uuid4().hex[:16]


_current_request_id: ContextVar[str] = ContextVar("sidecar_rpc_request_id", default="")


# ---------------------------------------------------------------------------
# Dispatch info + hook protocol
# ---------------------------------------------------------------------------


class MethodType(Enum):
    """Classification of how a handler produced its result."""

    UNARY = "unary"
    STREAM = "stream"
    NOTIFICATION = "notification"


@dataclass(frozen=True)
class DispatchInfo:
    """Describes one dispatched call, passed to dispatch hooks.

    Attributes:
        method: Registered method name.
        request_id: Caller-chosen id, or ``None`` for notifications.
        connection_id: Server-assigned id of the connection.
        remote_addr: Peer address when known (empty for Unix sockets).

    """

    method: str
    request_id: str | int | None
    connection_id: str
    remote_addr: str = ""


type HookToken = object
"""Opaque token returned by ``_DispatchHook.on_dispatch_start``."""


class _DispatchHook(Protocol):
    """Internal protocol for observability hooks called around dispatch."""

    def on_dispatch_start(self, info: DispatchInfo) -> HookToken:
        """Start observability for a dispatch and return an opaque token."""
        ...

    def on_dispatch_end(
        self,
        token: HookToken,
        info: DispatchInfo,
        error: BaseException | None,
        *,
        method_type: MethodType = MethodType.UNARY,
        chunks: int = 0,
    ) -> None:
        """Finalize observability after dispatch (success or failure)."""
        ...


class _CompositeDispatchHook:
    """Fans dispatch notifications out to several hooks in registration order."""

    __slots__ = ("_hooks",)

    def __init__(self, hooks: list[_DispatchHook]) -> None:
        self._hooks = hooks

    def on_dispatch_start(self, info: DispatchInfo) -> HookToken:
        return [hook.on_dispatch_start(info) for hook in self._hooks]

    def on_dispatch_end(
        self,
        token: HookToken,
        info: DispatchInfo,
        error: BaseException | None,
        *,
        method_type: MethodType = MethodType.UNARY,
        chunks: int = 0,
    ) -> None:
        tokens = token if isinstance(token, list) else [None] * len(self._hooks)
        # Reverse order so nested contexts (spans) unwind correctly
        for hook, tok in reversed(list(zip(self._hooks, tokens, strict=True))):
            hook.on_dispatch_end(tok, info, error, method_type=method_type, chunks=chunks)


def _register_dispatch_hook(existing: _DispatchHook | None, hook: _DispatchHook) -> _DispatchHook:
    """Combine *hook* with an already-installed hook, if any."""
    if existing is None:
        return hook
    if isinstance(existing, _CompositeDispatchHook):
        return _CompositeDispatchHook([*existing._hooks, hook])
    return _CompositeDispatchHook([existing, hook])


# ---------------------------------------------------------------------------
# Call context
# ---------------------------------------------------------------------------


class _ContextLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """LoggerAdapter that preserves framework-bound extra fields.

    User-supplied ``extra`` in individual log calls is merged, but
    framework fields take precedence on key conflicts.
    """

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge user extra with framework extra, framework wins on conflict."""
        user_extra = kwargs.get("extra", {})
        kwargs["extra"] = {**user_extra, **(self.extra or {})}
        return msg, kwargs


class CallContext:
    """Request-scoped context visible to handlers through :func:`current_context`.

    Handlers keep their plain ``handler(params)`` signature; the server
    publishes the context in a contextvar for the duration of the call.
    """

    __slots__ = ("_logger", "connection_id", "method", "remote_addr", "request_id", "server_id")

    def __init__(
        self,
        *,
        server_id: str,
        connection_id: str,
        method: str,
        request_id: str | int | None,
        remote_addr: str = "",
    ) -> None:
        """Initialize with identifiers of the current call."""
        self.server_id = server_id
        self.connection_id = connection_id
        self.method = method
        self.request_id = request_id
        self.remote_addr = remote_addr
        self._logger: _ContextLoggerAdapter | None = None

    @property
    def logger(self) -> logging.LoggerAdapter[logging.Logger]:
        """Server-side logger named ``sidecar_rpc.method.<method>`` with call fields bound."""
        if self._logger is None:
            extra: dict[str, object] = {
                "server_id": self.server_id,
                "connection_id": self.connection_id,
                "method": self.method,
            }
            correlation = _current_request_id.get()
            if correlation:
                extra["correlation_id"] = correlation
            if self.remote_addr:
                extra["remote_addr"] = self.remote_addr
            self._logger = _ContextLoggerAdapter(logging.getLogger(f"sidecar_rpc.method.{self.method}"), extra)
        return self._logger


_current_call: ContextVar[CallContext | None] = ContextVar("sidecar_rpc_call", default=None)


def current_context() -> CallContext:
    """Return the context of the call being dispatched.

    Raises:
        RuntimeError: When called outside of a dispatched handler.

    """
    ctx = _current_call.get()
    if ctx is None:
        raise RuntimeError("current_context() called outside of an RPC handler")
    return ctx
