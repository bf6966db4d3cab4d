"""Per-connection protocol state machine.

:func:`decide` is a pure function of the connection's auth state and one
inbound message.  It returns the next state plus an :data:`Action` telling
the server what to do; it never performs I/O, so the auth gate and the
validation order can be unit-tested without sockets.

Order of checks for a Request:

1. Unauthenticated connection: only ``auth.login`` is accepted; anything
   else is answered with ``-32001``.
2. Protocol version must be ``"2.0"`` (``-32600`` otherwise).
3. The method must be registered (``-32601`` otherwise).
"""

from __future__ import annotations

import hmac
from collections.abc import Container
from dataclasses import dataclass, replace
from typing import Any

from sidecar_rpc.rpc._common import (
    AUTH_ERROR,
    AUTH_LOGIN_METHOD,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    METHOD_NOT_FOUND,
)
from sidecar_rpc.rpc._wire import Message, Notification, Request, Response, error_response, success_response

AUTH_REQUIRED_MESSAGE = "Authentication required"
AUTH_INVALID_MESSAGE = "Invalid authentication token"
AUTH_EXHAUSTED_MESSAGE = "Too many failed authentication attempts"


@dataclass(frozen=True)
class ConnectionState:
    """Auth state of one connection.

    Attributes:
        authenticated: Whether non-login methods may be dispatched.
        failed_logins: Number of rejected ``auth.login`` attempts so far.

    """

    authenticated: bool
    failed_logins: int = 0

    @classmethod
    def initial(cls, require_auth: bool) -> ConnectionState:
        """State of a freshly accepted connection."""
        return cls(authenticated=not require_auth)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reply:
    """Send *response* without invoking any handler."""

    response: Response


@dataclass(frozen=True)
class Dispatch:
    """Invoke the registered handler for *message*."""

    message: Request | Notification


@dataclass(frozen=True)
class Ignore:
    """Drop the message silently."""

    reason: str


@dataclass(frozen=True)
class Close:
    """Send *response*, then close the connection."""

    response: Response


type Action = Reply | Dispatch | Ignore | Close


# ---------------------------------------------------------------------------
# Transition function
# ---------------------------------------------------------------------------


def _token_matches(params: Any, token: str) -> bool:
    if not isinstance(params, dict):
        return False
    supplied = params.get("token")
    if not isinstance(supplied, str):
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), token.encode("utf-8"))


def _login(
    state: ConnectionState,
    request: Request,
    token: str,
    max_auth_attempts: int | None,
) -> tuple[ConnectionState, Action]:
    if state.authenticated:
        return state, Reply(success_response(request.id, {"authenticated": True}))
    if _token_matches(request.params, token):
        return ConnectionState(authenticated=True), Reply(success_response(request.id, {"authenticated": True}))
    failed = state.failed_logins + 1
    new_state = replace(state, failed_logins=failed)
    if max_auth_attempts is not None and failed >= max_auth_attempts:
        return new_state, Close(error_response(request.id, AUTH_ERROR, AUTH_EXHAUSTED_MESSAGE))
    return new_state, Reply(error_response(request.id, AUTH_ERROR, AUTH_INVALID_MESSAGE))


def decide(
    state: ConnectionState,
    message: Message,
    *,
    token: str,
    methods: Container[str],
    max_auth_attempts: int | None = None,
) -> tuple[ConnectionState, Action]:
    """Compute the next connection state and the action for one message.

    Args:
        state: Current auth state of the connection.
        message: The parsed inbound message.
        token: The server's shared secret.
        methods: Names of registered methods.
        max_auth_attempts: Close the connection after this many failed
            logins; ``None`` allows unlimited retries.

    Returns:
        ``(new_state, action)``.

    """
    if isinstance(message, Response):
        return state, Ignore("response received by server")

    if isinstance(message, Notification):
        if not state.authenticated:
            return state, Ignore("notification before authentication")
        if message.jsonrpc != JSONRPC_VERSION:
            return state, Ignore(f"notification with protocol version {message.jsonrpc!r}")
        if message.method not in methods:
            return state, Ignore(f"notification for unknown method {message.method!r}")
        return state, Dispatch(message)

    if message.method == AUTH_LOGIN_METHOD:
        return _login(state, message, token, max_auth_attempts)

    if not state.authenticated:
        return state, Reply(error_response(message.id, AUTH_ERROR, AUTH_REQUIRED_MESSAGE))

    if message.jsonrpc != JSONRPC_VERSION:
        return state, Reply(error_response(message.id, INVALID_REQUEST, "Invalid Request"))

    if message.method not in methods:
        data = {"method": message.method}
        return state, Reply(error_response(message.id, METHOD_NOT_FOUND, "Method not found", data))

    return state, Dispatch(message)
