"""Wire message shapes, newline framing, and JSON serialization.

Every message is one JSON object on one line, terminated by ``\\n``.
This module is pure: it never touches sockets.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from sidecar_rpc.rpc._common import JSONRPC_VERSION, PARSE_ERROR, ParseError, RpcError

type RequestId = str | int
type Message = Request | Notification | Response

# Sentinel distinguishing "no params key" from an explicit null
_MISSING: Any = object()


# ---------------------------------------------------------------------------
# Message shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Request:
    """A call that expects exactly one Response with the same ``id``."""

    method: str
    id: RequestId
    params: Any = None
    jsonrpc: str = JSONRPC_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object for this message."""
        obj: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            obj["params"] = self.params
        obj["id"] = self.id
        return obj


@dataclass(frozen=True)
class Notification:
    """A one-way message; never answered."""

    method: str
    params: Any = None
    jsonrpc: str = JSONRPC_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object for this message."""
        obj: dict[str, Any] = {"jsonrpc": self.jsonrpc, "method": self.method}
        if self.params is not None:
            obj["params"] = self.params
        return obj


@dataclass(frozen=True)
class ErrorObject:
    """The ``error`` member of a failed Response."""

    code: int
    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object for this error."""
        obj: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            obj["data"] = self.data
        return obj

    def to_exception(self) -> RpcError:
        """Convert to the exception raised on the calling side."""
        return RpcError(self.code, self.message, self.data)


@dataclass(frozen=True)
class Response:
    """Answer to a Request: exactly one of ``result`` or ``error`` is meaningful."""

    id: RequestId | None
    result: Any = None
    error: ErrorObject | None = None
    jsonrpc: str = field(default=JSONRPC_VERSION)

    @property
    def ok(self) -> bool:
        """Whether this Response carries a result rather than an error."""
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object for this message."""
        obj: dict[str, Any] = {"jsonrpc": self.jsonrpc}
        if self.error is not None:
            obj["error"] = self.error.to_dict()
        else:
            obj["result"] = self.result
        obj["id"] = self.id
        return obj


def success_response(request_id: RequestId | None, result: Any) -> Response:
    """Build a successful Response."""
    return Response(id=request_id, result=result)


def error_response(request_id: RequestId | None, code: int, message: str, data: Any = None) -> Response:
    """Build an error Response."""
    return Response(id=request_id, error=ErrorObject(code, message, data))


def exception_data(exc: BaseException) -> dict[str, str]:
    """Serialize a handler exception into a JSON-safe ``data`` payload."""
    return {"type": type(exc).__name__, "message": str(exc)}


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_message(msg: Message) -> bytes:
    """Encode a message as one UTF-8 JSON line including the trailing newline."""
    return json.dumps(msg.to_dict(), separators=(",", ":"), default=str).encode("utf-8") + b"\n"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _valid_id(value: Any) -> bool:
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


def parse_message(line: str | bytes) -> Message:
    """Parse one framed line into a message.

    The ``jsonrpc`` field is carried through as-is rather than checked
    here; version validation belongs to the dispatcher so that a bad
    version can still be answered with the request's own ``id``.

    Args:
        line: A single line without (or with) its trailing newline.

    Returns:
        A :class:`Request`, :class:`Notification`, or :class:`Response`.

    Raises:
        ParseError: If the line is not JSON, is not an object, or matches
            none of the three message shapes.

    """
    try:
        obj = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ParseError(f"Invalid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise ParseError(f"Expected a JSON object, got {type(obj).__name__}")

    version = obj.get("jsonrpc", "")
    version = version if isinstance(version, str) else ""
    method = obj.get("method")
    has_id = "id" in obj

    if isinstance(method, str):
        params = obj.get("params", _MISSING)
        params = None if params is _MISSING else params
        if has_id and obj["id"] is not None:
            if not _valid_id(obj["id"]):
                raise ParseError(f"Invalid request id: {obj['id']!r}")
            return Request(method=method, id=obj["id"], params=params, jsonrpc=version)
        return Notification(method=method, params=params, jsonrpc=version)

    if "result" in obj or "error" in obj:
        resp_id = obj.get("id")
        if resp_id is not None and not _valid_id(resp_id):
            raise ParseError(f"Invalid response id: {resp_id!r}")
        err = obj.get("error")
        if err is not None:
            if not isinstance(err, dict):
                raise ParseError("Response error must be an object")
            code = err.get("code")
            if not isinstance(code, int) or isinstance(code, bool):
                raise ParseError("Response error code must be an integer")
            return Response(
                id=resp_id,
                error=ErrorObject(code, str(err.get("message", "")), err.get("data")),
                jsonrpc=version,
            )
        return Response(id=resp_id, result=obj.get("result"), jsonrpc=version)

    raise ParseError("Message has neither a method nor a result/error member")


def parse_error_response(exc: ParseError) -> Response:
    """Build the ``-32700`` Response sent back for an unparseable line."""
    return error_response(None, PARSE_ERROR, "Parse error", str(exc))


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


class LineBuffer:
    """Accumulates received bytes and yields complete lines.

    The trailing fragment after the last ``\\n`` is retained until more
    data arrives.  Blank lines are dropped.
    """

    __slots__ = ("_buf", "_max_size")

    def __init__(self, max_size: int | None = None) -> None:
        """Initialize an empty buffer.

        Args:
            max_size: Optional cap on the retained (unterminated) fragment.

        """
        self._buf = bytearray()
        self._max_size = max_size

    def feed(self, data: bytes) -> list[str]:
        """Append *data* and return every complete, non-blank line.

        Raises:
            ParseError: If the unterminated fragment grows beyond ``max_size``.
                The buffer is cleared before raising.

        """
        self._buf.extend(data)
        if b"\n" not in data:
            self._check_size()
            return []
        *complete, rest = self._buf.split(b"\n")
        self._buf = bytearray(rest)
        self._check_size()
        lines: list[str] = []
        for raw in complete:
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                lines.append(text)
        return lines

    def _check_size(self) -> None:
        if self._max_size is not None and len(self._buf) > self._max_size:
            size = len(self._buf)
            self._buf.clear()
            raise ParseError(f"Line exceeds {self._max_size} bytes ({size} buffered)")

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet terminated by a newline."""
        return len(self._buf)
