# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""One-line JSON log records for the daemon and the supervisor.

Records are keyed for correlation across the two processes: the request
path (``server_id``, ``connection_id``, ``request_id``, ``method``) and the
worker (``worker_pid``, ``endpoint``) are lifted to the top level so a log
shipper can index them.  Any other ``extra`` lands under ``"extra"``::

    {"ts": "2026-01-02T03:04:05.678Z", "level": "INFO", "logger": "sidecar_rpc.access",
     "msg": "add ok", "server_id": "a1b2c3", "connection_id": "9f8e7d6c",
     "request_id": 4, "method": "add", "extra": {"duration_ms": 0.4, "status": "ok"}}

Exceptions are rendered as ``{"type", "message", "traceback"}`` under
``"error"``, matching the ``data`` of error Responses.

Import it explicitly; ``sidecar-rpc serve --log-format json`` installs it::

    from sidecar_rpc.logging_utils import JsonFormatter
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

__all__ = ["CORRELATION_KEYS", "JsonFormatter"]

CORRELATION_KEYS: tuple[str, ...] = (
    "server_id",
    "connection_id",
    "request_id",
    "method",
    "worker_pid",
    "endpoint",
)

_STANDARD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


def _iso_utc(created: float) -> str:
    return datetime.fromtimestamp(created, UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """Serialize a record to a single JSON line.

    ``ts``, ``level``, ``logger`` and ``msg`` always come first, followed
    by whichever :data:`CORRELATION_KEYS` the record carries, in that order.
    Remaining ``extra`` fields are grouped under ``"extra"`` so they can
    never shadow the fixed keys.  Values that are not JSON-serializable are
    rendered with ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format *record* as one JSON line."""
        out: dict[str, Any] = {
            "ts": _iso_utc(record.created),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        fields = record.__dict__
        for key in CORRELATION_KEYS:
            if fields.get(key) is not None:
                out[key] = fields[key]
        extra = {
            k: v
            for k, v in fields.items()
            if k not in _STANDARD_ATTRS and k not in CORRELATION_KEYS and not k.startswith("_")
        }
        if extra:
            out["extra"] = extra
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            out["error"] = {
                "type": type(exc).__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        if record.stack_info:
            out["stack"] = self.formatStack(record.stack_info)
        return json.dumps(out, default=str)
