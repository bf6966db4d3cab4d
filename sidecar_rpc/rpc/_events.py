"""Observer registration shared by server, client and supervisor."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any

type Listener = Callable[..., Any]

_logger = logging.getLogger("sidecar_rpc.events")


class Observable[E: StrEnum]:
    """Minimal synchronous event emitter.

    Listeners are called in registration order with the payload passed to
    :meth:`_emit`.  A failing listener is logged at DEBUG and never breaks
    the emitter or the remaining listeners.
    """

    def __init__(self) -> None:
        """Initialize with no listeners."""
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: E, listener: Listener) -> Callable[[], None]:
        """Register *listener* for *event*.

        Returns:
            A zero-argument callable that unregisters the listener.

        """
        self._listeners.setdefault(event, []).append(listener)
        return lambda: self.off(event, listener)

    def off(self, event: E, listener: Listener) -> None:
        """Unregister *listener*; unknown listeners are ignored."""
        listeners = self._listeners.get(event)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def _emit(self, event: E, *args: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(*args)
            except Exception:
                _logger.debug("Listener for %r failed", str(event), exc_info=True)
