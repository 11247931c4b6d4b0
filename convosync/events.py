"""Per-instance event listener sets."""

from __future__ import annotations

import logging
from typing import Any, Callable

log = logging.getLogger(__name__)


class EventEmitter:
    """Named events with listener lists owned by one object.

    A listener that raises is logged and does not stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[Callable[..., Any]]] = {}

    def on(self, kind: str, listener: Callable[..., Any]) -> None:
        listeners = self._listeners.setdefault(kind, [])
        if listener not in listeners:
            listeners.append(listener)

    def off(self, kind: str, listener: Callable[..., Any]) -> None:
        listeners = self._listeners.get(kind, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, kind: str) -> int:
        return len(self._listeners.get(kind, []))

    def emit(self, kind: str, *args: Any) -> None:
        for listener in list(self._listeners.get(kind, [])):
            try:
                listener(*args)
            except Exception:
                log.exception("Listener for %r failed", kind)
