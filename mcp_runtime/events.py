"""
Observable event streams.

A small publish/subscribe registry: listeners are grouped by event kind
("status", "exit", ...) and called synchronously, in subscription order,
whenever an event of that kind is published.

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe("status", lambda event: print(event.status))
    bus.once("exit", on_first_exit)
    bus.publish("status", StatusEvent(id="calc", status="starting", attempt=1))
    unsubscribe()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

ServerStatus = Literal["starting", "attached", "failed"]

Listener = Callable[[Any], None]


@dataclass(frozen=True)
class StatusEvent:
    """Published on the "status" stream for every controller-level transition."""
    id: str
    status: ServerStatus
    attempt: int
    error: BaseException | None = None


@dataclass(frozen=True)
class ExitEvent:
    """Published on the "exit" stream when an attached server's process ends."""
    id: str
    code: int | None
    signal: str | None


class EventBus:
    """Registry of listeners per event kind."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, kind: str, listener: Listener) -> Callable[[], None]:
        """
        Register a persistent listener.

        Returns:
            A callable that removes the listener again. Calling it more
            than once is harmless.
        """
        self._listeners.setdefault(kind, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(kind, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def once(self, kind: str, listener: Listener) -> Callable[[], None]:
        """
        Register a listener that removes itself after its first delivery.

        The registry drops its reference before the listener runs, so a
        fired one-shot listener keeps nothing alive.
        """
        unsubscribe: Callable[[], None]

        def wrapper(event: Any) -> None:
            unsubscribe()
            listener(event)

        unsubscribe = self.subscribe(kind, wrapper)
        return unsubscribe

    def publish(self, kind: str, event: Any) -> None:
        """Deliver an event to every listener currently registered for kind."""
        # Snapshot: one-shot listeners unregister themselves while we iterate
        for listener in list(self._listeners.get(kind, [])):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Listener for '{kind}' event failed")

    def listener_count(self, kind: str) -> int:
        return len(self._listeners.get(kind, []))
