"""
StoreObserver - lifecycle events of the connector and the migration engine.

The connector emits "SQL:open" and "SQL:close", the migration engine
"execute", "progress", "ready" and "done", the repository
"<table>:remove". Listeners register per event name or for every event.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class StoreEvent:
    """An emitted event with its source object and payload."""
    name: str
    source: Any = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = field(default_factory=dict)


# Type for event callbacks
EventCallback = Callable[[StoreEvent], None]


class StoreObserver:
    """
    Event emitter with a bounded log of recent events.

    Usage:
        observer = StoreObserver()
        observer.on("progress", lambda event: print(event.payload["version"]))
        observer.emit("progress", updater, version=3)
    """

    def __init__(self, max_log_size: int = 1000):
        self._callbacks: Dict[str, List[EventCallback]] = {}
        self._any_callbacks: List[EventCallback] = []
        self._event_log: List[StoreEvent] = []
        self._max_log_size = max_log_size

    def on(self, name: str, callback: EventCallback) -> None:
        """Register callback for one event name."""
        self._callbacks.setdefault(name, []).append(callback)

    def off(self, name: str, callback: EventCallback) -> None:
        """Unregister callback."""
        callbacks = self._callbacks.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def on_any(self, callback: EventCallback) -> None:
        """Register callback for every event."""
        self._any_callbacks.append(callback)

    def off_any(self, callback: EventCallback) -> None:
        if callback in self._any_callbacks:
            self._any_callbacks.remove(callback)

    def emit(self, name: str, source: Any = None, **payload: Any) -> StoreEvent:
        """
        Emit an event.

        Args:
            name: Event name
            source: Emitting object
            **payload: Event details

        Returns:
            The emitted event
        """
        event = StoreEvent(name=name, source=source, payload=payload)

        self._event_log.append(event)
        if len(self._event_log) > self._max_log_size:
            self._event_log = self._event_log[-self._max_log_size:]

        for callback in list(self._callbacks.get(name, [])) + list(self._any_callbacks):
            try:
                callback(event)
            except Exception:
                # Don't let callback errors stop other callbacks
                logger.warning("event callback error for '%s'", name, exc_info=True)

        return event

    def get_recent_events(self, name: Optional[str] = None, limit: int = 50) -> List[StoreEvent]:
        """Recent events, most recent first, optionally filtered by name."""
        events = self._event_log
        if name:
            events = [e for e in events if e.name == name]
        return list(reversed(events))[:limit]

    def clear_log(self) -> None:
        """Clear the event log."""
        self._event_log = []


# Global observer singleton for convenience
_global_observer: Optional[StoreObserver] = None


def get_observer() -> StoreObserver:
    """Get the global observer instance."""
    global _global_observer
    if _global_observer is None:
        _global_observer = StoreObserver()
    return _global_observer
