"""Typed publish/subscribe channel used as the engine's only reactivity mechanism."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from core.logs import ensure_logger
from datetime_utils import utc_now


ENTITY_CREATED = "entity-created"
ENTITY_UPDATED = "entity-updated"
ENTITY_DELETED = "entity-deleted"
SYNC_STATUS_CHANGED = "sync-status-changed"
CONNECTIVITY_CHANGED = "connectivity-changed"

EVENT_TYPES = (
    ENTITY_CREATED,
    ENTITY_UPDATED,
    ENTITY_DELETED,
    SYNC_STATUS_CHANGED,
    CONNECTIVITY_CHANGED,
)


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    entity_type: str
    entity_id: str
    entity: Any = None
    cascade: Tuple[str, ...] = ()
    offline: bool = False
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SyncStatusEvent:
    kind: str
    result: Any = None
    phase: Optional[str] = None
    at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ConnectivityEvent:
    online: bool
    previous: bool
    source: str = "platform"
    at: datetime = field(default_factory=utc_now)

    @property
    def kind(self) -> str:
        return CONNECTIVITY_CHANGED

    @property
    def restored(self) -> bool:
        return self.online and not self.previous


EventT = TypeVar("EventT")
Listener = Callable[[Any], None]


class EventChannel(Generic[EventT]):
    """Delivers each event to its subscribers in subscription order.

    A subscriber that raises is logged and skipped; delivery continues with
    the next one. ``subscribe`` returns the matching unsubscribe callable.
    """

    def __init__(self, name: str, event_types: Tuple[str, ...] = EVENT_TYPES):
        self.name = name
        self.event_types = event_types
        self._listeners: Dict[str, List[Listener]] = {event: [] for event in event_types}
        self.logger = ensure_logger("events")

    def subscribe(self, event: str, callback: Listener) -> Callable[[], None]:
        if event not in self._listeners:
            raise ValueError(f"Unsupported event: {event}")
        self._listeners[event].append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(event, callback)

        return _unsubscribe

    def unsubscribe(self, event: str, callback: Listener) -> None:
        listeners = self._listeners.get(event)
        if listeners and callback in listeners:
            listeners.remove(callback)

    def emit(self, event: str, payload: EventT) -> int:
        delivered = 0
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(payload)
            except Exception:
                self.logger.exception("%s listener for %s failed", self.name, event)
                continue
            delivered += 1
        return delivered

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()


__all__ = [
    "CONNECTIVITY_CHANGED",
    "ChangeEvent",
    "ConnectivityEvent",
    "ENTITY_CREATED",
    "ENTITY_DELETED",
    "ENTITY_UPDATED",
    "EVENT_TYPES",
    "EventChannel",
    "SYNC_STATUS_CHANGED",
    "SyncStatusEvent",
]
