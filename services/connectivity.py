"""Online/offline relay."""
from __future__ import annotations

from typing import Callable

from core.logs import ensure_logger
from services.events import CONNECTIVITY_CHANGED, ConnectivityEvent, EventChannel


CONNECTIVITY_RESTORED = "connectivity-restored"


class ConnectivityMonitor:
    """Tracks one boolean and relays its transitions to subscribers.

    Platform signals arrive through ``set_online``; observed network call
    outcomes through ``report_success`` / ``report_failure``. Subscribers of
    ``on_restored`` fire only on the offline -> online edge, which is where a
    sync pass gets triggered.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = bool(online)
        self._source = "platform"
        self._channel: EventChannel[ConnectivityEvent] = EventChannel(
            "connectivity", (CONNECTIVITY_CHANGED, CONNECTIVITY_RESTORED)
        )
        self.logger = ensure_logger("connectivity")

    @property
    def online(self) -> bool:
        return self._online

    @property
    def probe_allowed(self) -> bool:
        """Offline only because a call failed: periodic or manual passes may probe."""
        return not self._online and self._source == "network"

    def set_online(self, online: bool, *, source: str = "platform") -> bool:
        """Apply a signal; return ``True`` when it changed the state."""
        online = bool(online)
        previous = self._online
        if online == previous:
            return False
        self._online = online
        self._source = source
        event = ConnectivityEvent(online=online, previous=previous, source=source)
        self.logger.info("Connection %s (%s)", "restored" if online else "lost", source)
        self._channel.emit(CONNECTIVITY_CHANGED, event)
        if event.restored:
            self._channel.emit(CONNECTIVITY_RESTORED, event)
        return True

    def report_success(self) -> bool:
        return self.set_online(True, source="network")

    def report_failure(self) -> bool:
        return self.set_online(False, source="network")

    def subscribe(self, callback: Callable[[ConnectivityEvent], None]) -> Callable[[], None]:
        return self._channel.subscribe(CONNECTIVITY_CHANGED, callback)

    def on_restored(self, callback: Callable[[ConnectivityEvent], None]) -> Callable[[], None]:
        return self._channel.subscribe(CONNECTIVITY_RESTORED, callback)

    def close(self) -> None:
        self._channel.clear()


__all__ = ["CONNECTIVITY_RESTORED", "ConnectivityMonitor"]
