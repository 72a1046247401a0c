#!/usr/bin/env python3
"""
Event publication and network state for configsync.

The surrounding application subscribes to the EventBus for sync status and
feeds the NetworkState with its online/offline signal.
"""

from typing import Any, Callable, Dict, List

from ..utils.logger import get_logger

WORKSPACE_DATA_UPDATED = 'workspace-data-updated'
WORKSPACE_SYNC_STATUS = 'workspace-sync-status'
WORKSPACE_SYNC_COMPLETED = 'workspace-sync-completed'
ENVIRONMENTS_STRUCTURE_CHANGED = 'environments-structure-changed'

Subscriber = Callable[[str, Dict[str, Any]], None]
NetworkListener = Callable[[bool, bool], None]


class EventBus:
    """Synchronous fan-out of ``(channel, payload)`` events."""

    def __init__(self):
        self.logger = get_logger(f"{__name__}.EventBus")
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; the returned function unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, channel: str, payload: Dict[str, Any]):
        self.logger.debug(f"Emitting {channel}: {payload}")
        for callback in list(self._subscribers):
            try:
                callback(channel, payload)
            except Exception as e:
                # One broken subscriber must not starve the others
                self.logger.error(f"Event subscriber failed on {channel}: {e}")


class NetworkState:
    """Online flag set by the host, with change listeners."""

    def __init__(self, online: bool = True):
        self.logger = get_logger(f"{__name__}.NetworkState")
        self._online = online
        self._listeners: List[NetworkListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: NetworkListener):
        self._listeners.append(listener)

    def set_online(self, online: bool):
        old, self._online = self._online, bool(online)
        if old == self._online:
            return
        self.logger.info(f"Network is now {'online' if self._online else 'offline'}")
        for listener in list(self._listeners):
            listener(old, self._online)
