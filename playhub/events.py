"""
Observer hub for unsolicited events pushed to the UI layer.

Event kinds:
    sync-progress     SyncProgress
    notification      Notification
    presence-changed  PresenceStatus
    session-changed   PlaySession
"""

import asyncio
import inspect
from collections import defaultdict
from enum import StrEnum
from typing import Any, Callable, Dict, List

from .logger import setup_logger

logger = setup_logger()


class EventKind(StrEnum):
    SYNC_PROGRESS = "sync-progress"
    NOTIFICATION = "notification"
    PRESENCE_CHANGED = "presence-changed"
    SESSION_CHANGED = "session-changed"


class EventHub:
    def __init__(self):
        self._listeners: Dict[EventKind, List[Callable[[Any], Any]]] = defaultdict(list)

    def subscribe(self, kind: EventKind, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners[kind].append(callback)

        def unsubscribe():
            if callback in self._listeners[kind]:
                self._listeners[kind].remove(callback)

        return unsubscribe

    async def emit(self, kind: EventKind, payload: Any):
        """
        Deliver ``payload`` to every listener of ``kind``. Listener failures are
        logged and never propagate to the emitter.
        """
        for callback in list(self._listeners[kind]):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Listener for {kind} failed: {e}")
