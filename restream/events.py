"""
Fan-out of hub notifications to observers.

The HTTP layer registers a callback that relays every event over Socket.IO;
tests register a list appender. Delivery is fire-and-forget: there is no
replay and a failing subscriber never affects the emitter or the other
subscribers.
"""
import threading
from typing import Callable, List, Optional

Subscriber = Callable[[str, dict], None]

STARTED = "started"
STOPPED = "stopped"
ENDED = "ended"
CRASHED = "crashed"
LOOP_ITERATION = "loop_iteration"
LOOP_COMPLETED = "loop_completed"
SCHEDULED_STARTED = "scheduled_started"
SCHEDULED_ERROR = "scheduled_error"
CONFLICT_RESOLVED = "conflict_resolved"
DOWNLOAD_PROGRESS = "download:progress"
DOWNLOAD_COMPLETE = "download:complete"
DOWNLOAD_ERROR = "download:error"


class EventBus:
    def __init__(self, on_error: Optional[Callable[[str], None]] = None) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._on_error = on_error

    def subscribe(self, callback: Subscriber) -> Subscriber:
        """
        cb should be a callable like cb(event: str, payload: dict)
        """
        with self._lock:
            self._subscribers.append(callback)
        return callback

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def emit(self, event: str, payload: dict) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for cb in subscribers:
            try:
                cb(event, dict(payload))
            except Exception as e:
                if self._on_error is not None:
                    self._on_error(f"Event subscriber failed on {event!r}: {e!r}")
