"""
Progress Reporter - fans ProgressEvents out to subscribers.

Delivery happens under a lock, so events reach every subscriber in publish
order. For a given backup, overall progress never goes backwards.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .types import ProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:

    def __init__(self):
        self._subscribers: List[ProgressCallback] = []
        self._lock = threading.RLock()
        self._latest: Dict[str, ProgressEvent] = {}

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """
        Register a callback for progress events.

        Returns:
            Function that removes the callback; calling it twice is harmless
        """
        if not callable(callback):
            raise TypeError("Progress callback must be callable")

        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> ProgressEvent:
        """
        Deliver an event to all subscribers.

        An event whose overall progress is below the last one published for
        the same backup is raised to that level before delivery. A failing
        subscriber is logged and does not affect the others.

        Returns:
            The event actually delivered
        """
        with self._lock:
            previous = self._latest.get(event.backup_id)
            if previous is not None and event.overall_progress < previous.overall_progress:
                event = ProgressEvent(
                    backup_id=event.backup_id,
                    step_name=event.step_name,
                    step_index=event.step_index,
                    total_steps=event.total_steps,
                    overall_progress=previous.overall_progress,
                    bytes_processed=event.bytes_processed,
                    total_bytes=event.total_bytes
                )
            self._latest[event.backup_id] = event

            for callback in list(self._subscribers):
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Progress callback failed for backup {event.backup_id}")

        return event

    def latest(self, backup_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._latest.get(backup_id)

    def clear(self, backup_id: str):
        with self._lock:
            self._latest.pop(backup_id, None)
