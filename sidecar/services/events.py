"""In-process event channel between the pipeline and its callers.

Producers call ``publish``; the SSE endpoint long-polls with
``wait_for_events`` and tests or embedded callers can ``subscribe`` to a
queue.  Publishing is serialized under one condition variable, so every
consumer sees events in publish order, and per-meeting order follows.
"""

from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Optional

SEGMENT_READY = "segment_ready"
SEGMENTS_EMBEDDED = "segments_embedded"
TRANSCRIPTION_STATUS = "transcription_status"
EMBEDDING_MODEL_STATE = "embedding_model_state"
ASR_MODEL_STATE = "asr_model_state"
NOTE_MENTION_ALERT = "note_mention_alert"
MEETING_CLOSED = "meeting_closed"
CAPTURE_OVERFLOW = "capture_overflow"
BACKPRESSURE = "backpressure"
SESSION_STATE = "session_state"
PIPELINE_ERROR = "pipeline_error"


class EventBus:
    def __init__(self, max_events: int = 1000, keep_events: int = 500) -> None:
        self._logger = logging.getLogger("sidecar.events")
        self._condition = threading.Condition()
        self._events: list[dict] = []
        # Absolute cursor of self._events[0]; grows as history is trimmed
        self._base = 0
        self._max_events = max_events
        self._keep_events = keep_events
        self._subscribers: list[queue.Queue] = []

    def publish(
        self, event_type: str, meeting_id: Optional[str], data: Optional[dict] = None
    ) -> dict:
        with self._condition:
            payload = {
                "type": event_type,
                "meeting_id": meeting_id,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "data": data or {},
            }
            self._events.append(payload)
            if len(self._events) > self._max_events:
                dropped = len(self._events) - self._keep_events
                self._events = self._events[dropped:]
                self._base += dropped
            for subscriber in self._subscribers:
                subscriber.put(payload)
            # Wake up any waiting SSE connections immediately
            self._condition.notify_all()
        self._logger.debug("Event %s meeting_id=%s", event_type, meeting_id)
        return payload

    def subscribe(self) -> queue.Queue:
        """Return a queue that receives every event published from now on."""
        subscriber: queue.Queue = queue.Queue()
        with self._condition:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue) -> None:
        with self._condition:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def cursor(self) -> int:
        with self._condition:
            return self._base + len(self._events)

    def _slice(self, cursor: int) -> tuple[list[dict], int]:
        start = max(cursor - self._base, 0)
        return self._events[start:], self._base + len(self._events)

    def events_since(self, cursor: int) -> tuple[list[dict], int]:
        with self._condition:
            return self._slice(cursor)

    def wait_for_events(self, cursor: int, timeout: float = 5.0) -> tuple[list[dict], int]:
        """Block until events newer than ``cursor`` exist or ``timeout`` expires.

        Returns the new events and the cursor to pass on the next call.  A
        cursor older than the retained history resumes at the oldest kept
        event.
        """
        with self._condition:
            if cursor < self._base + len(self._events):
                return self._slice(cursor)
            self._condition.wait(timeout=timeout)
            return self._slice(cursor)
