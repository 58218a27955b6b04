"""In-memory queue of human replies waiting for the remote session to poll."""

from __future__ import annotations

import logging
import threading
from collections import deque

from taskfleet.relay.models import PendingInput
from taskfleet.storage.common import Clock, utc_now

logger = logging.getLogger(__name__)


class PendingInputQueue:
    """Per-task FIFO of replies; unread entries expire after the TTL."""

    def __init__(self, *, ttl_seconds: float = 1_800, clock: Clock = utc_now) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, deque[PendingInput]] = {}
        self._lock = threading.Lock()

    def enqueue(self, task_id: str, text: str) -> int:
        """Append a reply and return the number of replies waiting for the task."""

        cleaned = text.strip()
        if not cleaned:
            raise ValueError("Input text must not be empty.")
        with self._lock:
            queue = self._entries.setdefault(task_id, deque())
            queue.append(PendingInput(task_id=task_id, text=cleaned, enqueued_at=self.clock()))
            return len(queue)

    def poll(self, task_id: str) -> PendingInput | None:
        """Remove and return the oldest unexpired reply."""

        with self._lock:
            queue = self._entries.get(task_id)
            if not queue:
                return None
            now = self.clock()
            while queue:
                entry = queue.popleft()
                if (now - entry.enqueued_at).total_seconds() <= self.ttl_seconds:
                    if not queue:
                        del self._entries[task_id]
                    return entry
            del self._entries[task_id]
            return None

    def pending_count(self, task_id: str) -> int:
        with self._lock:
            return len(self._entries.get(task_id, ()))

    def sweep(self) -> int:
        """Discard expired replies; returns how many were dropped."""

        removed = 0
        with self._lock:
            now = self.clock()
            for task_id in list(self._entries):
                queue = self._entries[task_id]
                kept = deque(
                    entry
                    for entry in queue
                    if (now - entry.enqueued_at).total_seconds() <= self.ttl_seconds
                )
                removed += len(queue) - len(kept)
                if kept:
                    self._entries[task_id] = kept
                else:
                    del self._entries[task_id]
        if removed:
            logger.info("Discarded %d expired pending inputs", removed)
        return removed
