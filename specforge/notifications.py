"""Notification fanout to connected subscribers (WebSocket clients).

Subscribers are opaque handles exposing ``send(message)`` and ``close()``.
Broadcast iterates under the read side of a reader/writer lock; a handle
whose send fails is closed and unregistered on a background thread.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Set

logger = logging.getLogger("specforge.notifications")

FEATURE_SCORE_UPDATED = "FEATURE_SCORE_UPDATED"
ALIGNMENT_UPDATED = "ALIGNMENT_UPDATED"


class Subscriber(Protocol):
    def send(self, message: str) -> None: ...

    def close(self) -> None: ...


class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class NotificationService:
    """Registry of subscriber handles tagged with a user id."""

    def __init__(self):
        self._clients: Dict[Subscriber, str] = {}
        self._lock = ReadWriteLock()
        self._closers: Set[threading.Thread] = set()
        self._closers_lock = threading.Lock()

    def register(self, handle: Subscriber, user_id: str) -> None:
        with self._lock.write():
            self._clients[handle] = user_id
        logger.info(f"Subscriber registered for user {user_id}")

    def unregister(self, handle: Subscriber) -> None:
        with self._lock.write():
            user_id = self._clients.pop(handle, None)
        if user_id is not None:
            logger.info(f"Subscriber unregistered for user {user_id}")

    def subscriber_count(self) -> int:
        with self._lock.read():
            return len(self._clients)

    def broadcast(self, event_type: str, payload: Any) -> int:
        """Send ``{type, payload}`` to every subscriber; return the delivery count."""
        return self._fanout(event_type, payload, None)

    def notify_user(self, user_id: str, event_type: str, payload: Any) -> int:
        return self._fanout(event_type, payload, user_id)

    def _fanout(self, event_type: str, payload: Any, user_id: Optional[str]) -> int:
        message = json.dumps({"type": event_type, "payload": payload}, default=str)
        delivered = 0
        failed: List[Subscriber] = []
        with self._lock.read():
            for handle, owner in self._clients.items():
                if user_id is not None and owner != user_id:
                    continue
                try:
                    handle.send(message)
                    delivered += 1
                except Exception as e:
                    logger.warning(f"Failed to deliver {event_type} to subscriber of {owner}: {e}")
                    failed.append(handle)
        for handle in failed:
            self._close_async(handle)
        return delivered

    def _close_async(self, handle: Subscriber) -> None:
        def _close() -> None:
            try:
                self.unregister(handle)
                try:
                    handle.close()
                except Exception as e:
                    logger.debug(f"Error closing subscriber: {e}")
            finally:
                with self._closers_lock:
                    self._closers.discard(threading.current_thread())

        thread = threading.Thread(target=_close, name="specforge-notify-close", daemon=True)
        with self._closers_lock:
            self._closers.add(thread)
        thread.start()

    def pending_closers(self) -> int:
        with self._closers_lock:
            return len(self._closers)

    def wait_for_closers(self, timeout: float = 5.0) -> None:
        with self._closers_lock:
            pending = list(self._closers)
        for thread in pending:
            thread.join(timeout)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Close every subscriber and wait for pending closers."""
        with self._lock.write():
            handles = list(self._clients)
            self._clients.clear()
        for handle in handles:
            try:
                handle.close()
            except Exception as e:
                logger.debug(f"Error closing subscriber during shutdown: {e}")
        self.wait_for_closers(timeout)
