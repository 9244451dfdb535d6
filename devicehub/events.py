"""
Event management system for DeviceHub.

Each device service owns one EventManager holding the catalog of event names
it publishes. Subscribers are kept in registration order; a failing
subscriber is logged and never prevents the others from running.
"""

import asyncio
import inspect
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List

logger = logging.getLogger(__name__)


class EventManager:
    """
    Publish/subscribe registry keyed by event name.

    Callbacks may be plain functions or coroutine functions; coroutines are
    scheduled on the running event loop and their failures are logged.
    """

    def __init__(self, event_names: Iterable[str]):
        """
        Initialize the event manager with empty subscriber lists.

        Args:
            event_names: The event names this manager accepts
        """
        self._subscribers: Dict[str, List[Callable]] = {name: [] for name in event_names}
        self._lock = threading.RLock()
        self._pending: set = set()

    @property
    def event_names(self) -> List[str]:
        return list(self._subscribers)

    def _validate(self, event_type: str) -> None:
        if event_type not in self._subscribers:
            raise ValueError(f"Invalid event type '{event_type}'. Must be one of: {self.event_names}")

    def subscribe(self, event_type: str, callback: Callable) -> None:
        """
        Subscribe a callback function to an event type.

        Raises:
            ValueError: If event_type is not in this manager's catalog
            TypeError: If callback is not callable
        """
        if not callable(callback):
            raise TypeError("Callback must be callable")
        self._validate(event_type)

        with self._lock:
            if callback not in self._subscribers[event_type]:
                self._subscribers[event_type].append(callback)
                logger.debug(f"Subscribed callback to {event_type}")

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        """Unsubscribe a callback; unknown callbacks are ignored."""
        self._validate(event_type)

        with self._lock:
            if callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)
                logger.debug(f"Unsubscribed callback from {event_type}")

    def emit(self, event_type: str, data: Any = None) -> None:
        """
        Emit an event to all subscribed callbacks.

        Never raises because of a subscriber: exceptions are logged per
        callback and the remaining callbacks still run.

        Raises:
            ValueError: If event_type is not in this manager's catalog
        """
        self._validate(event_type)

        # Get a copy of subscribers to avoid holding the lock during callback execution
        with self._lock:
            callbacks = self._subscribers[event_type].copy()

        logger.debug(f"Emitting {event_type} event to {len(callbacks)} subscribers")

        for callback in callbacks:
            try:
                result = callback(data) if data is not None else callback()
                if inspect.isawaitable(result):
                    self._schedule(event_type, result)
            except Exception as e:
                logger.error(f"Error in event callback for {event_type}: {e}")

    def _schedule(self, event_type: str, awaitable) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Future) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(f"Error in async event callback for {event_type}: {error}")

        task.add_done_callback(_done)

    def get_subscriber_count(self, event_type: str) -> int:
        """Get the number of subscribers for a given event type."""
        self._validate(event_type)
        with self._lock:
            return len(self._subscribers[event_type])

    def clear_subscribers(self, event_type: str = None) -> None:
        """
        Clear all subscribers for a specific event type or all event types.

        Raises:
            ValueError: If event_type is provided but not in the catalog
        """
        if event_type is not None:
            self._validate(event_type)
            with self._lock:
                self._subscribers[event_type].clear()
                logger.debug(f"Cleared all subscribers for {event_type}")
        else:
            with self._lock:
                for event_list in self._subscribers.values():
                    event_list.clear()
                logger.debug("Cleared all subscribers for all event types")
