"""Synchronous, ordered, fault-isolated event bus."""

import logging
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Union

from .models.events import BusEvent, BusEventType
from .types import Listener

logger = logging.getLogger(__name__)

EventTypeKey = Union[BusEventType, str]


def _key(event_type: EventTypeKey) -> str:
    if isinstance(event_type, BusEventType):
        return event_type.value
    return str(event_type)


class EventBus:
    """
    Publishes lifecycle notifications to subscribers.

    Listeners run synchronously in subscription order, followed by the
    ``*`` listeners. An event published while another is being dispatched
    (a listener reacting by adding a chunk, say) is queued and delivered
    once the current event is done, so delivery order always equals
    publication order. A listener that raises is logged and skipped.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Listener]] = {}
        self._queue: Deque[BusEvent] = deque()
        self._dispatching = False

    def subscribe(self, event_type: EventTypeKey, listener: Listener) -> Callable[[], None]:
        """
        Add a listener for an event type.

        Args:
            event_type: Event type or "*" for all events
            listener: Callable receiving the BusEvent

        Returns:
            Callable that removes this listener again
        """
        key = _key(event_type)
        if not callable(listener):
            logger.error(f"Ignoring non-callable listener for {key}: {listener!r}")
            return lambda: None

        self._handlers.setdefault(key, []).append(listener)
        logger.debug(f"Added {key} listener (total: {len(self._handlers[key])})")

        def unsubscribe() -> None:
            self.unsubscribe(key, listener)

        return unsubscribe

    def unsubscribe(self, event_type: EventTypeKey, listener: Optional[Listener] = None) -> None:
        """Remove one listener, or every listener of the type when none is given."""
        key = _key(event_type)
        handlers = self._handlers.get(key)
        if not handlers:
            return
        if listener is None:
            logger.debug(f"Removing all {key} listeners")
            self._handlers[key] = []
            return
        if listener in handlers:
            handlers.remove(listener)
            logger.debug(f"Removed {key} listener")

    def once(self, event_type: EventTypeKey, listener: Listener) -> Callable[[], None]:
        """Add a listener that removes itself after the first event."""
        key = _key(event_type)

        def once_listener(event: BusEvent) -> None:
            self.unsubscribe(key, once_listener)
            listener(event)

        return self.subscribe(key, once_listener)

    def publish(self, event: BusEvent) -> None:
        """Deliver an event to its listeners; never raises."""
        self._queue.append(event)
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._queue:
                self._dispatch(self._queue.popleft())
        finally:
            self._dispatching = False

    def listener_count(self, event_type: Optional[EventTypeKey] = None) -> int:
        if event_type is None:
            return sum(len(handlers) for handlers in self._handlers.values())
        return len(self._handlers.get(_key(event_type), []))

    def clear(self) -> None:
        self._handlers.clear()

    def _dispatch(self, event: BusEvent) -> None:
        key = event.type.value
        # Copy in case a listener subscribes or unsubscribes while running.
        handlers = list(self._handlers.get(key, []))
        if key != BusEventType.ALL.value:
            handlers.extend(self._handlers.get(BusEventType.ALL.value, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    f"Listener for {key} failed (response_id={event.response_id}); continuing"
                )
