"""
In-memory Event Bus for Domain Events.
Provides a simple publish/subscribe mechanism.
"""

import logging
import uuid
from threading import Lock
from typing import Callable, Dict, List, Type

from fileforge.conversion_engine.events.domain_events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


class EventBus:
    def __init__(self):
        # Outbox rows carry this id so the relay can skip events published here.
        self.bus_id = uuid.uuid4().hex
        self._lock = Lock()
        self._subscribers: Dict[Type[DomainEvent], List[EventHandler]] = {}

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler):
        """
        Subscribes a handler function to a specific event type.
        Args:
            event_type: The type of the DomainEvent to subscribe to.
            handler: A callable that takes a DomainEvent instance as its argument.
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(
            f"Subscribed handler {getattr(handler, '__name__', handler)} to {event_type.__name__}"
        )

    def unsubscribe(self, event_type: Type[DomainEvent], handler: EventHandler):
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: DomainEvent):
        """
        Publishes an event to all subscribed handlers.
        A failing handler is logged and never blocks the remaining handlers.
        Args:
            event: The DomainEvent instance to publish.
        """
        logger.debug(f"Publishing event: {event.event_type} (ID: {event.event_id})")

        with self._lock:
            handlers_for_exact_type = list(self._subscribers.get(type(event), []))
            handlers_for_base_type = list(self._subscribers.get(DomainEvent, []))

        for handler in handlers_for_exact_type:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Event handler {getattr(handler, '__name__', handler)} for {type(event).__name__} failed: {e}",
                    exc_info=True,
                )

        # Also publish to handlers subscribed to base DomainEvent (if any)
        # This allows generic listeners.
        for handler in handlers_for_base_type:
            if (
                type(event) is not DomainEvent
                and handler not in handlers_for_exact_type
            ):  # Avoid double-processing
                try:
                    handler(event)
                except Exception as e:
                    logger.error(
                        f"Generic event handler {getattr(handler, '__name__', handler)} for base DomainEvent failed: {e}",
                        exc_info=True,
                    )


# Global instance of the EventBus
event_bus = EventBus()
