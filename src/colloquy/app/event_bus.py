import logging
import threading
from typing import Callable, Dict, List

from src.colloquy.models.events import Event

logger = logging.getLogger(__name__)


class EventBus:
    """
    A simple event bus for decoupled communication between components.
    Callbacks run synchronously on the dispatching thread; a UI layer that needs
    main-thread delivery wraps its own callbacks.
    """
    def __init__(self):
        """Initializes the EventBus."""
        self._subscribers: Dict[str, List[Callable]] = {}
        self._lock = threading.RLock()

    def subscribe(self, event_type: str, callback: Callable):
        """
        Subscribe a callback function to a specific event type.

        Args:
            event_type: The type of event to subscribe to.
            callback: The function to call when the event is dispatched.
        """
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        logger.debug("Subscribed %s to event '%s'", getattr(callback, "__name__", callback), event_type)

    def unsubscribe(self, event_type: str, callback: Callable) -> None:
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def dispatch(self, event: Event):
        """
        Dispatch an event to all subscribed callbacks.

        A failing callback is logged and does not prevent delivery to the others.

        Args:
            event: The Event object to dispatch.
        """
        logger.debug("Dispatching event '%s' with payload: %s", event.event_type, event.payload)
        with self._lock:
            callbacks = list(self._subscribers.get(event.event_type, []))
        if not callbacks:
            logger.debug("No subscribers for event '%s'", event.event_type)
            return
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.error(
                    "Error in callback %s for event '%s'",
                    getattr(callback, "__name__", callback),
                    event.event_type,
                    exc_info=True,
                )
