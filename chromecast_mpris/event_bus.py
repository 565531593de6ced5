import logging
from enum import Enum
from typing import Any, Callable, Dict, List

_LOGGER = logging.getLogger(__name__)


class BridgeEvent(str, Enum):
    """Every event that travels over the bus."""

    PHASE_CHANGED = "phase_changed"  # payload: ConnectionPhase
    CONNECTED = "connected"  # payload: SessionDescriptor
    DISCONNECTED = "disconnected"  # payload: None
    STATUS = "status"  # payload: StatusSnapshot
    PROPERTIES_CHANGED = "properties_changed"  # payload: {D-Bus name: value}


class EventBus:
    """A simple synchronous publish/subscribe event bus."""

    def __init__(self):
        self.topics: Dict[BridgeEvent, List[Callable[[Any], None]]] = {}

    def subscribe(self, event: BridgeEvent, listener: Callable[[Any], None]) -> None:
        """
        Subscribes a listener to an event.
        """
        self.topics.setdefault(BridgeEvent(event), []).append(listener)

    def publish(self, event: BridgeEvent, payload: Any = None) -> None:
        """
        Publishes an event to all subscribed listeners.
        """
        for listener in list(self.topics.get(event, [])):
            try:
                listener(payload)
            except Exception:
                _LOGGER.exception("Error in event listener for %s", event.value)

# Client helpers for subscriptions

def subscribe(event: BridgeEvent) -> Callable[[Callable], Callable]:
    """Decorator to mark a method for event bus subscription."""
    def decorator(func: Callable) -> Callable:
        func._event_bus_topic = BridgeEvent(event)
        return func
    return decorator

class EventHandler:
    """
    A base class for components that subscribe to events.
    """
    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus
        self._subscribe_all_methods()

    def _subscribe_all_methods(self):
        """Finds and subscribes all methods decorated with @subscribe."""
        seen = set()
        for klass in type(self).__mro__:
            for method_name, attr in vars(klass).items():
                if method_name in seen:
                    continue
                seen.add(method_name)
                topic = getattr(attr, "_event_bus_topic", None)
                if topic is None:
                    continue
                self.event_bus.subscribe(topic, getattr(self, method_name))
                _LOGGER.debug("Subscribed method '%s' to '%s'", method_name, topic.value)
