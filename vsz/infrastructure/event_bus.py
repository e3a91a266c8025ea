import logging
import threading
from typing import Type, Callable, List, Dict, Any, Optional
from vsz.domain.events import Event

class EventBus:
    """A synchronous event bus for decoupled communication.

    Publishing is serialized: callbacks run one event at a time, whichever
    thread publishes. Subscribers may publish again from inside a callback.
    A callback that raises is logged and the remaining callbacks still run.
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Callable[[Any], None]]] = {}
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator."""
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func)
                return func
            return decorator

        with self._lock:
            self._subscribers.setdefault(event_type, []).append(callback)
        return callback

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Any], None]):
        with self._lock:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        with self._lock:
            for callback in list(self._subscribers.get(type(event), [])):
                try:
                    callback(event)
                except Exception:
                    name = getattr(callback, "__qualname__", repr(callback))
                    self.logger.exception(f"EVENT_HANDLER_FAILED: {type(event).__name__} -> {name}")
