import threading
from typing import Type, Callable, List, Dict, Any, Optional, Tuple
from clipfolio.domain.events import Event

Predicate = Callable[[Any], bool]


class EventBus:
    """A simple synchronous event bus for decoupled communication.

    Callbacks run on the publishing thread. A subscription may carry a
    predicate so a caller only sees its own events (e.g. one job token).
    """

    def __init__(self):
        self._subscribers: Dict[Type[Event], List[Tuple[Callable[[Any], None], Optional[Predicate]]]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[Event], callback: Optional[Callable[[Any], None]] = None, where: Optional[Predicate] = None):
        """Subscribes a callback to a specific event type. Can be used as a decorator."""
        if callback is None:
            def decorator(func: Callable[[Any], None]):
                self.subscribe(event_type, func, where=where)
                return func
            return decorator

        with self._lock:
            self._subscribers.setdefault(event_type, []).append((callback, where))
        return callback

    def unsubscribe(self, event_type: Type[Event], callback: Callable[[Any], None]) -> bool:
        with self._lock:
            entries = self._subscribers.get(event_type, [])
            for i, (cb, _) in enumerate(entries):
                if cb is callback:
                    del entries[i]
                    return True
        return False

    def subscribe_job(self, event_type: Type[Event], job_token: str, callback: Callable[[Any], None]):
        """Subscribes to export events of a single job token."""
        return self.subscribe(event_type, callback, where=lambda e: getattr(e, "job_token", None) == job_token)

    def publish(self, event: Event):
        """Publishes an event to all interested subscribers."""
        with self._lock:
            entries = list(self._subscribers.get(type(event), []))
        for callback, where in entries:
            if where is not None and not where(event):
                continue
            callback(event)
