"""Fire-and-forget broadcast of transfer events to interested listeners."""
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_PROGRESS = "progress"
EVENT_STATUS = "status"
EVENT_ERROR = "error"
EVENT_COMPLETE = "complete"


@dataclass
class TransferEvent:
    transfer_id: str
    job_id: str
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


Listener = Callable[[TransferEvent], None]


class EventBus:
    """Delivers events synchronously to every subscriber.

    A listener that raises is logged and skipped; emitters never see the
    failure and durable state is never affected by delivery.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def emit(self, transfer_id: str, job_id: str, event: str,
             payload: Optional[Dict[str, Any]] = None) -> TransferEvent:
        message = TransferEvent(transfer_id, job_id, event, payload or {})
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(message)
            except Exception as e:
                logger.warning(f"Event listener {getattr(listener, '__name__', listener)!r} failed: {e}")
        return message


class RecentEvents:
    """Bounded ring buffer of events, subscribed to an `EventBus`."""

    def __init__(self, maxlen: int = 200):
        self._events: Deque[TransferEvent] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, event: TransferEvent) -> None:
        with self._lock:
            self._events.append(event)

    def snapshot(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            events = list(self._events)
        if limit is not None:
            events = events[-limit:]
        return [e.to_dict() for e in events]
