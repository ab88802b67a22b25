"""
Notifications emitted by instances and factories.

Notifications exist for off-path indexers; nothing in the hub reads them
back. Operations collect their notifications and publish them only after
all of their writes are done, so a failed operation emits nothing.
"""

import threading
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional


@dataclass(frozen=True)
class HubEvent:
    """Base class for all notifications."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, bytes):
                data[key] = value.hex()
        data["kind"] = self.kind
        return data


@dataclass(frozen=True)
class MetadataChanged(HubEvent):
    instance: str
    subject_id: Optional[int]   # None for instance-level metadata
    key: str
    value: bytes


@dataclass(frozen=True)
class ReviewSubmitted(HubEvent):
    instance: str
    reviewer_id: int
    reviewed_id: int
    data: bytes


@dataclass(frozen=True)
class OwnershipTransferred(HubEvent):
    instance: str
    previous_owner: str
    new_owner: str


@dataclass(frozen=True)
class RegistryUpdated(HubEvent):
    instance: str
    previous_registry: str
    new_registry: str


@dataclass(frozen=True)
class Initialized(HubEvent):
    instance: str
    version: int


@dataclass(frozen=True)
class InstanceCreated(HubEvent):
    factory: str
    instance: str
    registry: str
    name: str
    creator: str


Subscriber = Callable[[HubEvent], None]


class EventBus:
    """Fan-out of committed notifications to subscribers."""

    def __init__(self, plugin=None, history_size: int = 1000):
        self.plugin = plugin
        self._subscribers: List[Subscriber] = []
        self._history: Deque[HubEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def _log(self, msg: str, level: str = "info") -> None:
        if self.plugin:
            try:
                self.plugin.log(f"credential-hub: events: {msg}", level=level)
            except Exception:
                pass

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> bool:
        with self._lock:
            try:
                self._subscribers.remove(callback)
                return True
            except ValueError:
                return False

    def publish(self, events: Iterable[HubEvent]) -> int:
        """Deliver events in order. Returns how many were published."""
        events = list(events)
        if not events:
            return 0
        with self._lock:
            subscribers = list(self._subscribers)
            self._history.extend(events)
        for event in events:
            for callback in subscribers:
                try:
                    callback(event)
                except Exception as e:
                    self._log(f"subscriber failed on {event.kind}: {e}", "warn")
        return len(events)

    def recent(self, limit: int = 50) -> List[HubEvent]:
        with self._lock:
            if limit <= 0:
                return []
            return list(self._history)[-limit:]
