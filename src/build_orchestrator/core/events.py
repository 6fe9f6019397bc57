"""In-process broadcast bus for scheduler events."""

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)

TASK_UPDATED = "task.updated"
TASK_BLOCKED = "task.blocked"
AGENT_STARTED = "agent.started"
AGENT_OUTPUT = "agent.output"
AGENT_COMPLETED = "agent.completed"
EXECUTE_STATUS = "execute.status"


@dataclass
class Event:
    project_id: str
    type: str
    payload: dict
    at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {"project_id": self.project_id, "type": self.type, "payload": self.payload, "at": self.at}


class EventBus:
    def __init__(self, history: int = 200):
        self._subscribers: list[Callable[[Event], None]] = []
        self._recent: dict[str, deque] = {}
        self._history = history
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Event], None]):
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Event], None]):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def broadcast(self, project_id: str, event_type: str, **payload):
        event = Event(project_id=project_id, type=event_type, payload=payload)
        with self._lock:
            if event_type != AGENT_OUTPUT:
                self._recent.setdefault(project_id, deque(maxlen=self._history)).append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event_type)

    def recent(self, project_id: str, event_type: str | None = None) -> list[Event]:
        with self._lock:
            events = list(self._recent.get(project_id, ()))
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events
