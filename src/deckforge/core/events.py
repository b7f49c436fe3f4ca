"""In-process status-change notifications, an alternative to polling status fields."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    """One status transition written to the store."""
    entity: str  # "source", "document" or "deck"
    entity_id: str
    user_id: str
    status: str
    at: datetime = field(default_factory=utcnow)


Listener = Callable[[StatusChange], None]


class StatusBus:
    """Fan status changes out to subscribers. Listener errors are logged, never raised into the writer."""

    def __init__(self):
        self._listeners: List[tuple] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        listener: Listener,
        entity: Optional[str] = None,
        entity_id: Optional[str] = None
    ) -> Callable[[], None]:
        """Register a listener, optionally filtered; returns an unsubscribe callable."""
        entry = (listener, entity, entity_id)
        with self._lock:
            self._listeners.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return unsubscribe

    def publish(self, change: StatusChange) -> None:
        with self._lock:
            listeners = list(self._listeners)

        for listener, entity, entity_id in listeners:
            if entity and entity != change.entity:
                continue
            if entity_id and entity_id != change.entity_id:
                continue
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Status listener failed for {change.entity} {change.entity_id}: {e}")
