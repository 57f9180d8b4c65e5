"""
Tamper Event Bus - ordered channel between the monitors and the dispatcher.

Monitors publish TamperEvents; the AlertDispatcher is the single consumer.
The bus is bounded and publishing blocks while it is full, so a slow
consumer slows monitor ticks down instead of losing events.
"""

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from .constants import Limits

logger = logging.getLogger(__name__)


class EventSource(Enum):
    """Enforcement domain that produced an event"""
    SERVICE = "service"
    FILE = "file"
    NETWORK = "network"


class Severity(Enum):
    """Event severity, ordered"""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: 'Severity') -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.CRITICAL: 2,
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass(frozen=True)
class TamperEvent:
    """A detected deviation from policy. Immutable once created."""
    source: EventSource
    severity: Severity
    category: str
    entity: str
    detail: str
    remediated: bool = False
    detected_at: str = field(default_factory=_utc_now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization"""
        return {
            'event_id': self.event_id,
            'source': self.source.value,
            'severity': self.severity.value,
            'category': self.category,
            'entity': self.entity,
            'detail': self.detail,
            'detected_at': self.detected_at,
            'remediated': self.remediated,
        }


class TamperEventBus:
    """
    Bounded FIFO channel with blocking publish.

    Order is preserved per producer (a producer's events are enqueued in the
    order it publishes them). Nothing is ever dropped: `publish` waits for
    space instead.
    """

    def __init__(self, capacity: int = Limits.BUS_CAPACITY):
        if capacity < 1:
            raise ValueError("bus capacity must be at least 1")
        self.capacity = capacity
        self._queue: "queue.Queue[TamperEvent]" = queue.Queue(maxsize=capacity)
        self._stats_lock = threading.Lock()
        self._published = 0
        self._consumed = 0
        self._blocked_publishes = 0
        self._high_water = 0

    def publish(self, event: TamperEvent) -> None:
        """Enqueue an event, blocking while the bus is full."""
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            with self._stats_lock:
                self._blocked_publishes += 1
            logger.warning(
                f"Event bus full ({self.capacity}), producer blocking: "
                f"{event.source.value}/{event.category}"
            )
            self._queue.put(event)

        with self._stats_lock:
            self._published += 1
            depth = self._queue.qsize()
            if depth > self._high_water:
                self._high_water = depth

    def consume(self, timeout: Optional[float] = None) -> Optional[TamperEvent]:
        """Next event in arrival order, or None if `timeout` elapsed."""
        try:
            event = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        with self._stats_lock:
            self._consumed += 1
        self._queue.task_done()
        return event

    def pending(self) -> int:
        return self._queue.qsize()

    def get_stats(self) -> Dict:
        with self._stats_lock:
            return {
                'capacity': self.capacity,
                'pending': self._queue.qsize(),
                'published': self._published,
                'consumed': self._consumed,
                'blocked_publishes': self._blocked_publishes,
                'high_water_mark': self._high_water,
            }
