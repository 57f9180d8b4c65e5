"""
Common plumbing for the enforcement monitors.

A monitor compares one slice of live host state against the active policy
on every tick, remediates drift, and reports what it saw as TamperEvents.
Failures inside a tick never escape: they are logged and, where they mean
the host can no longer be observed, surfaced as events.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Dict, Optional

from ..constants import Retries
from ..event_bus import EventSource, Severity, TamperEvent, TamperEventBus
from ..platform.base import PlatformCapabilities
from ..policy.models import Policy
from ..utils.error_handling import ErrorCategory, handle_error
from .locks import RemediationLocks

logger = logging.getLogger(__name__)


class Monitor(ABC):
    """Base class for ServiceMonitor, FileIntegrityMonitor and NetworkEnforcer."""

    name = "monitor"
    source: EventSource = EventSource.SERVICE
    error_category = ErrorCategory.UNKNOWN

    def __init__(
        self,
        bus: TamperEventBus,
        platform: PlatformCapabilities,
        locks: Optional[RemediationLocks] = None,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        probe_failure_threshold: int = Retries.PROBE_FAILURE_THRESHOLD,
    ):
        self.bus = bus
        self.platform = platform
        self.locks = locks or RemediationLocks()
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.probe_failure_threshold = probe_failure_threshold

        # Set to wake the runner before the next scheduled tick
        self.trigger = threading.Event()

        self._probe_failures: Dict[str, int] = defaultdict(int)
        self._ticks = 0
        self._tick_errors = 0
        self._events_emitted = 0
        self._last_tick_duration = 0.0

    @abstractmethod
    def interval(self, policy: Policy) -> float:
        """Seconds between scheduled ticks under `policy`."""

    @abstractmethod
    def tick(self, policy: Policy) -> None:
        """Observe, compare and remediate once."""

    def start(self, policy: Policy) -> None:
        """Called once by the runner before the first tick."""

    def shutdown(self) -> None:
        """Called once by the runner after the last tick."""

    def on_policy_reload(self, old: Policy, new: Policy) -> None:
        """Called on the control thread after a successful reload."""

    def run_tick(self, policy: Policy) -> bool:
        """Run one tick, containing any failure. Returns True on a clean tick."""
        started = self.clock()
        try:
            self.tick(policy)
            return True
        except Exception as e:
            self._tick_errors += 1
            handle_error(e, f"{self.name}_tick", self.error_category)
            return False
        finally:
            self._ticks += 1
            self._last_tick_duration = self.clock() - started

    def emit(
        self,
        severity: Severity,
        category: str,
        entity: str,
        detail: str,
        remediated: bool = False,
    ) -> TamperEvent:
        """Publish an event. Blocks while the bus is full."""
        event = TamperEvent(
            source=self.source,
            severity=severity,
            category=category,
            entity=entity,
            detail=detail,
            remediated=remediated,
        )
        self.bus.publish(event)
        self._events_emitted += 1
        return event

    # ---------- probe failure streaks ----------

    def probe_failed(self, entity: str, error: Exception) -> int:
        """Count a failed probe; emits `probe_unavailable` once per streak."""
        self._probe_failures[entity] += 1
        streak = self._probe_failures[entity]
        logger.warning(f"[{self.name}] probe of {entity} failed ({streak}): {error}")

        if streak == self.probe_failure_threshold:
            self.emit(
                Severity.WARNING,
                'probe_unavailable',
                entity,
                f"{streak} consecutive probe failures, state unknown: {error}",
            )
        return streak

    def probe_succeeded(self, entity: str) -> None:
        streak = self._probe_failures.pop(entity, 0)
        if streak >= self.probe_failure_threshold:
            logger.info(f"[{self.name}] probe of {entity} recovered after {streak} failures")

    def get_stats(self) -> Dict:
        return {
            'name': self.name,
            'ticks': self._ticks,
            'tick_errors': self._tick_errors,
            'events_emitted': self._events_emitted,
            'last_tick_duration': round(self._last_tick_duration, 3),
            'probe_failures': dict(self._probe_failures),
        }
