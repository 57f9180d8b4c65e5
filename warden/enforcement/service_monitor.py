"""
Service Monitor - keeps the protection client service running.

State machine:

    UNKNOWN -> RUNNING -> STOPPED -> RESTARTING -> RUNNING
                                              \\-> FAILED_PERMANENTLY

Restart attempts are counted in a sliding window. Once the window already
holds `restart_ceiling` attempts and another restart is needed, the monitor
gives up, reports one critical event, and stays in FAILED_PERMANENTLY until
reset() or a policy reload. Probing continues in that state: each new stop
is still reported, it just is not restarted.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, Dict, List, Optional

from ..constants import Limits, Retries
from ..event_bus import EventSource, Severity
from ..policy.models import Policy, ServiceSpec
from ..utils.error_handling import ErrorCategory, ProbeError, RemediationError, backoff_delay
from .base import Monitor

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    """Observed lifecycle of the protected service"""
    UNKNOWN = "unknown"
    RUNNING = "running"
    STOPPED = "stopped"
    RESTARTING = "restarting"
    FAILED_PERMANENTLY = "failed_permanently"


@dataclass
class StateTransition:
    """Record of a service state change"""
    from_state: ServiceState
    to_state: ServiceState
    cause: str
    at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict:
        return {
            'at': self.at,
            'from': self.from_state.value,
            'to': self.to_state.value,
            'cause': self.cause,
        }


class ServiceMonitor(Monitor):
    """Probes the service every tick and restarts it when it stops."""

    name = "service"
    source = EventSource.SERVICE
    error_category = ErrorCategory.SERVICE

    def __init__(
        self,
        *args,
        restart_ceiling: int = Retries.RESTART_CEILING,
        restart_window: float = Retries.RESTART_WINDOW,
        backoff_base: float = Retries.RESTART_BACKOFF_BASE,
        backoff_max: float = Retries.RESTART_BACKOFF_MAX,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.restart_ceiling = restart_ceiling
        self.restart_window = restart_window
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.state = ServiceState.UNKNOWN
        self._service: Optional[ServiceSpec] = None
        self._restart_attempts: Deque[float] = deque()
        self._history: Deque[StateTransition] = deque(maxlen=Limits.TRANSITION_HISTORY)
        self._total_restarts = 0
        self._last_observed: Optional[bool] = None

    def interval(self, policy: Policy) -> float:
        return policy.schedule.service_interval

    # ---------- lifecycle ----------

    def start(self, policy: Policy) -> None:
        self._bind(policy.service)

    def shutdown(self) -> None:
        if self._service is not None:
            self.locks.release(self._service.entity, self.name)

    def on_policy_reload(self, old: Policy, new: Policy) -> None:
        if new.service != old.service:
            self._bind(new.service)
            self.reset("service definition changed")
        elif self.state == ServiceState.FAILED_PERMANENTLY:
            self.reset("policy reloaded")

    def reset(self, cause: str = "reset") -> None:
        """Forget restart history and leave FAILED_PERMANENTLY."""
        self._restart_attempts.clear()
        self._transition(ServiceState.UNKNOWN, cause)

    def _bind(self, spec: ServiceSpec) -> None:
        if self._service is not None and self._service.entity != spec.entity:
            self.locks.release(self._service.entity, self.name)
        self.locks.claim(spec.entity, self.name)
        self._service = spec

    def _transition(self, to_state: ServiceState, cause: str) -> None:
        if to_state == self.state:
            return
        transition = StateTransition(self.state, to_state, cause)
        self._history.append(transition)
        log = logger.warning if to_state in (ServiceState.STOPPED, ServiceState.FAILED_PERMANENTLY) else logger.info
        log(f"Service {self.state.value} -> {to_state.value}: {cause}")
        self.state = to_state

    # ---------- tick ----------

    def tick(self, policy: Policy) -> None:
        spec = policy.service
        if self._service is None or self._service.entity != spec.entity:
            self._bind(spec)

        try:
            active = self.platform.service_is_active(spec.identifier)
        except ProbeError as e:
            streak = self.probe_failed(spec.entity, e)
            if streak >= self.probe_failure_threshold and self.state != ServiceState.FAILED_PERMANENTLY:
                self._transition(ServiceState.UNKNOWN, f"probe unavailable: {e}")
            return
        self.probe_succeeded(spec.entity)

        previous, self._last_observed = self._last_observed, active
        if self.state == ServiceState.FAILED_PERMANENTLY:
            if previous is not None and previous != active:
                self._observe_suspended(spec, active)
            return

        if active:
            self._transition(ServiceState.RUNNING, "probe reports active")
            return

        if not spec.expected_running:
            self._transition(ServiceState.STOPPED, "observed stopped (not expected to run)")
            return

        if self.state != ServiceState.STOPPED:
            self._transition(ServiceState.STOPPED, "probe reports inactive")
            self.emit(
                Severity.WARNING,
                'service_stopped',
                spec.entity,
                f"Service {spec.identifier} is not running",
            )

        self._restart(spec)

    def _prune_attempts(self, now: float) -> None:
        while self._restart_attempts and now - self._restart_attempts[0] > self.restart_window:
            self._restart_attempts.popleft()

    def _restart(self, spec: ServiceSpec) -> None:
        with self.locks.lock_for(spec.entity):
            while not self.stop_event.is_set():
                self._prune_attempts(self.clock())

                if len(self._restart_attempts) >= self.restart_ceiling:
                    self._give_up(spec)
                    return

                # First attempt in a window is immediate, later ones back off
                attempt = len(self._restart_attempts)
                delay = backoff_delay(attempt - 1, self.backoff_base, self.backoff_max) if attempt else 0.0
                if delay and self.stop_event.wait(delay):
                    return

                self._restart_attempts.append(self.clock())
                self._total_restarts += 1
                self._transition(ServiceState.RESTARTING, f"restart attempt {attempt + 1}")

                try:
                    self.platform.restart_service(spec.identifier)
                except RemediationError as e:
                    logger.error(f"Restart of {spec.identifier} failed: {e}")
                    self._transition(ServiceState.STOPPED, f"restart failed: {e}")
                    continue

                try:
                    active = self.platform.service_is_active(spec.identifier)
                except ProbeError as e:
                    self._transition(ServiceState.UNKNOWN, f"cannot verify restart: {e}")
                    return
                self._last_observed = active

                if active:
                    self._transition(ServiceState.RUNNING, "restarted")
                    self.emit(
                        Severity.INFO,
                        'service_restarted',
                        spec.entity,
                        f"Service {spec.identifier} restarted "
                        f"({len(self._restart_attempts)}/{self.restart_ceiling} in window)",
                        remediated=True,
                    )
                    return

                self._transition(ServiceState.STOPPED, "still inactive after restart")

    def _give_up(self, spec: ServiceSpec) -> None:
        self._transition(
            ServiceState.FAILED_PERMANENTLY,
            f"{len(self._restart_attempts)} restarts within {self.restart_window:.0f}s",
        )
        self.emit(
            Severity.CRITICAL,
            'restart_ceiling_exceeded',
            spec.entity,
            f"Service {spec.identifier} stopped again after {len(self._restart_attempts)} "
            f"restarts within {self.restart_window:.0f}s; automatic restarts suspended",
        )

    def _observe_suspended(self, spec: ServiceSpec, active: bool) -> None:
        """Record a running/stopped change while restarts are suspended."""
        observed = "running" if active else "stopped"
        cause = f"observed {observed}, restarts suspended"
        self._history.append(StateTransition(self.state, self.state, cause))
        logger.warning(f"Service {spec.identifier} {cause}")

        if not active and spec.expected_running:
            self.emit(
                Severity.WARNING,
                'service_stopped',
                spec.entity,
                f"Service {spec.identifier} stopped again; automatic restarts are suspended",
            )

    # ---------- status ----------

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def get_status(self) -> Dict:
        status = self.get_stats()
        status.update({
            'service': self._service.identifier if self._service else None,
            'state': self.state.value,
            'observed_active': self._last_observed,
            'restarts_in_window': len(self._restart_attempts),
            'restart_ceiling': self.restart_ceiling,
            'total_restarts': self._total_restarts,
            'recent_transitions': [t.to_dict() for t in list(self._history)[-10:]],
        })
        return status
