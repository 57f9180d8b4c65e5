"""
Reconciler - runs the monitors, the dispatcher and the control loop.

Threads:
- one MonitorRunner per monitor, ticking on the monitor's policy interval
  and woken early by the monitor's trigger
- the AlertDispatcher consumer thread
- the control thread (the caller of run_forever), which performs policy
  reloads and shutdown on request

A single threading.Event is the cancellation signal. Monitors observe it
between ticks and between remediation steps; backoff sleeps wait on it.
Signal handlers only set flags, the control thread acts on them.
"""

import logging
import threading
import time
from typing import Dict, List, Optional

from .alerts.dispatcher import AlertDispatcher
from .alerts.sinks import AlertSink, build_sinks
from .audit_log import AuditLog, AuditRecordType
from .constants import Intervals, Timeouts
from .enforcement.base import Monitor
from .enforcement.file_integrity import FileIntegrityMonitor
from .enforcement.locks import RemediationLocks
from .enforcement.network_enforcer import NetworkEnforcer
from .enforcement.service_monitor import ServiceMonitor
from .event_bus import TamperEventBus
from .logging_config import VERBOSE, get_logging_state
from .platform.base import PlatformCapabilities
from .policy.models import Policy
from .policy.store import PolicyStore
from .utils.error_handling import AuditLogError, ErrorCategory, PolicyError, handle_error

logger = logging.getLogger(__name__)

CONTROL_POLL = 0.5

EXIT_OK = 0
EXIT_POLICY = 1
EXIT_AUDIT = 2


class MonitorRunner:
    """Drives one monitor on its own thread."""

    def __init__(self, monitor: Monitor, store: PolicyStore, stop_event: threading.Event):
        self.monitor = monitor
        self.store = store
        self.stop_event = stop_event
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._run,
            name=f"monitor-{self.monitor.name}",
            daemon=True,
        )
        self._thread.start()

    def _run(self) -> None:
        monitor = self.monitor
        try:
            monitor.start(self.store.current())
        except Exception as e:
            handle_error(e, f"{monitor.name}_start", monitor.error_category)

        while not self.stop_event.is_set():
            policy = self.store.current()
            clean = monitor.run_tick(policy)
            logger.log(
                VERBOSE,
                f"{monitor.name} tick finished",
                extra={'extra_data': {'clean': clean, 'events': monitor.get_stats()['events_emitted']}},
            )
            if self.stop_event.is_set():
                break
            interval = max(Intervals.MIN_TICK, monitor.interval(policy))
            monitor.trigger.wait(interval)
            monitor.trigger.clear()

        try:
            monitor.shutdown()
        except Exception as e:
            handle_error(e, f"{monitor.name}_shutdown", monitor.error_category)

    def join(self, timeout: Optional[float] = None) -> bool:
        """True if the thread finished."""
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class Reconciler:
    """Owns every component of a running daemon."""

    def __init__(
        self,
        store: PolicyStore,
        platform: PlatformCapabilities,
        audit_log: AuditLog,
        bus: Optional[TamperEventBus] = None,
        sinks: Optional[List[AlertSink]] = None,
        monitors: Optional[List[Monitor]] = None,
        use_observer: bool = True,
    ):
        policy = store.current()

        self.store = store
        self.platform = platform
        self.audit_log = audit_log
        self.bus = bus or TamperEventBus()
        self.locks = RemediationLocks()
        self.stop_event = threading.Event()

        if monitors is None:
            common = dict(bus=self.bus, platform=platform, locks=self.locks, stop_event=self.stop_event)
            monitors = [
                ServiceMonitor(**common),
                FileIntegrityMonitor(use_observer=use_observer, **common),
                NetworkEnforcer(**common),
            ]
        self.monitors = monitors

        self._custom_sinks = sinks is not None
        self.dispatcher = AlertDispatcher(
            self.bus,
            audit_log,
            sinks if sinks is not None else build_sinks(policy.alerting.sinks),
            routing=policy.alerting,
            on_fatal=self._on_audit_failure,
        )

        self._runners = [MonitorRunner(m, store, self.stop_event) for m in self.monitors]
        self._stop_requested = False
        self._reload_requested = False
        self._fatal: Optional[Exception] = None
        self._started = False
        self._stopped = False

        store.add_reload_listener(self._on_policy_reload)

    # ---------- control surface ----------

    def request_reload(self) -> None:
        """Safe to call from a signal handler."""
        self._reload_requested = True

    def request_stop(self) -> None:
        """Safe to call from a signal handler."""
        self._stop_requested = True

    @property
    def exit_code(self) -> int:
        return EXIT_AUDIT if self._fatal is not None else EXIT_OK

    # ---------- lifecycle ----------

    def start(self) -> None:
        """Start all threads. Raises AuditLogError if the trail is unwritable."""
        if self._started:
            return
        policy = self.store.current()
        self.audit_log.record_lifecycle(
            AuditRecordType.DAEMON_START,
            f"Tunnel Warden started on {self.platform.describe()}",
            policy.summary(),
        )
        self._started = True
        self.dispatcher.start()
        for runner in self._runners:
            runner.start()
        logger.info(f"Reconciler running {len(self._runners)} monitors")

    def run_forever(self) -> int:
        """Control loop. Returns the process exit code."""
        if not self._started:
            self.start()

        while not self._stop_requested and self._fatal is None:
            if self._reload_requested:
                self._reload_requested = False
                self.reload()
            time.sleep(CONTROL_POLL)

        self.stop()
        return self.exit_code

    def reload(self) -> bool:
        """Reload the policy on the calling thread."""
        logger.info(f"Reloading policy from {self.store.source}")
        ok, message = self.store.reload()
        record_type = AuditRecordType.POLICY_RELOAD if ok else AuditRecordType.POLICY_RELOAD_FAILED
        try:
            self.audit_log.record_lifecycle(record_type, message, self.store.get_status())
        except AuditLogError as e:
            self._on_audit_failure(e)
        return ok

    def _on_policy_reload(self, old: Policy, new: Policy) -> None:
        for monitor in self.monitors:
            try:
                monitor.on_policy_reload(old, new)
            except Exception as e:
                handle_error(e, f"{monitor.name}_reload", monitor.error_category)

        sinks = None
        if not self._custom_sinks and new.alerting.sinks != old.alerting.sinks:
            try:
                sinks = build_sinks(new.alerting.sinks)
            except PolicyError as e:
                logger.error(f"Keeping the previous alert sinks: {e}")
        self.dispatcher.update_routing(new.alerting, sinks)

        for monitor in self.monitors:
            monitor.trigger.set()

    def _on_audit_failure(self, error: Exception) -> None:
        if self._fatal is None:
            self._fatal = error
            logger.critical(f"Audit log unwritable, shutting down: {error}")
        self._stop_requested = True

    def stop(self, grace: float = Timeouts.SHUTDOWN_GRACE) -> None:
        """Stop monitors first, then the dispatcher, within `grace` seconds."""
        if self._stopped:
            return
        self._stopped = True
        deadline = time.monotonic() + grace

        self.stop_event.set()
        for monitor in self.monitors:
            monitor.trigger.set()

        for runner in self._runners:
            remaining = max(0.1, deadline - time.monotonic())
            if not runner.join(timeout=min(remaining, Timeouts.THREAD_JOIN_DEFAULT)):
                logger.warning(f"Monitor {runner.monitor.name} did not stop in time")

        self.dispatcher.stop(grace=max(0.5, deadline - time.monotonic()))

        if self._fatal is None and self._started:
            try:
                self.audit_log.record_lifecycle(
                    AuditRecordType.DAEMON_STOP,
                    "Tunnel Warden stopped",
                    self.dispatcher.get_stats(),
                )
            except AuditLogError as e:
                self._on_audit_failure(e)

        logger.info("Reconciler stopped")

    def run_once(self, grace: float = Timeouts.SHUTDOWN_GRACE) -> int:
        """One reconciliation pass over every monitor, then flush and stop."""
        policy = self.store.current()
        self._started = True
        self.dispatcher.start()

        for monitor in self.monitors:
            if self._fatal is not None:
                break
            try:
                monitor.start(policy)
            except Exception as e:
                handle_error(e, f"{monitor.name}_start", ErrorCategory.UNKNOWN)
                continue
            monitor.run_tick(policy)
            monitor.shutdown()

        self.stop_event.set()
        self.dispatcher.stop(grace=grace)
        self._stopped = True
        return self.exit_code

    # ---------- status ----------

    def get_status(self) -> Dict:
        status = {
            'policy': self.store.get_status(),
            'bus': self.bus.get_stats(),
            'dispatcher': self.dispatcher.get_stats(),
            'audit_records': self.audit_log.get_record_count(),
            'exit_code': self.exit_code,
            'logging': get_logging_state(),
        }
        for monitor in self.monitors:
            describe = getattr(monitor, 'get_status', monitor.get_stats)
            status[monitor.name] = describe()
        return status
