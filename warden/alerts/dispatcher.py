"""
Alert Dispatcher - single consumer of the tamper event bus.

For every event, in arrival order:
1. append it to the audit log (always, whatever happens to alerting)
2. dedupe and throttle it by key
3. hand the resulting alert to every sink whose min_severity it meets

Throttling per key: the first event of a window is alerted immediately,
repeats inside the window only bump counters, and when the window closes
with suppressed repeats a single summary alert ("N occurrences since T") is
sent. The next event after that opens a new window.

Each sink has its own single-thread delivery executor, so deliveries to one
sink stay ordered and a slow or failing sink never holds up the others or
the consumer. Individual sink calls run on a shared call pool so a hung
call can be abandoned at its timeout.
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..audit_log import AuditLog
from ..constants import Intervals, Limits, Retries, Timeouts
from ..event_bus import TamperEvent, TamperEventBus
from ..policy.models import AlertRouting
from ..utils.error_handling import (
    AuditLogError,
    ErrorCategory,
    SinkError,
    backoff_delay,
    call_with_timeout,
    handle_error,
)
from .sinks import Alert, AlertSink

logger = logging.getLogger(__name__)

AlertKey = Tuple[str, ...]


@dataclass
class AlertRecord:
    """Dedupe/throttle bookkeeping for one alert key"""
    key: AlertKey
    window_start: float
    window_start_at: str
    last_seen: float
    last_event: TamperEvent
    window_open: bool = True
    occurrences: int = 1          # in the current window, first one included
    suppressed: int = 0           # repeats not alerted in the current window
    total: int = 1                # since the record was created
    summaries_sent: int = 0

    def to_dict(self) -> Dict:
        return {
            'key': list(self.key),
            'window_start': self.window_start_at,
            'window_open': self.window_open,
            'occurrences': self.occurrences,
            'suppressed': self.suppressed,
            'total': self.total,
            'summaries_sent': self.summaries_sent,
        }


class SinkWorker:
    """Ordered, retrying delivery to one sink."""

    def __init__(
        self,
        sink: AlertSink,
        call_pool: concurrent.futures.Executor,
        attempts: int = Retries.SINK_ATTEMPTS,
        timeout: float = Timeouts.SINK_CALL,
        backoff_base: float = Retries.SINK_BACKOFF_BASE,
        backoff_max: float = Retries.SINK_BACKOFF_MAX,
    ):
        self.sink = sink
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._call_pool = call_pool
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"sink-{sink.name}",
        )
        self._abort = threading.Event()
        self._pending: Set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()

        self.delivered = 0
        self.failed = 0

    def deliver(self, alert: Alert) -> concurrent.futures.Future:
        future = self._executor.submit(self._deliver_with_retry, alert)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: concurrent.futures.Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def pending(self) -> List[concurrent.futures.Future]:
        with self._pending_lock:
            return list(self._pending)

    def _deliver_with_retry(self, alert: Alert) -> bool:
        last_error = "not attempted"
        for attempt in range(self.attempts):
            try:
                if call_with_timeout(self._call_pool, self.sink.send, self.timeout, alert):
                    self.delivered += 1
                    return True
                last_error = "sink reported failure"
            except Exception as e:
                last_error = str(e) or type(e).__name__

            logger.warning(
                f"Sink {self.sink.name} attempt {attempt + 1}/{self.attempts} failed: {last_error}"
            )
            if attempt + 1 < self.attempts:
                if self._abort.wait(backoff_delay(attempt, self.backoff_base, self.backoff_max)):
                    break

        self.failed += 1
        handle_error(
            SinkError(f"{self.sink.name}: {last_error}"),
            "sink_delivery",
            ErrorCategory.ALERTING,
            additional_context={'sink': self.sink.name, 'alert': alert.title},
        )
        return False

    def close(self, timeout: Optional[float] = None) -> None:
        """Wait up to `timeout` for queued deliveries, then abandon the rest."""
        pending = self.pending()
        if pending and timeout:
            concurrent.futures.wait(pending, timeout=timeout)
        self._abort.set()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def retire(self) -> None:
        """Accept no new deliveries; queued ones still run."""
        self._executor.shutdown(wait=False)


class AlertDispatcher:
    """Consumes the bus, writes the audit trail and routes alerts to sinks."""

    def __init__(
        self,
        bus: TamperEventBus,
        audit_log: AuditLog,
        sinks: List[AlertSink],
        routing: Optional[AlertRouting] = None,
        clock: Callable[[], float] = time.monotonic,
        on_fatal: Optional[Callable[[Exception], None]] = None,
        sink_attempts: int = Retries.SINK_ATTEMPTS,
        sink_timeout: float = Timeouts.SINK_CALL,
        sink_backoff_base: float = Retries.SINK_BACKOFF_BASE,
        poll_interval: float = Intervals.DISPATCHER_POLL,
    ):
        self.bus = bus
        self.audit_log = audit_log
        self.routing = routing or AlertRouting()
        self.clock = clock
        self.on_fatal = on_fatal
        self.poll_interval = poll_interval

        self._sink_options = {
            'attempts': sink_attempts,
            'timeout': sink_timeout,
            'backoff_base': sink_backoff_base,
        }
        self._call_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=Limits.SINK_CALL_WORKERS,
            thread_name_prefix="sink-call",
        )
        self._workers = [self._make_worker(sink) for sink in sinks]

        self._records: Dict[AlertKey, AlertRecord] = {}
        self._lock = threading.RLock()
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._fatal_error: Optional[Exception] = None

        self._events_processed = 0
        self._alerts_sent = 0
        self._summaries_sent = 0
        self._suppressed_total = 0

    def _make_worker(self, sink: AlertSink) -> SinkWorker:
        return SinkWorker(sink, self._call_pool, **self._sink_options)

    @property
    def sinks(self) -> List[AlertSink]:
        return [worker.sink for worker in self._workers]

    @property
    def fatal_error(self) -> Optional[Exception]:
        return self._fatal_error

    # ---------- lifecycle ----------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._consume_loop, name="alert-dispatcher", daemon=True)
        self._thread.start()
        logger.info(f"Alert dispatcher started with sinks: {[s.name for s in self.sinks]}")

    def stop(self, grace: float = Timeouts.SHUTDOWN_GRACE) -> None:
        """Drain the bus, send pending summaries and flush deliveries within `grace`."""
        deadline = time.monotonic() + grace
        self._running = False
        consumer_alive = False
        if self._thread is not None:
            self._thread.join(timeout=max(0.1, grace / 2))
            consumer_alive = self._thread.is_alive()
            if consumer_alive:
                # Only the consumer thread processes events while it is alive
                logger.warning(
                    f"Dispatcher thread did not stop within the grace period, "
                    f"{self.bus.pending()} event(s) left on the bus"
                )
            self._thread = None

        if self._fatal_error is None and not consumer_alive:
            try:
                self.drain()
                self.flush_summaries(force=True)
            except AuditLogError as e:
                self._fatal(e)

        for worker in self._workers:
            worker.close(timeout=max(0.0, deadline - time.monotonic()))
        self._call_pool.shutdown(wait=False, cancel_futures=True)
        logger.info("Alert dispatcher stopped")

    def _consume_loop(self) -> None:
        while self._running:
            event = self.bus.consume(timeout=self.poll_interval)
            try:
                if event is not None:
                    self.process(event)
                self.flush_summaries()
            except AuditLogError as e:
                self._fatal(e)
                return
            except Exception as e:
                handle_error(e, "alert_dispatch", ErrorCategory.ALERTING)

    def drain(self) -> int:
        """Process everything currently on the bus on the calling thread."""
        count = 0
        while True:
            event = self.bus.consume(timeout=0)
            if event is None:
                return count
            self.process(event)
            count += 1

    def _fatal(self, error: Exception) -> None:
        self._fatal_error = error
        self._running = False
        handle_error(error, "audit_log_write", ErrorCategory.AUDIT)
        if self.on_fatal is not None:
            self.on_fatal(error)

    # ---------- routing ----------

    def key_for(self, event: TamperEvent) -> AlertKey:
        if self.routing.dedupe_per_entity:
            return (event.source.value, event.category, event.entity)
        return (event.source.value, event.category)

    def process(self, event: TamperEvent) -> None:
        """Audit, dedupe/throttle and route one event. Raises AuditLogError."""
        self.audit_log.record_event(event)
        self._events_processed += 1

        now = self.clock()
        key = self.key_for(event)
        with self._lock:
            record = self._records.get(key)

            if record is not None and record.window_open and now - record.window_start >= self.routing.throttle_window:
                self._close_window(record)

            if record is None or not record.window_open:
                if record is None:
                    record = AlertRecord(
                        key=key,
                        window_start=now,
                        window_start_at=event.detected_at,
                        last_seen=now,
                        last_event=event,
                    )
                    self._records[key] = record
                else:
                    record.window_start = now
                    record.window_start_at = event.detected_at
                    record.window_open = True
                    record.occurrences = 1
                    record.suppressed = 0
                    record.total += 1
                record.last_seen = now
                record.last_event = event
                self._route(Alert(key=key, event=event))
            else:
                record.occurrences += 1
                record.suppressed += 1
                record.total += 1
                record.last_seen = now
                record.last_event = event
                self._suppressed_total += 1
                logger.debug(f"Suppressed repeat {key} ({record.suppressed} in window)")

            self._prune(now)

    def flush_summaries(self, force: bool = False) -> int:
        """Close expired windows (all windows if `force`), sending summaries."""
        now = self.clock()
        closed = 0
        with self._lock:
            for record in list(self._records.values()):
                if not record.window_open:
                    continue
                if force or now - record.window_start >= self.routing.throttle_window:
                    self._close_window(record)
                    closed += 1
            self._prune(now)
        return closed

    def _close_window(self, record: AlertRecord) -> None:
        if record.suppressed > 0:
            record.summaries_sent += 1
            self._summaries_sent += 1
            self._route(Alert(
                key=record.key,
                event=record.last_event,
                occurrences=record.occurrences,
                is_summary=True,
                window_start=record.window_start_at,
            ))
        record.window_open = False
        record.suppressed = 0

    def _prune(self, now: float) -> None:
        expired = [
            key for key, record in self._records.items()
            if not record.window_open and now - record.last_seen > self.routing.retention
        ]
        for key in expired:
            del self._records[key]

    def _route(self, alert: Alert) -> None:
        self._alerts_sent += 1
        for worker in self._workers:
            if worker.sink.accepts(alert):
                worker.deliver(alert)

    def update_routing(self, routing: AlertRouting, sinks: Optional[List[AlertSink]] = None) -> None:
        """Apply reloaded routing. Replaced sinks finish their queue in the background."""
        with self._lock:
            self.routing = routing
            if sinks is None:
                return
            old_workers = self._workers
            self._workers = [self._make_worker(sink) for sink in sinks]
        for worker in old_workers:
            worker.retire()
        logger.info(f"Alert routing updated, sinks: {[s.name for s in self.sinks]}")

    def wait_for_deliveries(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued delivery finished. True if none is left."""
        pending = [f for worker in self._workers for f in worker.pending()]
        if not pending:
            return True
        _, not_done = concurrent.futures.wait(pending, timeout=timeout)
        return not not_done

    # ---------- status ----------

    def get_record(self, key: AlertKey) -> Optional[AlertRecord]:
        with self._lock:
            return self._records.get(key)

    def get_stats(self) -> Dict:
        with self._lock:
            return {
                'running': self._running,
                'events_processed': self._events_processed,
                'alerts_sent': self._alerts_sent,
                'summaries_sent': self._summaries_sent,
                'suppressed': self._suppressed_total,
                'tracked_keys': len(self._records),
                'sinks': {
                    worker.sink.name: {'delivered': worker.delivered, 'failed': worker.failed}
                    for worker in self._workers
                },
                'fatal_error': str(self._fatal_error) if self._fatal_error else None,
            }
