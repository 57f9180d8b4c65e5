"""
Error Handling Utilities for Tunnel Warden

Provides:
1. The daemon's error taxonomy (PolicyError, ProbeError, RemediationError,
   SinkError, AuditLogError)
2. Detailed error logging with context
3. Exponential backoff helpers
4. Calls bounded by a timeout

USAGE:
    from warden.utils.error_handling import (
        ProbeError,
        handle_error,
        ErrorCategory,
        backoff_delay,
    )

    try:
        probe()
    except Exception as e:
        handle_error(e, "service_probe", ErrorCategory.SERVICE)
"""

import concurrent.futures
import logging
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR TAXONOMY
# =============================================================================

class WardenError(Exception):
    """Base class for all daemon errors."""
    pass


class PolicyError(WardenError):
    """Policy document is malformed or cannot be verified.

    Fatal at startup, non-fatal on reload (the previous policy stays active).
    """
    pass


class ProbeError(WardenError):
    """Transient inability to observe live state (timeouts included)."""
    pass


class RemediationError(WardenError):
    """A corrective action failed; the entity stays unremediated."""
    pass


class SinkError(WardenError):
    """Alert delivery to an external sink failed."""
    pass


class AuditLogError(WardenError):
    """The local audit trail could not be written. Fatal to the process."""
    pass


class ErrorCategory(Enum):
    """Categories of errors for reporting."""
    POLICY = "policy"
    SERVICE = "service"
    FILESYSTEM = "filesystem"
    NETWORK = "network"
    ALERTING = "alerting"
    AUDIT = "audit"
    PLATFORM = "platform"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Detailed context information for an error."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    operation: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    thread_name: str = field(default_factory=lambda: threading.current_thread().name)
    stack_trace: str = ""
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.stack_trace:
            self.stack_trace = traceback.format_exc()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': type(self.error).__name__,
            'error_message': str(self.error),
            'category': self.category.value,
            'severity': self.severity.value,
            'operation': self.operation,
            'timestamp': self.timestamp,
            'thread_name': self.thread_name,
            'additional_context': self.additional_context,
        }

    def format_log_message(self) -> str:
        """Format a detailed log message."""
        lines = [
            f"ERROR [{self.severity.value.upper()}] in {self.operation}",
            f"  Category: {self.category.value}",
            f"  Type: {type(self.error).__name__}",
            f"  Message: {self.error}",
            f"  Thread: {self.thread_name}",
        ]

        if self.additional_context:
            lines.append("  Context:")
            for key, value in self.additional_context.items():
                lines.append(f"    {key}: {value}")

        if self.stack_trace and self.stack_trace.strip() != 'NoneType: None':
            lines.append("  Stack Trace:")
            for line in self.stack_trace.split('\n'):
                if line.strip():
                    lines.append(f"    {line}")

        return '\n'.join(lines)


def determine_severity(error: Exception, category: ErrorCategory) -> ErrorSeverity:
    """Determine the severity level for an error based on type and category."""
    if isinstance(error, (AuditLogError, RemediationError)):
        return ErrorSeverity.CRITICAL
    if isinstance(error, (ProbeError, SinkError)):
        return ErrorSeverity.WARNING
    if category == ErrorCategory.AUDIT:
        return ErrorSeverity.CRITICAL
    return ErrorSeverity.ERROR


def handle_error(
    error: Exception,
    operation: str,
    category: ErrorCategory = ErrorCategory.UNKNOWN,
    severity: Optional[ErrorSeverity] = None,
    additional_context: Optional[Dict[str, Any]] = None,
) -> ErrorContext:
    """
    Log an error with full context and return the context record.

    Args:
        error: The exception that occurred
        operation: Name of the operation that failed
        category: Category of the error
        severity: Severity level (auto-determined if not provided)
        additional_context: Additional context information
    """
    if severity is None:
        severity = determine_severity(error, category)

    context = ErrorContext(
        error=error,
        category=category,
        severity=severity,
        operation=operation,
        additional_context=additional_context or {},
    )

    log_level = {
        ErrorSeverity.WARNING: logging.WARNING,
        ErrorSeverity.ERROR: logging.ERROR,
        ErrorSeverity.CRITICAL: logging.CRITICAL,
    }[severity]
    logger.log(log_level, context.format_log_message())
    return context


# =============================================================================
# RETRY AND TIMEOUT HELPERS
# =============================================================================

def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at `cap`.

    `attempt` is zero-based.
    """
    if base <= 0:
        return 0.0
    return min(cap, base * (2 ** max(0, attempt)))


def call_with_timeout(
    executor: concurrent.futures.Executor,
    func: Callable[..., Any],
    timeout: float,
    *args,
    **kwargs,
) -> Any:
    """
    Run `func` on `executor` and wait at most `timeout` seconds.

    Raises:
        TimeoutError: if the call did not finish in time. The worker keeps
            running in the background; its result is discarded.
    """
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError:
        future.cancel()
        raise TimeoutError(f"{getattr(func, '__name__', 'call')} exceeded {timeout}s")
