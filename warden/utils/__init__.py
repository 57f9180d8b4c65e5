"""
Utility modules for Tunnel Warden.

Provides the error taxonomy, error logging with context and the shared
backoff/timeout helpers.
"""

from .error_handling import (
    WardenError,
    PolicyError,
    ProbeError,
    RemediationError,
    SinkError,
    AuditLogError,
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    handle_error,
    determine_severity,
    backoff_delay,
    call_with_timeout,
)

__all__ = [
    'WardenError',
    'PolicyError',
    'ProbeError',
    'RemediationError',
    'SinkError',
    'AuditLogError',
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'handle_error',
    'determine_severity',
    'backoff_delay',
    'call_with_timeout',
]
