"""
Enforcement monitors.

Each monitor owns one enforcement domain and reconciles it against the
active policy:
- ServiceMonitor: the protection client service keeps running
- FileIntegrityMonitor: protected files match their reference copies
- NetworkEnforcer: egress rules stay in place, bypass tooling is reported
"""

from .base import Monitor
from .file_integrity import FileDrift, FileIntegrityMonitor
from .locks import RemediationLocks
from .network_enforcer import NetworkEnforcer, RuleDiff, diff_rules
from .service_monitor import ServiceMonitor, ServiceState, StateTransition

__all__ = [
    'Monitor',
    'RemediationLocks',
    'ServiceMonitor',
    'ServiceState',
    'StateTransition',
    'FileIntegrityMonitor',
    'FileDrift',
    'NetworkEnforcer',
    'RuleDiff',
    'diff_rules',
]
