"""
Policy model and store.
"""

from .models import (
    AlertRouting,
    BypassSignatures,
    FirewallRule,
    NetworkRuleSet,
    Platform,
    Policy,
    ProtectedFile,
    RuleAction,
    Schedule,
    ServiceSpec,
    SinkConfig,
)
from .store import PolicyStore, load_policy

__all__ = [
    'AlertRouting',
    'BypassSignatures',
    'FirewallRule',
    'NetworkRuleSet',
    'Platform',
    'Policy',
    'ProtectedFile',
    'RuleAction',
    'Schedule',
    'ServiceSpec',
    'SinkConfig',
    'PolicyStore',
    'load_policy',
]
